from flask import Flask, jsonify
from flask_migrate import Migrate
from flask_login import LoginManager
from perfume_store.extensions import db
from perfume_store.config import Config
from perfume_store.middleware import setup_admin_gate
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('app.log'),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

migrate = Migrate()
login_manager = LoginManager()


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Not logged in', 'login_required': True}), 401


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    app.json.ensure_ascii = False

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # Setup user loader
    from perfume_store.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    # Register blueprints
    from perfume_store.blueprints import (
        admin,
        auth,
        cart,
        orders,
        spin,
        warranty,
    )

    app.register_blueprint(auth.bp, url_prefix='/')
    app.register_blueprint(cart.bp, url_prefix='/')
    app.register_blueprint(spin.bp, url_prefix='/')
    app.register_blueprint(orders.bp, url_prefix='/')
    app.register_blueprint(warranty.bp, url_prefix='/')
    app.register_blueprint(admin.bp, url_prefix='/')

    from perfume_store.services.errors import register_error_handlers
    register_error_handlers(app)

    from perfume_store.cli import register_commands
    register_commands(app)

    # Admin routes require an admin session
    setup_admin_gate(app)

    # Note: Database tables are managed via Flask-Migrate
    # Use 'flask db upgrade' to create/update tables

    logger.info("Flask application initialized")
    return app
