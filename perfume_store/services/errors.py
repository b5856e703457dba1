from flask import jsonify
import logging

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = 400

    def __init__(self, message, payload=None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {}

    def to_dict(self):
        data = dict(self.payload)
        data['error'] = self.message
        return data


class ValidationError(ServiceError):
    status_code = 400


class PermissionDeniedError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class ExternalServiceError(ServiceError):
    status_code = 502


def register_error_handlers(app):

    @app.errorhandler(ServiceError)
    def handle_service_error(error):
        if error.status_code >= 500:
            logger.error("%s: %s", type(error).__name__, error.message)
        else:
            logger.info("%s: %s", type(error).__name__, error.message)
        return jsonify(error.to_dict()), error.status_code
