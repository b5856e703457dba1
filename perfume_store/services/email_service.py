from email.message import EmailMessage
from flask import current_app
from perfume_store.services.errors import ExternalServiceError
import logging
import smtplib

logger = logging.getLogger(__name__)


def send_email(to, subject, body):
    config = current_app.config
    if not config.get('MAIL_ENABLED'):
        logger.info("Sending email (Mock): to=%s subject=%s", to, subject)
        return False

    message = EmailMessage()
    message['From'] = config['MAIL_SENDER']
    message['To'] = to
    message['Subject'] = subject
    message.set_content(body)

    try:
        with smtplib.SMTP(config['MAIL_SERVER'], config['MAIL_PORT']) as smtp:
            if config.get('MAIL_USE_TLS'):
                smtp.starttls()
            if config.get('MAIL_USERNAME'):
                smtp.login(config['MAIL_USERNAME'], config['MAIL_PASSWORD'])
            smtp.send_message(message)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Failed to send email to %s: %s", to, e, exc_info=True)
        raise ExternalServiceError('Could not send email')

    logger.info("Email sent to %s: %s", to, subject)
    return True


def send_password_reset_otp(email, otp, ttl_minutes):
    body = (
        f'Your password reset code is {otp}.\n'
        f'It expires in {ttl_minutes} minutes. '
        'If you did not request a reset, ignore this email.'
    )
    return send_email(email, 'Password reset code', body)
