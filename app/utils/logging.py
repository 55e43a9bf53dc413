"""
app/utils/logging.py
───────────────────
Configures structured logging for production.
"""
import os
import logging
from logging.handlers import RotatingFileHandler
from flask import has_request_context, request, session


class RequestFormatter(logging.Formatter):
    """
    Custom formatter that injects request info (IP, staff user if logged in)
    into logs if context is available.
    """
    def format(self, record):
        if has_request_context():
            record.url = request.url
            record.remote_addr = request.remote_addr
            record.user_id = session.get('user_id')
        else:
            record.url = None
            record.remote_addr = None
            record.user_id = None
        return super().format(record)


def setup_logging(app):
    """
    Configure rotating file logging: logs/app.log
    Max size: 5MB
    Backup count: 5 files
    Format: timestamp | level | module | ip | user | url | message

    Modules that log via logging.getLogger(__name__) inside the `app`
    package propagate to these handlers.
    """
    # 1. File Logger (skipped in tests, silently skipped on read-only disks)
    if app.config.get('LOG_TO_FILE', True):
        try:
            log_dir = os.path.join(app.root_path, '..', 'logs')
            os.makedirs(log_dir, exist_ok=True)

            file_handler = RotatingFileHandler(
                os.path.join(log_dir, 'app.log'),
                maxBytes=5 * 1024 * 1024,
                backupCount=5
            )
            file_handler.setFormatter(RequestFormatter(
                '%(asctime)s | %(levelname)s | %(name)s | %(remote_addr)s | '
                'user=%(user_id)s | %(url)s | %(message)s'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)
        except OSError:
            pass  # Fallback to stdout if filesystem is read-only

    # 2. Stdout Logger (Critical for cloud logs)
    # create_app() runs once per test; attach the stream handler only once.
    if any(h.get_name() == 'stdout' for h in app.logger.handlers):
        return
    stream_handler = logging.StreamHandler()
    stream_handler.set_name('stdout')
    stream_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    ))
    stream_handler.setLevel(logging.INFO)
    app.logger.addHandler(stream_handler)

    app.logger.setLevel(logging.INFO)
    app.logger.info("Loyalty admin startup (%s)", app.config.get('ENV_NAME', 'default'))
