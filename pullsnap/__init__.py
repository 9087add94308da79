import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, current_app


# server log_level -> logging level, anything higher logs everything
LOG_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
}

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'

LOG_FILE = 'pullsnap.log'
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 10


def _handler(handler, level, fmt):
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def configure_logging(app, server_log_level=1):
    """
    Send pullsnap and Flask logs to the console and a rotating log file.

    Flask debug mode always logs at DEBUG; otherwise the server's
    ``log_level`` setting decides.
    """
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    if app.config.get('DEBUG', False):
        log_level = logging.DEBUG
    else:
        log_level = LOG_LEVELS.get(server_log_level, logging.DEBUG)

    handlers = [
        _handler(logging.StreamHandler(), log_level, CONSOLE_FORMAT),
        _handler(
            RotatingFileHandler(
                os.path.join(log_dir, LOG_FILE),
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUPS
            ),
            log_level,
            FILE_FORMAT
        ),
    ]

    # Module loggers (pullsnap.backup.*) propagate to the root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging to {log_dir} at level {logging.getLevelName(log_level)}")


def get_server():
    """Backup server of the current app."""
    return current_app.extensions['pullsnap']


def _owns_scan_loop(app):
    """
    Decide whether this process hosts the scan loop.

    Exactly one process may sync and evict, otherwise two loops would write
    to the same destination. Under the Flask reloader that is the child
    process; under gunicorn it is the worker flagged with SCAN_LOOP_WORKER.
    """
    if not app.config.get('SCAN_LOOP_ENABLED', True):
        return False

    if app.config.get('DEBUG', False):
        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
        return is_reloader_child

    is_scan_worker = os.environ.get('SCAN_LOOP_WORKER', 'true').lower() == 'true'
    app.logger.info(f"Production mode: is_scan_worker={is_scan_worker}")
    return is_scan_worker


def create_app(config_name=None, server=None):
    """
    Flask application factory

    Args:
        config_name: Key of pullsnap.config.config, defaults to $FLASK_ENV
        server: Prebuilt BackupServer, loaded from PULLSNAP_CONFIG if None

    Raises:
        ConfigurationError: If the server configuration is missing or invalid
    """
    app = Flask(__name__)

    from pullsnap.config import config
    app.config.from_object(config[config_name or os.environ.get('FLASK_ENV', 'production')])

    if server is None:
        from pullsnap.backup.server import BackupServer
        server = BackupServer.from_config(app.config['PULLSNAP_CONFIG'])

    configure_logging(app, server.settings.log_level)

    app.extensions['pullsnap'] = server
    app.logger.info(
        f"Loaded backup server \"{server.settings.name}\" with {len(server.targets)} target(s) "
        f"into {server.settings.destination}"
    )

    from pullsnap.routes import backups_routes, status_routes
    app.register_blueprint(backups_routes.bp)
    app.register_blueprint(status_routes.bp)

    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    if _owns_scan_loop(app):
        from pullsnap.scheduler import init_scheduler, start_scheduler, stop_scheduler
        import atexit

        init_scheduler(app, server.scan_loop)
        start_scheduler()

        # Stop syncing before the interpreter exits
        atexit.register(stop_scheduler)
        app.logger.info("Scan loop scheduled in this process")
    else:
        app.logger.info("Scan loop not hosted by this process")

    return app
