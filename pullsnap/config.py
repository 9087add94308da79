import os
import tempfile


class Config:
    """Base configuration"""

    # Server configuration file (remote host, destination, targets)
    PULLSNAP_CONFIG = os.environ.get('PULLSNAP_CONFIG') or '/etc/pullsnap/config.json'

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/var/log/pullsnap'

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    SCAN_LOOP_ENABLED = True


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    PULLSNAP_CONFIG = os.environ.get('PULLSNAP_CONFIG') or os.path.join(DATA_DIR, 'config.json')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration, the scan loop is driven by the tests"""
    TESTING = True
    DEBUG = False
    SCAN_LOOP_ENABLED = False
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'pullsnap-test-logs')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
