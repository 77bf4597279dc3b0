import os


class Config:
    """Base configuration"""

    # Settings file (YAML) holding jobs, remote and e-mail settings
    CONFIG_FILE = os.environ.get('ZIPBACKUP_CONFIG') or os.path.join(os.getcwd(), 'config.yaml')

    # Logging
    LOG_DIR = os.environ.get('ZIPBACKUP_LOG_DIR') or os.path.join(os.getcwd(), 'logs')
    LOG_FILE_NAME = 'zipbackup.log'
    DEBUG = os.environ.get('ZIPBACKUP_DEBUG', 'false').lower() == 'true'

    # Archiver subprocess ceiling (seconds)
    ARCHIVER_TIMEOUT = 30 * 60

    @classmethod
    def log_file(cls) -> str:
        return os.path.join(cls.LOG_DIR, cls.LOG_FILE_NAME)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    CONFIG_FILE = os.path.join(DATA_DIR, 'config.yaml')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = Config.DEBUG


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: str = None):
    """Return the configuration class for config_name (default: ZIPBACKUP_ENV)."""
    if config_name is None:
        config_name = os.environ.get('ZIPBACKUP_ENV', 'production')
    return config.get(config_name, config['default'])
