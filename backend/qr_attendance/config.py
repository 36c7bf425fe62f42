"""Configuration module for the QR Attendance Gate."""
import os
from datetime import timedelta


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() not in ('false', '0', 'no', 'off')


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # JWT Configuration (staff tokens are issued elsewhere, we only verify them)
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or 'jwt-secret-key-change-in-production'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=8)
    JWT_ALGORITHM = 'HS256'

    # CORS
    CORS_ORIGINS = ["http://localhost:*", "http://127.0.0.1:*"]

    # Rate Limiting (session issuance only)
    RATELIMIT_STORAGE_URL = os.environ.get('REDIS_URL') or 'memory://'
    RATELIMIT_ENABLED = True
    QR_ISSUE_RATE_LIMIT = os.environ.get('QR_ISSUE_RATE_LIMIT') or '5 per minute'

    # QR sessions
    QR_SECRET_KEY = os.environ.get('QR_SECRET_KEY') or 'dev-qr-secret-change-in-production'
    QR_SESSION_TTL_SECONDS = 90
    QR_REDEMPTION_WINDOW_SECONDS = 15 * 60
    SESSION_REAP_INTERVAL_SECONDS = 30
    SESSION_REAPER_ENABLED = True
    APP_BASE_URL = (os.environ.get('APP_BASE_URL') or 'http://localhost:5000').rstrip('/')
    ATTENDANCE_FORM_PATH = '/index.html'

    # Attendance policy defaults
    ATTENDANCE_REQUIRE_ENROLLMENT = _env_bool('ATTENDANCE_REQUIRE_ENROLLMENT', True)
    GEOFENCE_MIN_RADIUS_METERS = 10
    GEOFENCE_MAX_RADIUS_METERS = 100000
    GEOFENCE_DEFAULT_RADIUS_METERS = 120
    GEOFENCE_CLAMP_RADIUS = True

    # Signature payloads
    SIGNATURE_MAX_DATA_URL_LENGTH = 700000
    SIGNATURE_MIN_BYTES = 120
    SIGNATURE_MAX_BYTES = 500000

    # Data store
    ATTENDANCE_STORE_TIMEOUT_SECONDS = 5
    ATTENDANCE_LOOKUP_WORKERS = 8

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = os.environ.get('LOG_FILE') or 'logs/app.log'


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DEV_DATABASE_URL') or \
        'sqlite:///qr_attendance_dev.db'


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')

    # Must be set in production
    QR_SECRET_KEY = os.environ.get('QR_SECRET_KEY')
    SECRET_KEY = os.environ.get('SECRET_KEY')
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY')

    # Enhanced security
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    LOG_FILE = os.environ.get('LOG_FILE') or '/app/logs/app.log'


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    JWT_SECRET_KEY = 'test-jwt-secret-key-with-enough-length'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=5)
    QR_SECRET_KEY = 'test-qr-secret'
    SESSION_REAPER_ENABLED = False
    ATTENDANCE_REQUIRE_ENROLLMENT = True
    LOG_LEVEL = 'WARNING'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Get configuration by name."""
    return config.get(config_name or os.environ.get('FLASK_ENV', 'default'), DevelopmentConfig)


def store_engine_options(database_uri, timeout):
    """Engine options that bound pool checkout, connect and statement time by ``timeout``."""
    uri = str(database_uri or '')
    if uri.startswith('sqlite'):
        options = {'connect_args': {'timeout': timeout}}
        # In-memory databases run on a single static connection without a pool timeout
        if ':memory:' not in uri and uri not in ('sqlite://', 'sqlite:///'):
            options['pool_timeout'] = timeout
        return options

    options = {'pool_timeout': timeout, 'pool_pre_ping': True}
    if uri.startswith('postgres'):
        options['connect_args'] = {
            'connect_timeout': max(1, int(timeout)),
            'options': f'-c statement_timeout={int(timeout * 1000)}'
        }
    return options
