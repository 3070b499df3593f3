"""
Configuration classes for the EducAfric backend
"""
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
INSTANCE_PATH = os.path.join(BASE_DIR, 'instance')


def database_uri(default=None):
    """Resolve DATABASE_URL, correcting the legacy postgres:// scheme for SQLAlchemy"""
    database_url = os.environ.get('DATABASE_URL')
    if database_url and database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    if database_url:
        return database_url
    return default or f"sqlite:///{os.path.join(INSTANCE_PATH, 'educafric.db')}"


class Config:
    # Flask
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.environ.get('SECRET_KEY', 'your-secret-key-here')
    MAX_CONTENT_LENGTH = 10 * 1024 * 1024  # 10MB upload limit

    # Session cookies
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_SECURE = False

    # CSRF is checked manually for cookie-authenticated API calls
    WTF_CSRF_ENABLED = True
    WTF_CSRF_CHECK_DEFAULT = False

    # Database
    SQLALCHEMY_DATABASE_URI = database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Auth
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY', SECRET_KEY)
    JWT_ALGORITHM = 'HS256'
    JWT_EXPIRES_HOURS = int(os.environ.get('JWT_EXPIRES_HOURS', 24))
    BCRYPT_ROUNDS = int(os.environ.get('BCRYPT_ROUNDS', 12))
    DEFAULT_IMPORT_PASSWORD = os.environ.get('DEFAULT_IMPORT_PASSWORD', 'educafric2024')
    DEFAULT_USERNAME = os.environ.get('DEFAULT_USERNAME')
    DEFAULT_PASSWORD = os.environ.get('DEFAULT_PASSWORD')

    # Subscriptions
    TRIAL_DAYS = 30

    # Payments
    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
    STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET', '')
    MTN_CLIENT_ID = os.environ.get('MTN_CLIENT_ID', '')
    MTN_CLIENT_SECRET = os.environ.get('MTN_CLIENT_SECRET', '')
    MTN_BASE_URL = os.environ.get('MTN_BASE_URL', 'https://omapi-token.ynote.africa')
    MTN_TARGET_ENVIRONMENT = os.environ.get('MTN_TARGET_ENVIRONMENT', 'sandbox')

    # Messaging
    VONAGE_API_KEY = os.environ.get('VONAGE_API_KEY', '')
    VONAGE_API_SECRET = os.environ.get('VONAGE_API_SECRET', '')
    VONAGE_SMS_FROM = os.environ.get('VONAGE_SMS_FROM', 'EDUCAFRIC')
    VONAGE_WHATSAPP_FROM = os.environ.get('VONAGE_WHATSAPP_FROM', '14157386102')
    FCM_SERVER_KEY = os.environ.get('FCM_SERVER_KEY', '')

    BASE_URL = os.environ.get('BASE_URL', 'http://localhost:5000')

    # Bulletin verification
    VERIFICATION_RATE_LIMIT = int(os.environ.get('VERIFICATION_RATE_LIMIT', 20))
    VERIFICATION_RATE_WINDOW = 60 * 60  # 1 hour
    BULLETIN_VERIFICATION_VALID_DAYS = int(os.environ.get('BULLETIN_VERIFICATION_VALID_DAYS', 730))

    # Transport
    BUS_ARRIVAL_RADIUS_METERS = 300
    BUS_AVERAGE_SPEED_KMH = 20

    @staticmethod
    def init_app(app):
        pass


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    PREFERRED_URL_SCHEME = 'https'

    # Security
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = 3600  # 1 hour

    # Database
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 10,
        'pool_timeout': 30,
        'pool_recycle': 1800,  # Recycle connections after 30 minutes
        'max_overflow': 2
    }

    @staticmethod
    def init_app(app):
        app.config['SQLALCHEMY_DATABASE_URI'] = database_uri(app.config.get('SQLALCHEMY_DATABASE_URI'))

        # Set secret key
        app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', os.urandom(24))
        if not os.environ.get('JWT_SECRET_KEY'):
            app.config['JWT_SECRET_KEY'] = app.config['SECRET_KEY']

        # Enable proxy support for Render
        app.config['PROXY_FIX'] = True
        app.config['PREFERRED_URL_SCHEME'] = 'https'


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    JWT_SECRET_KEY = 'test-jwt-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    WTF_CSRF_ENABLED = False
    BCRYPT_ROUNDS = 4
    STRIPE_SECRET_KEY = 'sk_test_123'
    STRIPE_WEBHOOK_SECRET = 'whsec_test'
    MTN_CLIENT_ID = 'mtn-client'
    MTN_CLIENT_SECRET = 'mtn-secret'
    VONAGE_API_KEY = 'vonage-key'
    VONAGE_API_SECRET = 'vonage-secret'
    FCM_SERVER_KEY = 'fcm-key'
    BASE_URL = 'http://testserver'


config_by_name = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig,
}
