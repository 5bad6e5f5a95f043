import os


def _int(name, default):
    return int(os.environ.get(name, str(default)))


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///local.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    STORE_TIMEOUT = _int('STORE_TIMEOUT', 10)
    JWT_PRIVATE_KEY = os.environ.get('JWT_PRIVATE_KEY')
    JWT_PUBLIC_KEY = os.environ.get('JWT_PUBLIC_KEY')
    JWT_ALG = os.environ.get('JWT_ALG', 'RS256')
    PORTAL_SESSION_MINUTES = _int('PORTAL_SESSION_MINUTES', 60)
    URL_SIGNING_KEY = os.environ.get('URL_SIGNING_KEY', 'salt')
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    USE_REDIS = os.environ.get('USE_REDIS', '1')
    BASE_URL = os.environ.get('BASE_URL', 'http://localhost:5000')
    ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')
    ADMIN_EMAIL = os.environ.get('ADMIN_EMAIL', 'admin@localhost')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # blob store
    BLOB_ROOT = os.environ.get('BLOB_ROOT', 'blobs')
    BLOB_URL_TTL_MINUTES = _int('BLOB_URL_TTL_MINUTES', 60)

    # notifications
    MAIL_API_URL = os.environ.get('MAIL_API_URL')
    MAIL_API_KEY = os.environ.get('MAIL_API_KEY')
    MAIL_FROM = os.environ.get('MAIL_FROM', 'no-reply@localhost')
    NOTIFY_TIMEOUT = _int('NOTIFY_TIMEOUT', 10)
    NOTIFY_MAX_ATTEMPTS = _int('NOTIFY_MAX_ATTEMPTS', 5)

    # verification
    DOWNLOAD_WINDOW_TZ = os.environ.get('DOWNLOAD_WINDOW_TZ', 'UTC')
    RATE_LIMIT_PER_MINUTE = _int('RATE_LIMIT_PER_MINUTE', 20)
    PORTAL_MIN_PASSWORD_LENGTH = _int('PORTAL_MIN_PASSWORD_LENGTH', 10)
    MFA_MAX_CODE_ATTEMPTS = _int('MFA_MAX_CODE_ATTEMPTS', 5)

    # issuance defaults, overridable per grant through options
    LINK_EXPIRATION_HOURS = _int('LINK_EXPIRATION_HOURS', 72)
    LINK_MAX_DOWNLOADS = _int('LINK_MAX_DOWNLOADS', 5)
    MFA_EXPIRATION_HOURS = _int('MFA_EXPIRATION_HOURS', 48)
    MFA_MAX_DOWNLOADS = _int('MFA_MAX_DOWNLOADS', 3)
    PROGRESSIVE_STAGE_INTERVAL_HOURS = _int('PROGRESSIVE_STAGE_INTERVAL_HOURS', 24)
    PROGRESSIVE_EXPIRATION_HOURS = _int('PROGRESSIVE_EXPIRATION_HOURS', 720)
    PORTAL_EXPIRATION_HOURS = _int('PORTAL_EXPIRATION_HOURS', 720)
    QR_EXPIRATION_HOURS = _int('QR_EXPIRATION_HOURS', 24)
    BLOCKCHAIN_EXPIRATION_HOURS = _int('BLOCKCHAIN_EXPIRATION_HOURS', 720)

    # callable returning naive UTC; None means the wall clock
    TIME_PROVIDER = None
    # mailer instance with send(to_address, template, data); None builds one from MAIL_API_URL
    MAILER = None

    def __init__(self):
        self.SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}
        if not self.SQLALCHEMY_DATABASE_URI.startswith('sqlite'):
            self.SQLALCHEMY_ENGINE_OPTIONS['pool_timeout'] = self.STORE_TIMEOUT
        # Optional fallbacks to support Secret Files on Render (/etc/secrets)
        if not self.JWT_PRIVATE_KEY:
            self.JWT_PRIVATE_KEY = _read_secret('/etc/secrets/jwt.key', 'jwt.key')
        if not self.JWT_PUBLIC_KEY:
            self.JWT_PUBLIC_KEY = _read_secret('/etc/secrets/jwt.pub', 'jwt.pub')
        if (not self.SECRET_KEY) or self.SECRET_KEY == 'dev':
            self.SECRET_KEY = _read_secret('/etc/secrets/secret_key') or self.SECRET_KEY
        if (not self.URL_SIGNING_KEY) or self.URL_SIGNING_KEY == 'salt':
            self.URL_SIGNING_KEY = _read_secret('/etc/secrets/url_signing_key') or self.URL_SIGNING_KEY


def _read_secret(*paths):
    for p in paths:
        try:
            with open(p, 'r') as f:
                return f.read().strip()
        except OSError:
            continue
    return None
