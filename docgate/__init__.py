import logging

from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_migrate import Migrate
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import Config
from .errors import DocgateError
from .models import db
from .services.notifications import mailer_from_config

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config())
    if overrides:
        app.config.update(overrides)
    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    db.init_app(app)
    Migrate(app, db)
    # Trust reverse proxy headers (Render/Heroku)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)
    app.extensions['docgate.mailer'] = app.config.get('MAILER') or mailer_from_config(app.config)

    with app.app_context():
        db.create_all()

    from .routes_public import bp as public_bp
    from .routes_api import bp as api_bp
    from .routes_admin import bp as admin_bp
    app.register_blueprint(public_bp)
    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(admin_bp, url_prefix='/admin')

    @app.errorhandler(DocgateError)
    def handle_docgate_error(exc):
        if exc.status >= 500:
            logger.error('%s: %s', exc.code, exc)
        return jsonify({'error': exc.code}), exc.status

    @app.get('/health')
    def health():
        return {'ok': True}

    return app
