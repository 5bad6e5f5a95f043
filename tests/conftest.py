from datetime import datetime, timedelta

import pytest

from docgate import create_app
from docgate.errors import DependencyUnavailable
from docgate.models import Order, db
from docgate.services import rate_limit
from docgate.services.delivery import DeliveryOrchestrator

JWT_SECRET = 'portal-session-test-secret-0123456789abcdef'
ADMIN_KEY = 'admin-test-key'


class Clock:
    """Injectable clock returning naive UTC."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to_address, template, data):
        if self.fail:
            raise DependencyUnavailable('mail relay down')
        self.sent.append({'to': to_address, 'template': template, 'data': data})

    def last(self, template):
        return next(m for m in reversed(self.sent) if m['template'] == template)


@pytest.fixture
def clock():
    # Monday 10:00 UTC, inside the default 9-18 download window
    return Clock(datetime(2026, 3, 2, 10, 0, 0))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def app(tmp_path, clock, mailer):
    rate_limit.reset()
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'docgate.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'USE_REDIS': '0',
        'TIME_PROVIDER': clock,
        'MAILER': mailer,
        'ADMIN_API_KEY': ADMIN_KEY,
        'ADMIN_EMAIL': 'ops@example.test',
        'JWT_PRIVATE_KEY': JWT_SECRET,
        'JWT_PUBLIC_KEY': JWT_SECRET,
        'JWT_ALG': 'HS256',
        'URL_SIGNING_KEY': 'test-signing-key',
        'BASE_URL': 'https://docs.example.test',
        'BLOB_ROOT': str(tmp_path / 'blobs'),
        'RATE_LIMIT_PER_MINUTE': 10000,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.engine.dispose()
    rate_limit.reset()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {'X-Admin-Key': ADMIN_KEY}


@pytest.fixture
def order(app):
    order = Order(id='ord-1001', reference='REV-1001', customer_email='alice@example.com', customer_name='Alice')
    db.session.add(order)
    db.session.commit()
    return order


@pytest.fixture
def orchestrator(app):
    return DeliveryOrchestrator.from_app(app)


@pytest.fixture
def documents():
    return [
        {'id': 'doc-1', 'name': 'Draft review', 'url': 'reports/draft.pdf', 'review_stage': 'initial'},
        {'id': 'doc-2', 'name': 'Revision notes', 'url': 'https://cdn.example.test/rev.pdf', 'review_stage': 'revision'},
        {'id': 'doc-3', 'name': 'Final report', 'url': 'reports/final.pdf', 'review_stage': 'final',
         'checksum': 'abc123'},
    ]
