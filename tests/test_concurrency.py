import threading

from sqlalchemy import func, select

from docgate.errors import DenyReason
from docgate.models import AuditEntry, MfaGrant, db
from docgate.services.verification import VerificationEngine

EMAIL = 'alice@example.com'


def test_last_download_slot_is_granted_once(app, orchestrator, order, documents):
    result = orchestrator.issue_grant(order.id, EMAIL, 'Alice', 'mfa', documents)
    token = result['token']
    engine = VerificationEngine.from_app(app)
    code = engine.store.find_by_token(token).verification_code
    assert engine.submit_identity(token, EMAIL).allowed
    assert engine.submit_code(token, EMAIL, code).allowed
    assert engine.verify(token, EMAIL).allowed
    assert engine.verify(token, EMAIL).allowed
    db.session.remove()

    decisions = []
    errors = []
    barrier = threading.Barrier(10)

    def attempt():
        with app.app_context():
            barrier.wait()
            try:
                decisions.append(VerificationEngine.from_app(app).verify(token, EMAIL))
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=attempt) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sum(d.allowed for d in decisions) == 1
    assert {d.reason for d in decisions if not d.allowed} == {DenyReason.QUOTA_EXCEEDED}
    assert db.session.get(MfaGrant, result['session_id']).download_count == 3
    assert db.session.execute(select(func.count()).select_from(AuditEntry)).scalar() == 14
