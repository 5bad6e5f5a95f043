import hmac
import io

from flask import Blueprint, current_app, jsonify, request, send_file

from .errors import GrantNotFound, InvalidRequest
from .models import Order
from .services.audit import download_statistics, list_attempts, serialize_attempt
from .services.delivery import DeliveryOrchestrator, grant_url
from .services.maintenance import run_maintenance
from .services.qr import make_qr_bytes
from .services.store import GrantStore, guarded

bp = Blueprint('admin', __name__)


@bp.before_request
def require_admin_key():
    # Simple API-key auth
    api_key = request.headers.get('X-Admin-Key') or ''
    expected = current_app.config.get('ADMIN_API_KEY') or ''
    if not expected or not hmac.compare_digest(api_key.encode(), expected.encode()):
        return jsonify({'error': 'unauthorized'}), 401
    return None


@bp.post('/orders')
def create_order():
    data = request.get_json(silent=True) or {}
    order = Order(
        reference=data.get('reference'),
        customer_email=(data.get('customer_email') or '').strip().lower() or None,
        customer_name=data.get('customer_name'),
    )
    if data.get('id'):
        order.id = str(data['id'])
    with guarded() as session:
        session.add(order)
        session.commit()
    return jsonify({'ok': True, 'order_id': order.id}), 201


@bp.post('/grants')
def issue_grant():
    data = request.get_json(silent=True) or {}
    if not data.get('order_id'):
        raise InvalidRequest('order_id is required')
    descriptor = DeliveryOrchestrator.from_app().issue_grant(
        order_id=str(data['order_id']),
        recipient_email=data.get('recipient_email'),
        recipient_name=data.get('recipient_name'),
        strategy=data.get('strategy'),
        documents=data.get('documents'),
        options=data.get('options'),
    )
    return jsonify(descriptor), 201


@bp.post('/grants/<grant_id>/revoke')
def revoke_grant(grant_id: str):
    changed = DeliveryOrchestrator.from_app().revoke_grant(grant_id)
    return jsonify({'ok': True, 'grant_id': grant_id, 'revoked': changed})


@bp.get('/grants/<grant_id>/qr.png')
def grant_qr(grant_id: str):
    grant = GrantStore().get(grant_id)
    if grant is None:
        raise GrantNotFound(f'grant {grant_id} not found')
    if grant.strategy != 'qr':
        raise InvalidRequest('only qr grants have a QR image')
    png = make_qr_bytes(grant_url(grant))
    return send_file(
        io.BytesIO(png), mimetype='image/png', as_attachment=False, download_name=f"qr_{grant.id}.png",
        etag=False,
    )


@bp.get('/statistics')
def statistics():
    return jsonify(download_statistics(order_id=request.args.get('order_id')))


@bp.get('/audit')
def audit():
    limit = request.args.get('limit', 100, type=int)
    entries = list_attempts(grant_id=request.args.get('grant_id'), limit=min(max(limit, 1), 1000))
    return jsonify({'attempts': [serialize_attempt(e) for e in entries]})


@bp.post('/orders/<order_id>/new-links')
def new_links(order_id: str):
    data = request.get_json(silent=True) or {}
    notification_id = DeliveryOrchestrator.from_app().request_new_links(order_id, data.get('recipient_email'))
    return jsonify({'ok': True, 'notification_id': notification_id}), 202


@bp.post('/maintenance/<task>')
def maintenance(task: str):
    now = current_app.config['TIME_PROVIDER']() if current_app.config.get('TIME_PROVIDER') else None
    return jsonify({'ok': True, 'affected': run_maintenance(task, now=now)})
