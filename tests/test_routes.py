from datetime import datetime
import os
from urllib.parse import urlparse

from docgate.models import MfaGrant, db

EMAIL = 'alice@example.com'


def _path(url):
    parsed = urlparse(url)
    return parsed.path + (f'?{parsed.query}' if parsed.query else '')


def _issue(client, admin_headers, strategy, documents, **options):
    resp = client.post('/admin/orders', json={'id': 'ord-42', 'reference': 'REV-42'}, headers=admin_headers)
    assert resp.status_code == 201
    resp = client.post('/admin/grants', headers=admin_headers, json={
        'order_id': 'ord-42',
        'recipient_email': EMAIL,
        'recipient_name': 'Alice',
        'strategy': strategy,
        'documents': documents,
        'options': options,
    })
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def _confirm_mfa(client, token, mailer):
    code = mailer.last('mfa_access')['data']['verification_code']
    assert client.post(f'/api/mfa/{token}/identity', json={'identity': EMAIL}).status_code == 200
    assert client.post(f'/api/mfa/{token}/code', json={'identity': EMAIL, 'code': code}).status_code == 200


def test_health(client):
    assert client.get('/health').get_json() == {'ok': True}


def test_admin_requires_key(client):
    assert client.post('/admin/orders', json={}).status_code == 401
    assert client.post('/admin/orders', json={}, headers={'X-Admin-Key': 'wrong'}).status_code == 401


def test_issue_and_download_link(app, client, admin_headers, documents):
    result = _issue(client, admin_headers, 'link', documents)
    first = result['grants'][0]

    resp = client.get(_path(first['url']))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['allowed'] is True
    assert body['strategy'] == 'link'
    [doc] = body['documents']
    assert doc['download_url'].startswith('https://docs.example.test/files/')
    assert resp.headers['Cache-Control'] == 'no-store'

    blob_dir = os.path.join(app.config['BLOB_ROOT'], 'reports')
    os.makedirs(blob_dir)
    with open(os.path.join(blob_dir, 'draft.pdf'), 'wb') as f:
        f.write(b'%PDF-1.4 draft')
    resp = client.get(_path(doc['download_url']))
    assert resp.status_code == 200
    assert resp.data == b'%PDF-1.4 draft'


def test_external_documents_keep_their_url(client, admin_headers, documents):
    result = _issue(client, admin_headers, 'link', documents)
    resp = client.get(_path(result['grants'][1]['url']))
    assert resp.get_json()['documents'][0]['download_url'] == 'https://cdn.example.test/rev.pdf'


def test_tampered_blob_url(client):
    assert client.get('/files/not-a-signature').status_code == 403


def test_status_codes(client, admin_headers, documents, clock, mailer):
    result = _issue(client, admin_headers, 'mfa', documents, max_downloads=1)
    path = f"/api/verify/{result['token']}"
    resp = client.post(path, json={'identity': EMAIL})
    assert resp.status_code == 403
    assert resp.get_json()['reason'] == 'verification_required'
    _confirm_mfa(client, result['token'], mailer)

    assert client.post('/api/verify/unknown', json={'identity': EMAIL}).status_code == 401
    resp = client.post(path, json={'identity': 'eve@example.com'})
    assert resp.status_code == 403
    assert resp.get_json()['reason'] == 'identity_mismatch'
    assert client.post(path, json={'identity': EMAIL, 'document_id': 'nope'}).status_code == 404
    assert client.post(path, json={'identity': EMAIL}).status_code == 200
    resp = client.post(path, json={'identity': EMAIL})
    assert resp.status_code == 429
    assert resp.get_json() == {'allowed': False, 'reason': 'quota_exceeded'}

    clock.advance(hours=72)
    assert client.post(path, json={'identity': EMAIL}).status_code == 410


def test_progressive_locked_is_423(client, admin_headers, documents):
    result = _issue(client, admin_headers, 'progressive', documents)
    resp = client.get(_path(result['url']) + '&document_id=doc-3')
    assert resp.status_code == 423
    assert resp.get_json()['reason'] == 'not_yet_unlocked'


def test_interactive_routes_only_describe_next_step(client, admin_headers, documents):
    result = _issue(client, admin_headers, 'mfa', documents)
    resp = client.get(_path(result['url']))
    assert resp.status_code == 200
    assert resp.get_json()['strategy'] == 'mfa'
    assert db.session.get(MfaGrant, result['session_id']).download_count == 0


def test_public_route_checks_strategy(client, admin_headers, documents):
    result = _issue(client, admin_headers, 'qr', documents)
    resp = client.get(f"/blockchain/{result['verification_token']}?identity={EMAIL}")
    assert resp.status_code == 401


def test_mfa_api_flow(client, admin_headers, documents, mailer):
    result = _issue(client, admin_headers, 'mfa', documents)
    token = result['token']
    code = mailer.last('mfa_access')['data']['verification_code']

    assert client.post(f'/api/verify/{token}', json={'identity': EMAIL}).status_code == 403
    assert client.post(f'/api/mfa/{token}/code', json={'identity': EMAIL, 'code': code}).status_code == 403
    resp = client.post(f'/api/mfa/{token}/identity', json={'identity': EMAIL})
    assert resp.get_json()['state'] == 'pending_code'
    assert client.post(f'/api/mfa/{token}/code', json={'identity': EMAIL, 'code': 'x'}).status_code == 401
    resp = client.post(f'/api/mfa/{token}/code', json={'identity': EMAIL, 'code': code})
    assert resp.status_code == 200
    assert resp.get_json()['state'] == 'verified'
    assert client.post(f'/api/verify/{token}', json={'identity': EMAIL}).status_code == 200


def test_portal_session_flow(client, admin_headers, documents, mailer):
    result = _issue(client, admin_headers, 'portal', documents)
    temporary = mailer.last('portal_credentials')['data']['temporary_password']
    login = {'access_token': result['access_token'], 'identity': EMAIL}

    assert client.post('/api/portal/login', json={**login, 'password': 'bad'}).status_code == 401
    resp = client.post('/api/portal/login', json={**login, 'password': temporary})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['must_change_password'] is True
    session_token = body['session_token']

    change = {**login, 'current_password': temporary, 'new_password': 'a-much-better-password'}
    assert client.post('/api/portal/password', json=change).status_code == 401
    resp = client.post('/api/portal/password', json=change, headers={'Authorization': f'Bearer {session_token}'})
    assert resp.status_code == 200
    assert resp.get_json()['must_change_password'] is False
    assert resp.get_json()['session_token'] != session_token

    # the session that carried the temporary password is gone
    resp = client.post('/api/portal/password', json=change, headers={'Authorization': f'Bearer {session_token}'})
    assert resp.status_code == 401
    assert resp.get_json() == {'error': 'revoked'}


def test_portal_documents_need_a_login_session(client, admin_headers, documents, mailer):
    result = _issue(client, admin_headers, 'portal', documents)
    path = f"/api/verify/{result['access_token']}"

    resp = client.post(path, json={'identity': EMAIL})
    assert resp.status_code == 401
    assert resp.get_json() == {'allowed': False, 'reason': 'invalid_credentials'}
    resp = client.post(path, json={'identity': EMAIL}, headers={'Authorization': 'Bearer not-a-jwt'})
    assert resp.status_code == 401

    temporary = mailer.last('portal_credentials')['data']['temporary_password']
    login = client.post('/api/portal/login', json={
        'access_token': result['access_token'], 'identity': EMAIL, 'password': temporary,
    }).get_json()
    resp = client.post(path, json={'identity': EMAIL}, headers={'Authorization': f"Bearer {login['session_token']}"})
    assert resp.status_code == 200
    assert [d['id'] for d in resp.get_json()['documents']] == ['doc-1', 'doc-2', 'doc-3']


def test_portal_session_does_not_open_another_portal(client, admin_headers, documents, mailer):
    first = _issue(client, admin_headers, 'portal', documents)
    temporary = mailer.last('portal_credentials')['data']['temporary_password']
    session_token = client.post('/api/portal/login', json={
        'access_token': first['access_token'], 'identity': EMAIL, 'password': temporary,
    }).get_json()['session_token']
    second = _issue(client, admin_headers, 'portal', documents)

    resp = client.post(
        f"/api/verify/{second['access_token']}", json={'identity': EMAIL},
        headers={'Authorization': f'Bearer {session_token}'},
    )
    assert resp.status_code == 401


def test_proof_of_delivery_is_not_a_file_url(client, admin_headers, documents):
    result = _issue(client, admin_headers, 'blockchain', documents)
    resp = client.get(f"/files/{result['proof_of_delivery']}")
    assert resp.status_code == 403
    assert resp.get_json() == {'error': 'invalid_signature'}


def test_mfa_code_lockout_is_429(app, client, admin_headers, documents, mailer):
    app.config['MFA_MAX_CODE_ATTEMPTS'] = 1
    result = _issue(client, admin_headers, 'mfa', documents)
    token = result['token']
    code = mailer.last('mfa_access')['data']['verification_code']
    wrong = '000000' if code != '000000' else '111111'

    client.post(f'/api/mfa/{token}/identity', json={'identity': EMAIL})
    assert client.post(f'/api/mfa/{token}/code', json={'identity': EMAIL, 'code': wrong}).status_code == 401
    resp = client.post(f'/api/mfa/{token}/code', json={'identity': EMAIL, 'code': code})
    assert resp.status_code == 429
    assert resp.get_json() == {'allowed': False, 'reason': 'too_many_attempts'}


def test_issue_rejects_bad_numeric_options(client, admin_headers, documents):
    client.post('/admin/orders', json={'id': 'ord-8'}, headers=admin_headers)
    for options in (
        {'max_downloads': 0},
        {'expiration_hours': -4},
        {'download_window': [9]},
        {'download_window': ['nine', 18]},
    ):
        resp = client.post('/admin/grants', headers=admin_headers, json={
            'order_id': 'ord-8', 'recipient_email': EMAIL, 'strategy': 'mfa',
            'documents': documents, 'options': options,
        })
        assert resp.status_code == 400, options
        assert resp.get_json() == {'error': 'invalid_request'}


def test_qr_png(client, admin_headers, documents):
    result = _issue(client, admin_headers, 'qr', documents)
    resp = client.get(f"/admin/grants/{result['grant_id']}/qr.png", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.mimetype == 'image/png'
    assert resp.data.startswith(b'\x89PNG')
    assert client.get('/admin/grants/missing/qr.png', headers=admin_headers).status_code == 404


def test_issue_errors(client, admin_headers):
    resp = client.post('/admin/grants', headers=admin_headers, json={
        'order_id': 'missing', 'recipient_email': EMAIL, 'strategy': 'qr',
        'documents': [{'id': 'd', 'name': 'd', 'url': 'd.pdf'}],
    })
    assert resp.status_code == 404
    assert resp.get_json() == {'error': 'order_not_found'}

    client.post('/admin/orders', json={'id': 'ord-7'}, headers=admin_headers)
    resp = client.post('/admin/grants', headers=admin_headers, json={
        'order_id': 'ord-7', 'recipient_email': EMAIL, 'strategy': 'qr', 'documents': [],
    })
    assert resp.status_code == 422
    assert resp.get_json() == {'error': 'no_documents_available'}

    resp = client.post('/admin/grants', headers=admin_headers, json={
        'order_id': 'ord-7', 'recipient_email': EMAIL, 'strategy': 'fax', 'documents': [],
    })
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'unknown_strategy'}


def test_revoke_statistics_and_audit(client, admin_headers, documents):
    result = _issue(client, admin_headers, 'qr', documents)
    client.get(_path(result['url']))

    resp = client.post(f"/admin/grants/{result['grant_id']}/revoke", headers=admin_headers)
    assert resp.get_json()['revoked'] is True
    assert client.get(_path(result['url'])).status_code == 401

    stats = client.get('/admin/statistics?order_id=ord-42', headers=admin_headers).get_json()
    assert stats['total_tokens'] == 1
    assert stats['successful_downloads'] == 1
    assert stats['failed_attempts'] == 1

    attempts = client.get(f"/admin/audit?grant_id={result['grant_id']}", headers=admin_headers).get_json()
    assert sorted(a['success'] for a in attempts['attempts']) == [False, True]


def test_new_links_request(client, admin_headers, mailer):
    client.post('/admin/orders', json={'id': 'ord-9'}, headers=admin_headers)
    resp = client.post('/admin/orders/ord-9/new-links', json={'recipient_email': EMAIL}, headers=admin_headers)
    assert resp.status_code == 202
    assert mailer.last('admin_new_links_request')['to'] == 'ops@example.test'
    assert client.post('/admin/orders/nope/new-links', json={}, headers=admin_headers).status_code == 404


def test_maintenance_endpoint(client, admin_headers, documents, clock):
    _issue(client, admin_headers, 'qr', documents)
    clock.now = datetime(2026, 3, 4, 10, 0, 0)
    resp = client.post('/admin/maintenance/expire_stale_grants', headers=admin_headers)
    assert resp.get_json() == {'ok': True, 'affected': {'expire_stale_grants': 1}}
    resp = client.post('/admin/maintenance/reindex', headers=admin_headers)
    assert resp.status_code == 400


def test_rate_limit(app, client):
    app.config['RATE_LIMIT_PER_MINUTE'] = 2
    responses = [client.post('/api/verify/x', json={'identity': EMAIL}) for _ in range(5)]
    limited = [r for r in responses if r.status_code == 429]
    assert limited
    assert limited[0].get_json() == {'error': 'rate_limited'}
