import os

from flask import Blueprint, current_app, jsonify, request, send_from_directory

from .routes_api import decision_response
from .services.blobstore import BlobSigner
from .services.delivery import ROUTES
from .services.device import client_hints
from .services.verification import VerificationEngine

bp = Blueprint('public', __name__)

# strategies whose landing page only explains the next step
_INTERACTIVE = {
    'mfa': 'POST /api/mfa/<token>/identity, then /api/mfa/<token>/code',
    'portal': 'POST /api/portal/login',
}


def access(token: str, strategy: str):
    identity = request.args.get('identity')
    if strategy in _INTERACTIVE or not identity:
        return jsonify({
            'strategy': strategy,
            'next': _INTERACTIVE.get(strategy, 'GET with ?identity=<email>'),
        })
    hints, resp_cookie = client_hints()
    decision = VerificationEngine.from_app().verify(
        token, identity, hints, document_id=request.args.get('document_id'), strategy=strategy,
    )
    return decision_response(decision, resp_cookie)


for _strategy, _route in ROUTES.items():
    bp.add_url_rule(
        f'/{_route}/<token>', f'access_{_strategy}', access,
        methods=['GET'], defaults={'strategy': _strategy},
    )


@bp.get('/files/<signed>')
def blob(signed: str):
    path = BlobSigner.from_app().resolve(signed)
    root = os.path.abspath(current_app.config['BLOB_ROOT'])
    return send_from_directory(root, path, as_attachment=True, max_age=0)
