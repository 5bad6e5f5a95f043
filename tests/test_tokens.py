import jwt
import pytest

from docgate.errors import InvalidSignature
from docgate.services.tokens import (
    codes_match,
    decode_portal_jwt,
    make_opaque,
    new_otp,
    new_temporary_password,
    new_token,
    resolve_opaque,
    sign_portal_jwt,
)


def test_new_token_is_unique_and_url_safe():
    tokens = {new_token() for _ in range(200)}
    assert len(tokens) == 200
    for token in tokens:
        assert len(token) >= 43
        assert set(token) <= set('ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_')


def test_otp_is_six_digits():
    for _ in range(50):
        code = new_otp()
        assert len(code) == 6 and code.isdigit()


def test_temporary_password_is_not_empty():
    assert len(new_temporary_password()) >= 12


def test_codes_match_strips_input():
    assert codes_match('123456', ' 123456 ')
    assert not codes_match('123456', '123457')
    assert not codes_match('123456', None)


def test_opaque_round_trip_and_tamper(app):
    opaque = make_opaque('payload-1', ts=1_700_000_000)
    assert resolve_opaque(opaque) == ('payload-1', 1_700_000_000)

    tampered = ('A' if opaque[5] != 'A' else 'B').join((opaque[:5], opaque[6:]))
    with pytest.raises(InvalidSignature):
        resolve_opaque(tampered)
    with pytest.raises(InvalidSignature):
        resolve_opaque('abc')


def test_opaque_max_age(app):
    opaque = make_opaque('x', ts=1000)
    assert resolve_opaque(opaque, max_age=60, now=1030)[0] == 'x'
    with pytest.raises(InvalidSignature):
        resolve_opaque(opaque, max_age=60, now=1100)


def test_opaque_depends_on_signing_key(app):
    opaque = make_opaque('x', ts=1000)
    app.config['URL_SIGNING_KEY'] = 'another-key'
    with pytest.raises(InvalidSignature):
        resolve_opaque(opaque)


def test_portal_jwt_scope(app):
    token = sign_portal_jwt('grant-1', 'jti-1', 4_000_000_000, 'alice@example.com', True)
    claims = decode_portal_jwt(token)
    assert claims['sub'] == 'grant-1'
    assert claims['pwd_change'] is True

    foreign = jwt.encode({'sub': 'grant-1', 'exp': 4_000_000_000}, app.config['JWT_PRIVATE_KEY'], algorithm='HS256')
    with pytest.raises(jwt.InvalidTokenError):
        decode_portal_jwt(foreign)
