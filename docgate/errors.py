import enum


class DenyReason(str, enum.Enum):
    INVALID_TOKEN = 'invalid_token'
    EXPIRED = 'expired'
    IDENTITY_MISMATCH = 'identity_mismatch'
    QUOTA_EXCEEDED = 'quota_exceeded'
    OUTSIDE_WINDOW = 'outside_window'
    NOT_YET_UNLOCKED = 'not_yet_unlocked'
    VERIFICATION_REQUIRED = 'verification_required'
    IP_NOT_ALLOWED = 'ip_not_allowed'
    IDENTITY_NOT_CONFIRMED = 'identity_not_confirmed'
    INVALID_CODE = 'invalid_code'
    TOO_MANY_ATTEMPTS = 'too_many_attempts'
    INVALID_CREDENTIALS = 'invalid_credentials'
    WEAK_PASSWORD = 'weak_password'
    DOCUMENT_UNAVAILABLE = 'document_unavailable'


# audit-only reason for attempts that ended in a store failure
SYSTEM_ERROR_REASON = 'system_error'


class DocgateError(Exception):
    """Base error for docgate."""

    code = 'error'
    status = 500


class TokenCollision(DocgateError):
    """A freshly generated token clashed with an existing one twice in a row."""

    code = 'token_collision'
    status = 409


class NoDocumentsAvailable(DocgateError):
    code = 'no_documents_available'
    status = 422


class OrderNotFound(DocgateError):
    code = 'order_not_found'
    status = 404


class GrantNotFound(DocgateError):
    code = 'grant_not_found'
    status = 404


class InvalidRequest(DocgateError, ValueError):
    code = 'invalid_request'
    status = 400


class UnknownStrategy(InvalidRequest):
    code = 'unknown_strategy'


class DependencyUnavailable(DocgateError):
    """The record store, blob store or mail relay did not answer in time."""

    code = 'dependency_unavailable'
    status = 503


class SystemFailure(DocgateError):
    """Unexpected store or blob failure."""

    code = 'system_error'
    status = 500


class InvalidSignature(DocgateError):
    code = 'invalid_signature'
    status = 403


class RateLimited(DocgateError):
    code = 'rate_limited'
    status = 429
