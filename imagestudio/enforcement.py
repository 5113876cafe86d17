from .identity import resolve_identity
from .ledger import Accepted, refund, try_consume


def enforce_and_record(credential, action) -> Accepted:
    """Resolve the caller and consume one unit of quota for ``action``.

    Raises ``AuthError`` for a bad credential and ``QuotaExceeded`` when the
    period's limit is already reached. Must run before the image provider
    is called.
    """
    identity = resolve_identity(credential)
    return record_usage(identity, action)


def record_usage(identity, action) -> Accepted:
    result = try_consume(identity.email, action, user_id=identity.user_id)
    if not isinstance(result, Accepted):
        raise result.to_error()
    return result


def refund_usage(identity, action):
    """Undo a recorded unit after the downstream image call failed."""
    return refund(identity.email, action)
