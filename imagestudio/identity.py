"""Bearer-token identity resolution.

Tokens are issued by the external identity provider. Unlike a bare claims
decode, the signature is always verified: either with a shared HS secret or
with the provider's published JWKS keys.
"""

import logging
from dataclasses import dataclass

import jwt
from flask import current_app, g, request
from flask_login import UserMixin

from .errors import AuthError, StudioError, ProviderError
from .extensions import login_manager
from .logs import log_step

logger = logging.getLogger(__name__)

EMAIL_CLAIMS = ("email", "primaryEmailAddress", "email_address")
USER_ID_CLAIMS = ("sub", "user_id", "id")

_jwks_clients = {}


@dataclass(frozen=True)
class Identity(UserMixin):
    user_id: str
    email: str
    # Claim value as issued; billing lookups are case-sensitive.
    raw_email: str = None

    def get_id(self):
        return self.user_id


def bearer_credential(header_value):
    """Return the raw token from an ``Authorization`` header value."""
    if not header_value:
        raise AuthError("missing-credential")
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("missing-credential")
    return token.strip()


def _jwks_client(url):
    client = _jwks_clients.get(url)
    if client is None:
        client = jwt.PyJWKClient(url, cache_keys=True, timeout=10)
        _jwks_clients[url] = client
    return client


def _verification_key(credential, config):
    jwks_url = config.get("IDENTITY_JWKS_URL")
    if jwks_url:
        try:
            return _jwks_client(jwks_url).get_signing_key_from_jwt(credential).key
        except jwt.PyJWKClientConnectionError as e:
            log_step(logger, "JWKS fetch failed", logging.ERROR, url=jwks_url, error=str(e))
            raise ProviderError("identity provider unreachable", step="jwks") from e
        except jwt.PyJWTError as e:
            raise AuthError("invalid-token") from e
    secret = config.get("IDENTITY_JWT_SECRET")
    if not secret:
        raise StudioError("identity verification is not configured")
    return secret


def _first_claim(claims, names):
    for name in names:
        value = claims.get(name)
        if value:
            return str(value)
    return None


def resolve_identity(credential, config=None) -> Identity:
    """Verify ``credential`` and return the identity it asserts."""
    if not credential:
        raise AuthError("missing-credential")
    config = config if config is not None else current_app.config

    key = _verification_key(credential, config)
    audience = config.get("IDENTITY_AUDIENCE")
    options = {}
    if not audience:
        options["verify_aud"] = False
    try:
        claims = jwt.decode(
            credential,
            key,
            algorithms=config.get("IDENTITY_JWT_ALGORITHMS") or ["HS256"],
            audience=audience,
            issuer=config.get("IDENTITY_ISSUER"),
            options=options,
        )
    except jwt.PyJWTError as e:
        log_step(logger, "Token rejected", logging.WARNING, error=str(e))
        raise AuthError("invalid-token") from e

    email = _first_claim(claims, EMAIL_CLAIMS)
    if not email:
        raise AuthError("email-missing")
    user_id = _first_claim(claims, USER_ID_CLAIMS)
    if not user_id:
        raise AuthError("invalid-token")
    email = email.strip()
    return Identity(user_id=user_id, email=email.lower(), raw_email=email)


def identity_from_request():
    """Resolve the identity of the current request; raises ``AuthError``."""
    return resolve_identity(bearer_credential(request.headers.get("Authorization")))


@login_manager.request_loader
def load_identity(req):
    try:
        return resolve_identity(bearer_credential(req.headers.get("Authorization")))
    except AuthError as e:
        g.auth_error = e.message
        return None


@login_manager.unauthorized_handler
def unauthorized():
    raise AuthError(g.pop("auth_error", "missing-credential"))
