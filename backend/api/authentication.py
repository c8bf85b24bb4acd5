import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Optional, Tuple

import jwt
from jwt import InvalidTokenError, PyJWKClient, PyJWKClientError
from django.conf import settings
from rest_framework.authentication import BaseAuthentication
from rest_framework.exceptions import AuthenticationFailed

logger = logging.getLogger(__name__)

_JWK_CLIENTS: dict[str, PyJWKClient] = {}
_JWK_CLIENTS_LOCK = Lock()


@dataclass
class Principal:
    user_id: Optional[str]
    username: Optional[str]
    roles: list[str]
    permissions: list[str] = field(default_factory=list)
    is_authenticated: bool = True


def _jwk_client(jwks_url: str) -> PyJWKClient:
    with _JWK_CLIENTS_LOCK:
        client = _JWK_CLIENTS.get(jwks_url)
        if client is None:
            client = PyJWKClient(jwks_url)
            _JWK_CLIENTS[jwks_url] = client
        return client


def _verify_jwt_with_jwks(token: str, jwks_url: str) -> dict:
    if not jwks_url:
        raise AuthenticationFailed("JWKS URL is not configured.")
    try:
        header = jwt.get_unverified_header(token)
        alg = header.get("alg")
        if not alg:
            raise AuthenticationFailed("JWT alg is missing.")
        if alg not in settings.AUTH_ALGORITHMS:
            raise AuthenticationFailed("JWT alg is not allowed.")

        signing_key = _jwk_client(jwks_url).get_signing_key_from_jwt(token)

        options = {
            "verify_aud": bool(settings.AUTH_AUDIENCE),
            "verify_iss": bool(settings.AUTH_ISSUER),
        }
        kwargs = {
            "algorithms": [alg],
            "options": options,
        }
        if settings.AUTH_ISSUER:
            kwargs["issuer"] = settings.AUTH_ISSUER
        if settings.AUTH_AUDIENCE:
            kwargs["audience"] = settings.AUTH_AUDIENCE

        payload = jwt.decode(token, signing_key.key, **kwargs)
        if not isinstance(payload, dict):
            raise AuthenticationFailed("Invalid JWT payload.")
        return payload
    except (PyJWKClientError, InvalidTokenError, AuthenticationFailed, ValueError) as exc:
        logger.warning("JWT verification failed: %s", exc)
        if isinstance(exc, AuthenticationFailed):
            raise
        raise AuthenticationFailed("Invalid bearer token.") from exc


def _parse_claim_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        if "," in value:
            return [item.strip() for item in value.split(",") if item.strip()]
        return [value.strip()] if value.strip() else []
    return [str(value)]


def _claim(payload: dict, name: str):
    """Resolve a claim by name, following dots into nested objects (realm_access.roles)."""
    if not name:
        return None
    value = payload
    for part in name.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class BearerTokenAuthentication(BaseAuthentication):
    """
    JWT bearer authentication against the identity provider's JWKS.
    A fixed dev principal is used instead when DEV_AUTH_ENABLED is set.
    """

    def authenticate(self, request) -> Optional[Tuple[Principal, None]]:
        if settings.DEV_AUTH_ENABLED:
            principal = Principal(
                user_id=str(settings.DEV_AUTH_USER_ID),
                username=str(settings.DEV_AUTH_USER_ID),
                roles=list(settings.DEV_AUTH_ROLES),
                permissions=list(settings.DEV_AUTH_PERMISSIONS),
            )
            return principal, None

        if not settings.AUTH_ENABLED:
            return None

        auth_header = request.META.get("HTTP_AUTHORIZATION", "")
        if not auth_header.startswith("Bearer "):
            raise AuthenticationFailed("Missing bearer token.")

        token = auth_header.replace("Bearer ", "", 1).strip()
        if not token:
            raise AuthenticationFailed("Missing bearer token.")

        payload = _verify_jwt_with_jwks(token, settings.AUTH_JWKS_URL)

        user_id = _claim(payload, settings.AUTH_USER_ID_CLAIM)
        username = _claim(payload, settings.AUTH_USERNAME_CLAIM)
        if user_id is None:
            raise AuthenticationFailed("Token has no user id claim.")

        principal = Principal(
            user_id=str(user_id),
            username=str(username) if username is not None else None,
            roles=_parse_claim_list(_claim(payload, settings.AUTH_ROLES_CLAIM)),
            permissions=_parse_claim_list(
                _claim(payload, getattr(settings, "AUTH_PERMISSIONS_CLAIM", ""))
            ),
        )
        return principal, None

    def authenticate_header(self, request) -> str:
        return "Bearer"
