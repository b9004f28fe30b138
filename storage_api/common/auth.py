from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, MutableMapping

import jwt
from jwt import PyJWTError

from storage_api.common.config import Settings

logger = logging.getLogger("auth")


class AuthenticationError(Exception):
    """Raised when the caller cannot be identified."""


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a request."""

    user_id: str
    roles: frozenset[str]
    permissions: frozenset[str]
    token: str | None
    claims: Mapping[str, Any]
    source: str

    def has_permission(self, permission: str) -> bool:
        if "*" in self.permissions or permission in self.permissions:
            return True
        # "storage:*" grants every "storage:<action>"
        namespace, sep, _ = permission.partition(":")
        return bool(sep) and f"{namespace}:*" in self.permissions

    def has_role(self, role: str) -> bool:
        return role == "*" or role in self.roles

    def missing_permissions(self, permissions: Iterable[str]) -> list[str]:
        return [p for p in permissions if not self.has_permission(p)]

    def missing_roles(self, roles: Iterable[str]) -> list[str]:
        return [role for role in roles if not self.has_role(role)]


class Authenticator:
    """Resolves a :class:`Principal` from request headers.

    With ``AUTH_ENABLED`` a signed bearer token is required and its ``sub``
    claim becomes the user id. Otherwise the service trusts the ``X-User-Id``
    header set by an upstream gateway, which must still be present.
    """

    def __init__(self, settings: Settings):
        self._settings = settings

    def authenticate(
        self,
        authorization_header: str | None,
        fallback_user_id: str | None,
    ) -> Principal:
        if not self._settings.AUTH_ENABLED:
            return self._principal_from_gateway(fallback_user_id)

        token = _extract_bearer(authorization_header)
        claims = self._decode_token(token)

        subject = claims.get("sub")
        if not subject:
            raise AuthenticationError("Token missing 'sub' claim")

        permissions = {p for p in self._settings.AUTH_DEFAULT_PERMISSIONS if p}
        permissions.update(_ensure_list(claims.get("permissions")))
        permissions.update(_ensure_scopes(claims.get("scope")))
        roles = _ensure_list(claims.get("roles") or claims.get("role"))

        return Principal(
            user_id=str(subject),
            roles=frozenset(roles or [r for r in self._settings.AUTH_DEFAULT_ROLES if r]),
            permissions=frozenset(permissions),
            token=token,
            claims=claims,
            source="bearer",
        )

    def _principal_from_gateway(self, user_id: str | None) -> Principal:
        if user_id is None or not user_id.strip():
            raise AuthenticationError("Missing X-User-Id header")
        return Principal(
            user_id=user_id.strip(),
            roles=frozenset(self._settings.AUTH_DEFAULT_ROLES),
            permissions=frozenset(self._settings.AUTH_DEFAULT_PERMISSIONS or ["*"]),
            token=None,
            claims={},
            source="gateway",
        )

    def _decode_token(self, token: str) -> MutableMapping[str, Any]:
        secret = self._settings.AUTH_TOKEN_SECRET
        if not secret:
            raise AuthenticationError(
                "Authentication secret is not configured while AUTH_ENABLED is true"
            )

        decode_kwargs: dict[str, Any] = {
            "algorithms": [self._settings.AUTH_TOKEN_ALGORITHM],
        }
        if self._settings.AUTH_TOKEN_AUDIENCE:
            decode_kwargs["audience"] = self._settings.AUTH_TOKEN_AUDIENCE
        if self._settings.AUTH_TOKEN_ISSUER:
            decode_kwargs["issuer"] = self._settings.AUTH_TOKEN_ISSUER
        if self._settings.AUTH_TOKEN_LEEWAY:
            decode_kwargs["leeway"] = self._settings.AUTH_TOKEN_LEEWAY

        try:
            return jwt.decode(token, secret, **decode_kwargs)
        except PyJWTError as exc:
            logger.debug("token_decode_error", exc_info=exc)
            raise AuthenticationError("Invalid authentication token") from exc


def _extract_bearer(authorization_header: str | None) -> str:
    if not authorization_header or not authorization_header.strip():
        raise AuthenticationError("Missing bearer token")
    scheme, _, credentials = authorization_header.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        raise AuthenticationError("Invalid authorization header")
    return credentials.strip()


def _ensure_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if str(item)]
    return []


def _ensure_scopes(value: Any) -> list[str]:
    if isinstance(value, str):
        return [item for item in value.split() if item]
    return _ensure_list(value)
