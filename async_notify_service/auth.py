"""Bearer credential verification for push connections.

Tokens are JWTs signed with the application secret. The identity contract
accepted by the gateway is:

* user id: the ``userId`` claim, then ``user_id``, then the standard ``sub``
  claim. The first non-empty value wins, so an id-style claim always takes
  precedence over ``sub`` when both are present.
* display name: ``username``, then ``name``.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

import jwt

from .models import Identity

USER_ID_CLAIMS = ("userId", "user_id", "sub")
USERNAME_CLAIMS = ("username", "name")


class AuthenticationError(Exception):
    """Raised when a push connection cannot be authenticated."""

    def __init__(self, message: str = "Authentication error: Invalid token", code: str = "invalid_token"):
        super().__init__(message)
        self.code = code


def _first_claim(claims: Mapping[str, Any], names: Sequence[str]) -> Optional[str]:
    for name in names:
        value = claims.get(name)
        if value is not None and str(value).strip():
            return str(value)
    return None


def resolve_identity(claims: Mapping[str, Any]) -> Identity:
    """Normalise decoded token claims into an :class:`Identity`."""
    user_id = _first_claim(claims, USER_ID_CLAIMS)
    if user_id is None:
        raise AuthenticationError("Authentication error: Token carries no user id", code="missing_user_id")
    return Identity(user_id=user_id, username=_first_claim(claims, USERNAME_CLAIMS))


def extract_bearer_token(token: Optional[str] = None, authorization: Optional[str] = None) -> Optional[str]:
    """Return the credential from the handshake field or the ``Authorization`` header.

    The handshake field wins when both are present.
    """
    if token and token.strip():
        return token.strip()
    if authorization:
        value = authorization.strip()
        scheme, _, credential = value.partition(" ")
        if scheme.lower() == "bearer":
            return credential.strip() or None
        return value or None
    return None


class TokenVerifier:
    """Verify and decode HMAC/RSA signed JWTs with PyJWT."""

    def __init__(self, secret: str, algorithms: Sequence[str] = ("HS256",), leeway: float = 0.0):
        if not secret:
            raise ValueError("A JWT secret is required to verify push connections")
        self.secret = secret
        self.algorithms = list(algorithms)
        self.leeway = leeway

    def verify(self, token: str) -> Identity:
        """Decode ``token`` or raise :class:`AuthenticationError`."""
        if not token:
            raise AuthenticationError("Authentication error: No token provided", code="missing_token")
        try:
            claims = jwt.decode(token, self.secret, algorithms=self.algorithms, leeway=self.leeway)
        except jwt.PyJWTError as exc:
            raise AuthenticationError(f"Authentication error: Invalid token ({exc})") from exc
        return resolve_identity(claims)

    def issue(self, claims: Mapping[str, Any]) -> str:
        """Sign ``claims`` with the configured secret, mainly for tools and tests."""
        return jwt.encode(dict(claims), self.secret, algorithm=self.algorithms[0])
