"""Optional bearer-token check for mutating routes.

Tokens are HS256 JWTs signed with a shared secret. The token subject is the
GitHub handle of the verifier acting on the application.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import jwt

from grantflow.errors import ApiError


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


@dataclass
class AuthContext:
    subject: str
    claims: dict[str, Any]


@dataclass
class JwtSecurityConfig:
    enabled: bool
    shared_secret: str = ""
    issuer: str = ""
    audience: str = ""
    required_claims: list[str] = field(default_factory=lambda: ["sub", "exp"])

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        secret = env.get("JWT_SHARED_SECRET", "").strip()
        claims = [x.strip() for x in env.get("JWT_REQUIRED_CLAIMS", "sub,exp").split(",") if x.strip()]
        return cls(
            enabled=bool(secret),
            shared_secret=secret,
            issuer=env.get("JWT_ISSUER", "").strip(),
            audience=env.get("JWT_AUDIENCE", "").strip(),
            required_claims=claims,
        )


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise _unauthorized("missing Authorization bearer token")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    try:
        claims = jwt.decode(
            token.strip(),
            cfg.shared_secret,
            algorithms=["HS256"],
            audience=cfg.audience or None,
            issuer=cfg.issuer or None,
            options={"require": cfg.required_claims, "verify_aud": bool(cfg.audience)},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("token expired") from None
    except jwt.InvalidTokenError as exc:
        raise _unauthorized(f"invalid token: {exc}") from None

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise _unauthorized("missing subject claim")
    return AuthContext(subject=subject, claims=claims)


def require_subject(*, auth_subject: str | None, github_username: str) -> None:
    """Bind the acting verifier to the token subject when authentication is on."""
    if auth_subject is None:
        return
    if auth_subject.strip().lower() != github_username.strip().lower():
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message=f"token subject does not match {github_username}",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
