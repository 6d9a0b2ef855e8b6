"""
Bearer credential verification for the HTTP API and the realtime gateway.

Tokens are HS256 JWTs issued by the login service. The user id lives in the
``userId`` claim (``sub`` is accepted as a fallback). Revoked token ids are
tracked in-process so a logout can terminate live sockets.
"""
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import jwt
from fastapi import Request

from devradar.core.config import settings
from devradar.core.errors import (
    ExpiredCredentialError,
    InvalidCredentialError,
    MissingCredentialError,
)


@dataclass(frozen=True)
class Credential:
    user_id: str
    token_id: Optional[str]
    expires_at: Optional[float]

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CredentialVerifier:
    def __init__(
        self,
        secret: Optional[str],
        *,
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.time_fn = time_fn
        # token id -> token expiry; None when the expiry is unknown.
        self._revoked: Dict[str, Optional[float]] = {}
        self._lock = threading.Lock()

    def issue(self, user_id: str, *, ttl_seconds: int = 3600, token_id: Optional[str] = None) -> str:
        """Mint a token. Used by the login flow and by tests."""
        if not self.secret:
            raise InvalidCredentialError("Token signing is not configured")
        now = int(self.time_fn())
        claims = {
            "userId": user_id,
            "sub": user_id,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": token_id or uuid.uuid4().hex,
        }
        if self.issuer:
            claims["iss"] = self.issuer
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> Credential:
        if not token:
            raise MissingCredentialError("Token required")
        if not self.secret:
            raise InvalidCredentialError("Token verification is not configured")

        try:
            # Expiry is checked against our own clock below.
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"verify_exp": False, "require": ["exp"]},
            )
        except jwt.InvalidTokenError as e:
            raise InvalidCredentialError(f"Invalid token: {e}") from e

        user_id = claims.get("userId") or claims.get("sub")
        if not user_id or not isinstance(user_id, str):
            raise InvalidCredentialError("Token has no user id")

        credential = Credential(
            user_id=user_id,
            token_id=claims.get("jti"),
            expires_at=float(claims["exp"]),
        )
        if credential.is_expired(self.time_fn()):
            raise ExpiredCredentialError("Token expired")
        if self.is_revoked(credential):
            raise InvalidCredentialError("Token revoked")
        return credential

    def revoke(self, token_id: str, expires_at: Optional[float] = None) -> None:
        with self._lock:
            self._prune_revoked()
            self._revoked[token_id] = expires_at

    def _prune_revoked(self) -> None:
        # An expired token is refused as expired before the revocation check.
        now = self.time_fn()
        stale = [tid for tid, exp in self._revoked.items() if exp is not None and now >= exp]
        for tid in stale:
            del self._revoked[tid]

    @property
    def revoked_count(self) -> int:
        with self._lock:
            self._prune_revoked()
            return len(self._revoked)

    def is_revoked(self, credential: Credential) -> bool:
        if not credential.token_id:
            return False
        with self._lock:
            return credential.token_id in self._revoked


def build_verifier(settings_obj=None) -> CredentialVerifier:
    cfg = settings_obj or settings
    return CredentialVerifier(cfg.JWT_SECRET, algorithm=cfg.JWT_ALGORITHM, issuer=cfg.JWT_ISSUER)


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return None


async def get_current_credential(request: Request) -> Credential:
    """
    FastAPI dependency: resolve the caller from ``Authorization: Bearer <jwt>``.

    Raises AuthenticationError (rendered as 401 by the app error handler).
    """
    verifier: CredentialVerifier = request.app.state.runtime.verifier
    return verifier.verify(_bearer_token(request))


async def get_current_user_id(request: Request) -> str:
    credential = await get_current_credential(request)
    return credential.user_id
