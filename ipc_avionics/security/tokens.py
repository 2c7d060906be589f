"""Session tokens - HS256 JSON Web Tokens.

Claims: ``role``, ``sub`` (user id), ``iat`` and ``exp``. Signature and
expiry are checked by PyJWT; every claim is required.

Usage:
    signer = TokenSigner(secret=settings.token_secret)
    token = signer.issue("operator", "user-17")

    claims = signer.verify(token)
    if claims is None or claims.role != requested_role:
        ...  # reject
"""

import time
from typing import Optional

import jwt

from ipc_protocols import LoggerProtocol, TokenClaims, TokenVerifierProtocol


JWT_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["role", "sub", "iat", "exp"]


class TokenSigner(TokenVerifierProtocol):
    """Issues and verifies session tokens."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 3600,
        logger: Optional[LoggerProtocol] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self._ttl = ttl_seconds
        self._logger = logger.bind(component="token_signer") if logger else None

    def issue(self, role: str, user_id: str, ttl_seconds: Optional[int] = None) -> str:
        """Create a signed token for ``user_id`` acting as ``role``."""
        now = int(time.time())
        payload = {
            "role": role,
            "sub": user_id,
            "iat": now,
            "exp": now + (ttl_seconds if ttl_seconds is not None else self._ttl),
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def verify(self, token: str) -> Optional[TokenClaims]:
        """Decode and check a token.

        Returns None for malformed tokens, bad signatures, expired tokens
        and tokens missing a claim.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            return self._reject("expired")
        except jwt.InvalidSignatureError:
            return self._reject("bad_signature")
        except jwt.InvalidTokenError as e:
            return self._reject("invalid", error=str(e))

        try:
            return TokenClaims(
                role=str(payload["role"]),
                subject=str(payload["sub"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (TypeError, ValueError):
            return self._reject("invalid")

    def _reject(self, reason: str, **fields) -> None:
        if self._logger:
            self._logger.debug("token_rejected", reason=reason, **fields)
        return None
