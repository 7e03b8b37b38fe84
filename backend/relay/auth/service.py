"""Verification of signed connection tokens.

The HTTP-facing auth collaborator issues HMAC-signed JWTs whose payload
carries the user id (``{"id": "<user>"}`` by default). The same token can be
presented when opening a WebSocket so the relay binds a verified identity
instead of trusting a bare ``userId`` query parameter.
"""
import logging
from typing import Optional

import jwt

from relay.config import AppSettings
from relay.errors import IdentityRejectedError

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Decodes connection tokens and extracts the identity claim."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        identity_claim: str = "id",
        audience: Optional[str] = None,
        leeway_seconds: int = 0,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.identity_claim = identity_claim
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "TokenVerifier":
        return cls(
            secret_key=settings.secrets.jwt.secret_key,
            algorithm=settings.secrets.jwt.algorithm,
            identity_claim=settings.auth.identity_claim,
            audience=settings.auth.audience,
            leeway_seconds=settings.auth.leeway_seconds,
        )

    def verify(self, token: str) -> str:
        """Return the identity carried by *token*.

        Raises:
            IdentityRejectedError: The token is expired, tampered with, or
                lacks the identity claim.
        """
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                leeway=self.leeway_seconds,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise IdentityRejectedError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise IdentityRejectedError(f"Invalid token: {str(e)}")

        identity = claims.get(self.identity_claim)
        if not identity or not isinstance(identity, str):
            raise IdentityRejectedError(f"Token has no '{self.identity_claim}' claim")
        return identity

    def issue(self, identity: str, **extra_claims) -> str:
        """Sign a token for *identity* (used by tests and local tooling)."""
        payload = {self.identity_claim: identity, **extra_claims}
        if self.audience is not None:
            payload.setdefault("aud", self.audience)
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
