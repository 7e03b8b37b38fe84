"""Connection identity verification."""

from .service import TokenVerifier

__all__ = ["TokenVerifier"]
