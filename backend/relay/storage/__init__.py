"""Durable message storage behind the persistence gateway interface."""

from .gateway import PersistenceGateway
from .service import MessageStore

__all__ = ["PersistenceGateway", "MessageStore"]
