"""In-memory directory of which identity is reachable on which connection.

The directory keeps a forward map (identity -> handle) and a reverse index
(handle -> identity) so that ``unbind`` on disconnect is O(1). Both maps are
updated under one lock; the lock is held only for the map operation itself
and never across I/O.

Only the most recently bound handle is kept per identity. Rebinding does not
close the previous handle; that is the connection manager's job.
"""
import logging
import threading
from typing import Dict, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

H = TypeVar("H", bound=Hashable)


class IdentityDirectory(Generic[H]):
    """Maps user identities to their live connection handle."""

    def __init__(self) -> None:
        self._by_identity: Dict[str, H] = {}
        self._by_handle: Dict[H, str] = {}
        self._lock = threading.Lock()

    def bind(self, identity: str, handle: H) -> Optional[H]:
        """Register *handle* as the live endpoint for *identity*.

        Returns:
            The handle previously bound to *identity*, if it was replaced.
        """
        with self._lock:
            previous = self._by_identity.get(identity)
            if previous is not None and previous != handle:
                self._by_handle.pop(previous, None)
            old_identity = self._by_handle.get(handle)
            if old_identity is not None and old_identity != identity:
                self._by_identity.pop(old_identity, None)
            self._by_identity[identity] = handle
            self._by_handle[handle] = identity
        if previous is not None and previous != handle:
            logger.info("[Directory] %s rebound; previous handle dropped", identity)
            return previous
        return None

    def unbind(self, handle: H) -> Optional[str]:
        """Remove the entry for *handle*. No-op for unknown handles.

        A handle that was already replaced by a newer bind for the same
        identity leaves the newer entry in place.

        Returns:
            The identity that was unbound, or None.
        """
        with self._lock:
            identity = self._by_handle.pop(handle, None)
            if identity is None:
                return None
            if self._by_identity.get(identity) == handle:
                del self._by_identity[identity]
        return identity

    def lookup(self, identity: str) -> Optional[H]:
        """Return the live handle for *identity*, or None when offline."""
        with self._lock:
            return self._by_identity.get(identity)

    def identity_of(self, handle: H) -> Optional[str]:
        with self._lock:
            return self._by_handle.get(handle)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._by_identity

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_identity)
