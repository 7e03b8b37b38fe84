"""WebSocket connection lifecycle manager for the chat relay.

This module owns every live connection, binds each one to the identity it
presents, and hands inbound submissions to the delivery engine.

Per-connection state machine:
    CONNECTING -> IDENTIFIED -> ACTIVE -> CLOSED

Key features:
    - Identity resolution from connection metadata: a signed token when one
      is presented, otherwise the claimed ``userId`` (unless tokens are
      required by configuration)
    - Unidentified connections stay open but inert until an ``identify``
      event binds them
    - The identity directory is owned here and shared with the delivery
      engine by reference
    - Sender identity on every submission is the connection's bound identity
    - Persistence failures are reported back to the submitting connection

Concurrency:
    One task per connection drives ``connect`` / ``submit`` / ``disconnect``.
    The directory serializes its own map operations; nothing here holds a
    lock across I/O.
"""
import logging
from typing import Dict, Optional

from fastapi import WebSocket
from pydantic import ValidationError

from relay.auth.service import TokenVerifier
from relay.config import AppSettings
from relay.errors import IdentityRejectedError, PersistenceError, PushError
from relay.storage.gateway import PersistenceGateway

from .connection import Connection, ConnectionState
from .delivery import DEFAULT_PUSH_TIMEOUT_SECONDS, DeliveryEngine, DeliveryReport
from .directory import IdentityDirectory
from .schemas import SEND_MESSAGE, SEND_MESSAGE_ON_CHANNEL, MessageDraft, MessageScope

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_POLICY_VIOLATION = 1008
CLOSE_GOING_AWAY = 1001

SUBMISSION_EVENTS = {
    SEND_MESSAGE: MessageScope.DIRECT,
    SEND_MESSAGE_ON_CHANNEL: MessageScope.CHANNEL,
}


class ConnectionManager:
    """Accepts connections, binds identities and dispatches submissions.

    Attributes:
        directory: identity -> live Connection, shared with the engine.
        engine: The delivery engine submissions are routed to.
        connections: Every open connection by connection id, identified or not.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        verifier: Optional[TokenVerifier] = None,
        require_token: bool = False,
        push_timeout: float = DEFAULT_PUSH_TIMEOUT_SECONDS,
        dedupe_channel_recipients: bool = False,
    ) -> None:
        self.directory: IdentityDirectory[Connection] = IdentityDirectory()
        self.engine = DeliveryEngine(
            self.directory,
            gateway,
            push_timeout=push_timeout,
            dedupe_channel_recipients=dedupe_channel_recipients,
        )
        self.verifier = verifier
        self.require_token = require_token
        self.push_timeout = push_timeout
        self.connections: Dict[str, Connection] = {}

    @classmethod
    def from_settings(
        cls, settings: AppSettings, gateway: PersistenceGateway
    ) -> "ConnectionManager":
        return cls(
            gateway,
            verifier=TokenVerifier.from_settings(settings),
            require_token=settings.auth.require_token,
            push_timeout=settings.delivery.push_timeout_seconds,
            dedupe_channel_recipients=settings.delivery.dedupe_channel_recipients,
        )

    # =========================================================================
    # Identity
    # =========================================================================

    def resolve_identity(
        self, user_id: Optional[str] = None, token: Optional[str] = None
    ) -> Optional[str]:
        """Work out which identity a client is claiming.

        Returns:
            The identity, or None when the client supplied nothing usable.

        Raises:
            IdentityRejectedError: A token was supplied and failed verification.
        """
        if token:
            if self.verifier is None:
                raise IdentityRejectedError("Token verification is not configured")
            return self.verifier.verify(token)
        if self.require_token:
            if user_id:
                logger.warning(
                    "[Manager] Ignoring claimed userId=%s: signed token required", user_id
                )
            return None
        return user_id or None

    def _activate(self, conn: Connection, identity: str) -> None:
        conn.identity = identity
        conn.state = ConnectionState.IDENTIFIED
        self.directory.bind(identity, conn)
        conn.state = ConnectionState.ACTIVE
        logger.info(
            f"[Manager] User {identity} bound to connection {conn.connection_id}"
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(
        self,
        websocket: WebSocket,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Connection:
        """Accept a WebSocket, announce it, and bind its identity if known.

        Raises:
            IdentityRejectedError: The presented token is invalid. The socket
                is closed with a policy-violation code before acceptance.
            PushError: The greeting frame could not be written.
        """
        try:
            identity = self.resolve_identity(user_id, token)
        except IdentityRejectedError as exc:
            logger.warning(f"[Manager] Connection rejected: {exc.message}")
            await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=exc.message)
            raise

        await websocket.accept()
        conn = Connection(websocket)
        self.connections[conn.connection_id] = conn

        # Announce before binding so no push can precede the greeting
        try:
            await conn.send(
                {
                    "type": "connected",
                    "connectionId": conn.connection_id,
                    "userId": identity,
                    "identified": identity is not None,
                },
                timeout=self.push_timeout,
            )
        except PushError:
            self.disconnect(conn)
            raise

        if identity is None:
            logger.info(
                f"[Manager] Connection {conn.connection_id} has no identity; "
                "it will not receive messages until identified"
            )
        else:
            self._activate(conn, identity)
        return conn

    async def identify(
        self,
        conn: Connection,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> str:
        """Bind an unidentified connection after it was accepted.

        Raises:
            IdentityRejectedError: No identity was supplied, the token is
                invalid, or the connection is already bound to someone else.
        """
        identity = self.resolve_identity(user_id, token)
        if identity is None:
            raise IdentityRejectedError("No identity supplied")
        if conn.is_closed:
            raise IdentityRejectedError("Connection is closed")
        if conn.is_active:
            if conn.identity == identity:
                return identity
            raise IdentityRejectedError("Connection is already bound to another identity")
        self._activate(conn, identity)
        return identity

    def disconnect(self, conn: Connection) -> Optional[str]:
        """Mark a connection CLOSED and drop its directory entry.

        Safe to call more than once.

        Returns:
            The identity that was unbound, if the connection still held the
            directory entry for it.
        """
        conn.state = ConnectionState.CLOSED
        self.connections.pop(conn.connection_id, None)
        identity = self.directory.unbind(conn)
        logger.info(
            f"[Manager] Connection {conn.connection_id} closed "
            f"(identity={conn.identity}, unbound={identity is not None})"
        )
        return identity

    async def close_all(self) -> None:
        """Close every open connection (server shutdown)."""
        for conn in list(self.connections.values()):
            try:
                await conn.websocket.close(code=CLOSE_GOING_AWAY)
            except Exception as e:
                logger.debug(f"Failed to close connection {conn.connection_id}: {e}")
            self.disconnect(conn)

    def get_connection_count(self) -> int:
        return len(self.connections)

    # =========================================================================
    # Submissions
    # =========================================================================

    async def submit(
        self,
        conn: Connection,
        event: str,
        payload: object,
        client_id: Optional[str] = None,
    ) -> Optional[DeliveryReport]:
        """Route a ``sendMessage`` / ``sendMessageOnChannel`` submission.

        Any problem that means the message was not sent is reported back to
        the submitting connection as an ``error`` frame.

        Returns:
            The delivery report, or None if the message was not sent.
        """
        scope = SUBMISSION_EVENTS.get(event)
        if scope is None:
            await self.reply_error(conn, event, f"Unknown event: {event}", client_id)
            return None

        if not conn.is_active:
            await self.reply_error(conn, event, "Connection is not identified", client_id)
            return None

        if not isinstance(payload, dict):
            await self.reply_error(conn, event, "message must be an object", client_id)
            return None

        claimed = payload.get("sender")
        if claimed and claimed != conn.identity:
            logger.warning(
                f"[Manager] Connection {conn.connection_id} claimed sender={claimed}; "
                f"using bound identity {conn.identity}"
            )

        try:
            draft = MessageDraft(**{**payload, "sender": conn.identity})
        except ValidationError as exc:
            error = exc.errors()[0].get("msg", "invalid message")
            await self.reply_error(conn, event, f"Invalid message: {error}", client_id)
            return None

        if draft.scope != scope:
            await self.reply_error(
                conn, event, f"{event} needs a {scope.value} message", client_id
            )
            return None

        try:
            if scope == MessageScope.DIRECT:
                return await self.engine.deliver_direct(draft)
            return await self.engine.deliver_channel(draft)
        except PersistenceError as exc:
            logger.error(
                f"[Manager] {event} from {conn.identity} not sent: {exc.message}"
            )
            await self.reply_error(conn, event, exc.message, client_id)
            return None

    async def reply_error(
        self, conn: Connection, event: Optional[str], error: str, client_id: Optional[str]
    ) -> None:
        frame = {"type": "error", "event": event, "error": error}
        if client_id is not None:
            frame["clientId"] = client_id
        try:
            await conn.send(frame, timeout=self.push_timeout)
        except PushError as exc:
            logger.warning(f"[Manager] Could not report error: {exc}")


_manager: Optional[ConnectionManager] = None


def get_manager() -> ConnectionManager:
    """Get the global connection manager instance.

    Raises:
        RuntimeError: The application has not installed a manager yet.
    """
    if _manager is None:
        raise RuntimeError("Connection manager is not initialised")
    return _manager


def set_manager(manager: Optional[ConnectionManager]) -> None:
    """Set (or clear) the global connection manager instance."""
    global _manager
    _manager = manager
