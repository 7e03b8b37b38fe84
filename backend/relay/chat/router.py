"""Chat router providing the relay's WebSocket endpoint.

This module provides:
    - WebSocket /ws/chat: persistent client connection for message relay

Connection metadata (query parameters):
    - userId: claimed identity, trusted as-is unless tokens are required
    - token: signed connection token from the auth service

Protocol Message Types (inbound, keyed by "type"):
    - sendMessage: direct message, {"message": {receiver, messageType, content | fileUrl}}
    - sendMessageOnChannel: channel message, {"message": {channel, messageType, ...}}
    - identify: late identification, {"userId"} or {"token"}

Outbound:
    - connected: {connectionId, userId, identified}
    - identified: {userId}
    - receiveMessage / receiveChannelMessage: {message}
    - error: {event, error, clientId?}

Submissions may carry an optional "clientId" that is echoed on errors so
the client can match a failure to the message it sent.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from relay.errors import IdentityRejectedError, PushError

from .manager import SUBMISSION_EVENTS, get_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    userId: Optional[str] = Query(None, description="Claimed user identity"),
    token: Optional[str] = Query(None, description="Signed connection token"),
) -> None:
    """WebSocket endpoint for real-time message relay.

    Protocol Flow:
        1. Client connects with userId and/or token
           → Server sends: {type: "connected", connectionId, userId, identified}
        2. Client sends: {type: "sendMessage", message: {...}}
           → Server pushes {type: "receiveMessage", message} to sender and receiver
        3. Client sends: {type: "sendMessageOnChannel", message: {...}}
           → Server pushes {type: "receiveChannelMessage", message} to members and admins
        4. On disconnect → the identity is unbound; no further pushes reach it

    Args:
        websocket: The WebSocket connection.
        userId: Claimed identity from the auth collaborator.
        token: Signed token carrying a verified identity.
    """
    manager = get_manager()
    logger.info(f"[WS] New connection, userId={userId}, token={'yes' if token else 'no'}")

    try:
        conn = await manager.connect(websocket, user_id=userId, token=token)
    except IdentityRejectedError:
        return
    except PushError as exc:
        logger.warning(f"[WS] Connection dropped during greeting: {exc}")
        return

    try:
        # Main message loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))

            # Binary frames carry no "text"
            try:
                data = json.loads(message.get("text") or "")
            except ValueError:
                await manager.reply_error(conn, None, "Frames must be JSON objects", None)
                continue

            if not isinstance(data, dict):
                await manager.reply_error(conn, None, "Frames must be JSON objects", None)
                continue

            message_type = data.get("type")
            client_id = data.get("clientId")
            logger.debug("[WS] Connection %s received: type=%s", conn.connection_id, message_type)

            # --- Handle IDENTIFY message (late identification) ---
            if message_type == "identify":
                try:
                    identity = await manager.identify(
                        conn, user_id=data.get("userId"), token=data.get("token")
                    )
                except IdentityRejectedError as exc:
                    await manager.reply_error(conn, message_type, exc.message, client_id)
                    continue
                await conn.send(
                    {"type": "identified", "userId": identity},
                    timeout=manager.push_timeout,
                )
                continue

            # --- Handle message submissions ---
            if message_type in SUBMISSION_EVENTS:
                await manager.submit(conn, message_type, data.get("message"), client_id)
                continue

            await manager.reply_error(
                conn, message_type, f"Unknown event: {message_type}", client_id
            )

    except WebSocketDisconnect:
        logger.info(f"[WS] Client disconnected: {conn.connection_id}")
    except PushError as exc:
        logger.warning(f"[WS] Dropping connection {conn.connection_id}: {exc}")
    finally:
        manager.disconnect(conn)
