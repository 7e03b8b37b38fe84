"""Message history REST API router.

Messages are pushed only to connections that are live at delivery time.
Everyone else catches up through these read-only endpoints.

Endpoints:
    GET /messages/{user_id}/{peer_id}      - Direct conversation, oldest first
    GET /channels/{channel_id}/messages    - Channel history in append order
    GET /users/{user_id}/contacts          - Direct-message peers, latest first
    GET /users/{user_id}/channels          - Channels the user belongs to

Requester identity follows the WebSocket rules: an ``Authorization: Bearer``
token is verified when present and always wins; with ``auth.require_token``
set it is mandatory. Otherwise the claimed identity (the ``user_id`` path
segment, or ``?userId=`` for channel history) is trusted as-is.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from relay.errors import IdentityRejectedError, RelayError

from .manager import get_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["history"])

bearer = HTTPBearer(auto_error=False)


def _requester(
    claimed: Optional[str], credentials: Optional[HTTPAuthorizationCredentials]
) -> str:
    """Resolve who is asking, or fail with 401."""
    token = credentials.credentials if credentials else None
    try:
        identity = get_manager().resolve_identity(claimed, token)
    except IdentityRejectedError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return identity


def _require_self(
    user_id: str, credentials: Optional[HTTPAuthorizationCredentials]
) -> None:
    requester = _requester(user_id, credentials)
    if requester != user_id:
        logger.warning(f"{requester} attempted to read history of {user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot read another user's conversations",
        )


@router.get("/messages/{user_id}/{peer_id}")
async def get_direct_messages(
    user_id: str,
    peer_id: str,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> JSONResponse:
    """Get the direct conversation between two identities.

    Args:
        user_id: The requesting participant.
        peer_id: The other participant.

    Returns:
        JSON with the messages array (both directions, chronological).
    """
    _require_self(user_id, credentials)
    gateway = get_manager().engine.gateway
    try:
        messages = await gateway.get_direct_history(user_id, peer_id)
    except RelayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    return JSONResponse({
        "messages": [msg.model_dump(mode="json") for msg in messages]
    })


@router.get("/channels/{channel_id}/messages")
async def get_channel_messages(
    channel_id: str,
    userId: Optional[str] = Query(None, description="Claimed requester identity"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> JSONResponse:
    """Get a channel's message history.

    Only members and admins of the channel may read it.

    Args:
        channel_id: The channel ID.
        userId: Requester identity when no bearer token is sent.

    Returns:
        JSON with channelId and the messages array; 404 for unknown channels,
        403 for requesters outside the channel.
    """
    requester = _requester(userId, credentials)
    gateway = get_manager().engine.gateway
    try:
        channel = await gateway.get_channel_with_members(channel_id)
        if requester not in channel.members and requester not in channel.admins:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not a member of this channel",
            )
        messages = await gateway.get_channel_history(channel_id)
    except RelayError as exc:
        logger.info(f"History request for channel {channel_id} failed: {exc.message}")
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    return JSONResponse({
        "channelId": channel_id,
        "messages": [msg.model_dump(mode="json") for msg in messages]
    })


@router.get("/users/{user_id}/contacts")
async def get_contacts(
    user_id: str,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> JSONResponse:
    """List everyone the user has exchanged direct messages with.

    Returns:
        JSON with the contacts array, most recent conversation first. Each
        contact is a profile plus ``lastMessageTime``.
    """
    _require_self(user_id, credentials)
    try:
        contacts = await get_manager().engine.gateway.get_direct_contacts(user_id)
    except RelayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    return JSONResponse({
        "contacts": [c.model_dump(mode="json") for c in contacts]
    })


@router.get("/users/{user_id}/channels")
async def get_user_channels(
    user_id: str,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> JSONResponse:
    """List the channels the user is a member or admin of.

    Returns:
        JSON with the channels array, most recently active first.
    """
    _require_self(user_id, credentials)
    try:
        channels = await get_manager().engine.gateway.get_user_channels(user_id)
    except RelayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    return JSONResponse({
        "channels": [
            channel.model_dump(mode="json", exclude={"messages"}) for channel in channels
        ]
    })
