"""Pydantic schemas for relayed chat messages.

Clients submit a lightweight :class:`MessageDraft`. The store assigns the id
and timestamp, and the delivery engine pushes a :class:`PopulatedMessage`
with the sender (and receiver) profiles expanded for client rendering.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


# Outbound push event labels
RECEIVE_MESSAGE = "receiveMessage"
RECEIVE_CHANNEL_MESSAGE = "receiveChannelMessage"

# Inbound submission event labels
SEND_MESSAGE = "sendMessage"
SEND_MESSAGE_ON_CHANNEL = "sendMessageOnChannel"


class MessageKind(str, Enum):
    """Kind of message payload.

    Attributes:
        TEXT: Plain text in ``content``.
        FILE: Attachment reference in ``fileUrl`` (upload handled elsewhere).
    """
    TEXT = "text"
    FILE = "file"


class MessageScope(str, Enum):
    """Whether a message targets one identity or a channel's membership."""
    DIRECT = "direct"
    CHANNEL = "channel"


class UserProfile(BaseModel):
    """Profile fields used to render a message sender or receiver.

    Profiles are owned by the external profile collaborator. An identity
    with no stored profile is rendered with only ``userId`` set.
    """
    userId: str = Field(..., description="Stable user identity")
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    imageUrl: Optional[str] = None
    colorTheme: Optional[int] = None


class MessageDraft(BaseModel):
    """Inbound message submission.

    Attributes:
        sender: Identity of the author (overwritten with the connection's
            bound identity by the connection manager).
        receiver: Target identity for a direct message.
        channel: Target channel id for a channel message.
        messageType: ``text`` or ``file``.
        content: Text body, required for ``text``.
        fileUrl: Attachment reference, required for ``file``.
    """
    sender: str = Field(..., min_length=1, description="Sender identity")
    receiver: Optional[str] = Field(default=None, description="Direct target identity")
    channel: Optional[str] = Field(default=None, description="Target channel id")
    messageType: MessageKind = Field(default=MessageKind.TEXT, description="text or file")
    content: Optional[str] = Field(default=None, description="Text content")
    fileUrl: Optional[str] = Field(default=None, description="Attachment reference")

    @model_validator(mode="after")
    def _check_scope_and_payload(self) -> "MessageDraft":
        if (self.receiver is None) == (self.channel is None):
            raise ValueError("exactly one of receiver or channel is required")
        if self.receiver is not None and self.receiver == self.sender:
            raise ValueError("a direct message needs two distinct identities")
        if self.messageType == MessageKind.TEXT and not (self.content or "").strip():
            raise ValueError("content is required for text messages")
        if self.messageType == MessageKind.FILE and not self.fileUrl:
            raise ValueError("fileUrl is required for file messages")
        return self

    @property
    def scope(self) -> MessageScope:
        return MessageScope.CHANNEL if self.channel is not None else MessageScope.DIRECT


class PopulatedMessage(BaseModel):
    """Stored message with participant profiles expanded.

    This is the structure pushed to clients and returned by history reads.
    Direct messages carry ``receiver``; channel messages carry ``channelId``.
    """
    id: str = Field(..., description="Server-assigned message id")
    sender: UserProfile
    receiver: Optional[UserProfile] = None
    channelId: Optional[str] = None
    messageType: MessageKind
    content: Optional[str] = None
    fileUrl: Optional[str] = None
    createdAt: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Channel(BaseModel):
    """Channel metadata as read by the delivery engine.

    Membership is mutated only by the external channel-management
    collaborator. ``messages`` holds message ids in append order and is
    only filled when the full channel is requested (``MessageStore.get_channel``).
    """
    id: str
    name: str
    members: List[str] = Field(default_factory=list)
    admins: List[str] = Field(default_factory=list)
    messages: List[str] = Field(default_factory=list)


class DirectContact(UserProfile):
    """A direct-message peer as listed in a user's conversation list."""
    lastMessageTime: datetime = Field(..., description="Time of the last message exchanged")
