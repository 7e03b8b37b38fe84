"""Abstract PersistenceGateway interface.

Every storage back-end must implement this interface so the delivery engine
stays storage-agnostic. Implementations raise
:class:`relay.errors.PersistenceError` (or a subclass) on any failure.
"""
from abc import ABC, abstractmethod
from typing import List

from relay.chat.schemas import Channel, DirectContact, MessageDraft, PopulatedMessage


class PersistenceGateway(ABC):
    """Durable message storage and channel metadata reads."""

    @abstractmethod
    async def create_message(self, draft: MessageDraft) -> str:
        """Append a message record and return its assigned id.

        Raises:
            ChannelNotFoundError: The draft targets an unknown channel.
            PersistenceError: The write failed.
        """

    @abstractmethod
    async def get_message_with_profiles(self, message_id: str) -> PopulatedMessage:
        """Read a stored message with sender/receiver profiles populated.

        Raises:
            MessageNotFoundError: No message has this id.
        """

    @abstractmethod
    async def append_message_to_channel(self, channel_id: str, message_id: str) -> None:
        """Append a message reference to a channel's history."""

    @abstractmethod
    async def get_channel_with_members(self, channel_id: str) -> Channel:
        """Return the channel with its member and admin identities.

        The message id list is not loaded; delivery only needs membership.

        Raises:
            ChannelNotFoundError: No channel has this id.
        """

    @abstractmethod
    async def get_direct_history(self, user_id: str, peer_id: str) -> List[PopulatedMessage]:
        """Return the direct conversation between two identities, oldest first."""

    @abstractmethod
    async def get_channel_history(self, channel_id: str) -> List[PopulatedMessage]:
        """Return a channel's messages in append order."""

    @abstractmethod
    async def discard_message(self, message_id: str) -> None:
        """Remove a message whose delivery was aborted after it was stored.

        Also drops any channel history reference to it. Unknown ids are
        ignored.
        """

    @abstractmethod
    async def get_direct_contacts(self, user_id: str) -> List[DirectContact]:
        """Return everyone *user_id* has a direct conversation with.

        Most recent conversation first; each entry carries the peer's
        profile and the time of the last message exchanged.
        """

    @abstractmethod
    async def get_user_channels(self, user_id: str) -> List[Channel]:
        """Return the channels *user_id* is a member or admin of, most recently active first."""
