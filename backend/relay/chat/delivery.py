"""Delivery engine: persist a message, resolve recipients, push.

Two entry points, one per message scope:

    deliver_direct: store, populate sender/receiver profiles, push
        ``receiveMessage`` to the receiver and the sender if they are online.
    deliver_channel: store, append to the channel history, populate the
        sender profile, push ``receiveChannelMessage`` to every online member
        and then every online admin.

Failure policy:
    - Persistence errors abort the delivery before any push and propagate to
      the caller. A message stored before the failure is discarded so it
      never shows up in history.
    - A recipient with no live connection is skipped silently.
    - Push errors (closed socket, write failure, timeout) are logged and
      recorded in the report; they never stop delivery to other recipients.

Persistence always happens-before every push. Pushes for one message run
concurrently with asyncio.gather(); there is no rollback of a partial
fan-out since the message is already durable.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from relay.errors import PersistenceError, PushError
from relay.storage.gateway import PersistenceGateway

from .connection import Connection
from .directory import IdentityDirectory
from .schemas import (
    RECEIVE_CHANNEL_MESSAGE,
    RECEIVE_MESSAGE,
    MessageDraft,
    MessageScope,
    PopulatedMessage,
)

logger = logging.getLogger(__name__)

DEFAULT_PUSH_TIMEOUT_SECONDS = 5.0


@dataclass
class DeliveryReport:
    """Outcome of one delivery, by recipient identity.

    An identity present in both a channel's member and admin sets appears
    once per set unless recipient dedupe is enabled.
    """
    message: PopulatedMessage
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    offline: List[str] = field(default_factory=list)


class DeliveryEngine:
    """Routes persisted messages to the live connections of their recipients."""

    def __init__(
        self,
        directory: IdentityDirectory[Connection],
        gateway: PersistenceGateway,
        push_timeout: float = DEFAULT_PUSH_TIMEOUT_SECONDS,
        dedupe_channel_recipients: bool = False,
    ) -> None:
        self.directory = directory
        self.gateway = gateway
        self.push_timeout = push_timeout
        self.dedupe_channel_recipients = dedupe_channel_recipients

    async def deliver_direct(self, draft: MessageDraft) -> DeliveryReport:
        """Persist a direct message and push it to both participants.

        Raises:
            ValueError: The draft is not direct-scoped.
            PersistenceError: Storing or reading back the message failed.
        """
        if draft.scope != MessageScope.DIRECT:
            raise ValueError("deliver_direct needs a message with a receiver")

        message_id = await self.gateway.create_message(draft)
        message = await self._read_back(message_id)

        frame = {"type": RECEIVE_MESSAGE, "message": message.model_dump(mode="json")}
        report = await self._fan_out(message, [draft.receiver, draft.sender], frame)
        logger.info(
            "[Delivery] Direct %s %s -> %s: delivered=%d failed=%d offline=%d",
            message.id, draft.sender, draft.receiver,
            len(report.delivered), len(report.failed), len(report.offline),
        )
        return report

    async def deliver_channel(self, draft: MessageDraft) -> DeliveryReport:
        """Persist a channel message and push it to the channel's members and admins.

        Raises:
            ValueError: The draft is not channel-scoped.
            PersistenceError: Storing, appending or reading the channel failed.
        """
        if draft.scope != MessageScope.CHANNEL:
            raise ValueError("deliver_channel needs a message with a channel")

        message_id = await self.gateway.create_message(draft)
        try:
            await self.gateway.append_message_to_channel(draft.channel, message_id)
            message = await self.gateway.get_message_with_profiles(message_id)
            channel = await self.gateway.get_channel_with_members(draft.channel)
        except PersistenceError:
            await self._discard(message_id)
            raise

        message.channelId = channel.id
        recipients = list(channel.members) + list(channel.admins)
        if self.dedupe_channel_recipients:
            recipients = list(dict.fromkeys(recipients))

        frame = {
            "type": RECEIVE_CHANNEL_MESSAGE,
            "message": message.model_dump(mode="json"),
        }
        report = await self._fan_out(message, recipients, frame)
        logger.info(
            "[Delivery] Channel %s message %s from %s: delivered=%d failed=%d offline=%d",
            channel.id, message.id, draft.sender,
            len(report.delivered), len(report.failed), len(report.offline),
        )
        return report

    async def _read_back(self, message_id: str) -> PopulatedMessage:
        try:
            return await self.gateway.get_message_with_profiles(message_id)
        except PersistenceError:
            await self._discard(message_id)
            raise

    async def _discard(self, message_id: str) -> None:
        try:
            await self.gateway.discard_message(message_id)
        except PersistenceError as exc:
            logger.error(
                "[Delivery] Could not discard aborted message %s: %s", message_id, exc
            )

    async def _fan_out(
        self, message: PopulatedMessage, identities: List[str], frame: dict
    ) -> DeliveryReport:
        report = DeliveryReport(message=message)

        targets: List[Tuple[str, Connection]] = []
        for identity in identities:
            handle: Optional[Connection] = self.directory.lookup(identity)
            if handle is None:
                logger.debug("[Delivery] %s offline, skipping message %s", identity, message.id)
                report.offline.append(identity)
                continue
            targets.append((identity, handle))

        if not targets:
            return report

        results = await asyncio.gather(
            *[self._safe_push(handle, frame) for _, handle in targets],
            return_exceptions=True,
        )
        for (identity, _), ok in zip(targets, results):
            if ok is True:
                report.delivered.append(identity)
            else:
                report.failed.append(identity)
        return report

    async def _safe_push(self, handle: Connection, frame: dict) -> bool:
        """Push one frame; returns False on a transport-level failure."""
        try:
            await handle.send(frame, timeout=self.push_timeout)
            return True
        except PushError as exc:
            logger.warning("[Delivery] %s", exc)
            return False
