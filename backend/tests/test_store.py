"""Tests for the DuckDB message store."""
import os
import tempfile
from datetime import datetime
from unittest.mock import patch

import duckdb
import pytest

from relay.chat.schemas import MessageDraft, MessageKind, UserProfile
from relay.errors import ChannelNotFoundError, MessageNotFoundError, PersistenceError
from relay.storage.service import MessageStore


@pytest.fixture
def temp_db():
    """Create a temporary database path for testing."""
    # DuckDB will create a valid database file
    db_path = tempfile.mktemp(suffix=".duckdb")

    yield db_path

    MessageStore.reset_instance()
    if os.path.exists(db_path):
        os.remove(db_path)
    wal_path = db_path + ".wal"
    if os.path.exists(wal_path):
        os.remove(wal_path)


def text(sender, content="hi", **scope):
    return MessageDraft(sender=sender, content=content, **scope)


class TestMessages:

    @pytest.mark.asyncio
    async def test_create_and_read_back_direct_message(self, store):
        await store.upsert_user(UserProfile(userId="alice", firstName="Alice", colorTheme=2))

        message_id = await store.create_message(text("alice", receiver="bob"))
        message = await store.get_message_with_profiles(message_id)

        assert message.id == message_id
        assert message.sender.firstName == "Alice"
        assert message.sender.colorTheme == 2
        # bob has no stored profile: rendered with the id only
        assert message.receiver == UserProfile(userId="bob")
        assert message.channelId is None
        assert message.messageType == MessageKind.TEXT
        assert message.content == "hi"
        assert isinstance(message.createdAt, datetime)
        assert message.createdAt.tzinfo is not None

    @pytest.mark.asyncio
    async def test_file_message_keeps_reference(self, store):
        draft = MessageDraft(
            sender="alice", receiver="bob", messageType="file", fileUrl="upload/files/a.png"
        )
        message = await store.get_message_with_profiles(await store.create_message(draft))
        assert message.messageType == MessageKind.FILE
        assert message.fileUrl == "upload/files/a.png"
        assert message.content is None

    @pytest.mark.asyncio
    async def test_unknown_message_raises(self, store):
        with pytest.raises(MessageNotFoundError) as exc_info:
            await store.get_message_with_profiles("missing")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_direct_history_both_directions_in_order(self, store):
        first = await store.create_message(text("alice", "one", receiver="bob"))
        second = await store.create_message(text("bob", "two", receiver="alice"))
        await store.create_message(text("alice", "elsewhere", receiver="carol"))

        history = await store.get_direct_history("bob", "alice")

        assert [m.id for m in history] == [first, second]
        assert [m.content for m in history] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_discard_removes_message(self, store):
        message_id = await store.create_message(text("alice", receiver="bob"))
        await store.discard_message(message_id)

        assert await store.get_direct_history("alice", "bob") == []
        with pytest.raises(MessageNotFoundError):
            await store.get_message_with_profiles(message_id)

    @pytest.mark.asyncio
    async def test_duckdb_error_is_wrapped(self, store):
        with patch.object(
            store, "_insert_message", side_effect=duckdb.IOException("disk full")
        ):
            with pytest.raises(PersistenceError, match="disk full"):
                await store.create_message(text("alice", receiver="bob"))


class TestChannels:

    @pytest.mark.asyncio
    async def test_create_channel_and_read_members(self, store):
        channel = await store.create_channel(
            "general", members=["bob", "carol", "bob"], admins=["alice", "bob"]
        )

        loaded = await store.get_channel(channel.id)
        assert loaded.name == "general"
        assert loaded.members == ["bob", "carol"]
        assert loaded.admins == ["alice", "bob"]
        assert loaded.messages == []

    @pytest.mark.asyncio
    async def test_channel_message_requires_existing_channel(self, store):
        with pytest.raises(ChannelNotFoundError):
            await store.create_message(text("alice", channel="nope"))
        count = store._get_connection().execute("SELECT count(*) FROM messages").fetchone()[0]
        assert count == 0

    @pytest.mark.asyncio
    async def test_append_and_channel_history(self, store):
        await store.upsert_user(UserProfile(userId="alice", email="alice@example.com"))
        channel = await store.create_channel("general", members=["bob"], admins=["alice"])

        ids = []
        for content in ("first", "second"):
            message_id = await store.create_message(text("alice", content, channel=channel.id))
            await store.append_message_to_channel(channel.id, message_id)
            ids.append(message_id)

        loaded = await store.get_channel(channel.id)
        assert loaded.messages == ids
        # The delivery-path read carries membership only
        light = await store.get_channel_with_members(channel.id)
        assert light.members == ["bob"]
        assert light.admins == ["alice"]
        assert light.messages == []

        history = await store.get_channel_history(channel.id)
        assert [m.content for m in history] == ["first", "second"]
        assert all(m.channelId == channel.id for m in history)
        assert history[0].sender.email == "alice@example.com"
        assert history[0].receiver is None

    @pytest.mark.asyncio
    async def test_unappended_message_is_not_in_channel_history(self, store):
        channel = await store.create_channel("general", members=["bob"], admins=["alice"])
        await store.create_message(text("alice", channel=channel.id))

        assert await store.get_channel_history(channel.id) == []

    @pytest.mark.asyncio
    async def test_unknown_channel_reads_raise(self, store):
        with pytest.raises(ChannelNotFoundError):
            await store.get_channel_with_members("nope")
        with pytest.raises(ChannelNotFoundError):
            await store.get_channel_history("nope")
        with pytest.raises(ChannelNotFoundError):
            await store.append_message_to_channel("nope", "some-id")


class TestConversationLists:

    @pytest.mark.asyncio
    async def test_direct_contacts_latest_conversation_first(self, store):
        await store.upsert_user(UserProfile(userId="carol", firstName="Carol"))
        await store.create_message(text("alice", "to bob", receiver="bob"))
        await store.create_message(text("carol", "to alice", receiver="alice"))
        await store.create_message(text("bob", "reply", receiver="alice"))
        await store.create_message(text("bob", "not mine", receiver="dave"))

        contacts = await store.get_direct_contacts("alice")

        assert [c.userId for c in contacts] == ["bob", "carol"]
        assert contacts[1].firstName == "Carol"
        assert contacts[0].lastMessageTime >= contacts[1].lastMessageTime
        assert contacts[0].lastMessageTime.tzinfo is not None

    @pytest.mark.asyncio
    async def test_direct_contacts_ignore_channel_messages(self, store):
        channel = await store.create_channel("general", members=["bob"], admins=["alice"])
        message_id = await store.create_message(text("alice", channel=channel.id))
        await store.append_message_to_channel(channel.id, message_id)

        assert await store.get_direct_contacts("alice") == []

    @pytest.mark.asyncio
    async def test_user_channels_most_recently_active_first(self, store):
        older = await store.create_channel("older", members=["bob"], admins=["alice"])
        newer = await store.create_channel("newer", members=["alice", "bob"], admins=["alice"])
        await store.create_channel("elsewhere", members=["bob"], admins=["carol"])

        message_id = await store.create_message(text("alice", channel=older.id))
        await store.append_message_to_channel(older.id, message_id)

        channels = await store.get_user_channels("alice")

        assert [c.id for c in channels] == [older.id, newer.id]
        assert channels[1].members == ["alice", "bob"]
        assert channels[1].admins == ["alice"]

    @pytest.mark.asyncio
    async def test_user_without_channels(self, store):
        assert await store.get_user_channels("nobody") == []


class TestSingleton:

    @pytest.mark.asyncio
    async def test_file_database_survives_reopen(self, temp_db):
        store = MessageStore.get_instance(db_path=temp_db)
        assert MessageStore.get_instance() is store
        message_id = await store.create_message(text("alice", receiver="bob"))

        MessageStore.reset_instance()
        reopened = MessageStore.get_instance(db_path=temp_db)
        assert reopened is not store
        message = await reopened.get_message_with_profiles(message_id)
        assert message.content == "hi"
