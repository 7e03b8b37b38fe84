"""Tests for message draft validation."""
import pytest
from pydantic import ValidationError

from relay.chat.schemas import MessageDraft, MessageKind, MessageScope


def test_direct_text_draft():
    draft = MessageDraft(sender="alice", receiver="bob", content="hello")
    assert draft.scope == MessageScope.DIRECT
    assert draft.messageType == MessageKind.TEXT


def test_channel_file_draft():
    draft = MessageDraft(
        sender="alice", channel="c1", messageType="file", fileUrl="upload/files/x.pdf"
    )
    assert draft.scope == MessageScope.CHANNEL
    assert draft.messageType == MessageKind.FILE


@pytest.mark.parametrize(
    "fields",
    [
        {"content": "no target"},
        {"receiver": "bob", "channel": "c1", "content": "both targets"},
        {"receiver": "alice", "content": "to myself"},
        {"receiver": "bob"},
        {"receiver": "bob", "content": "   "},
        {"receiver": "bob", "messageType": "file"},
        {"receiver": "bob", "messageType": "video", "content": "x"},
    ],
)
def test_invalid_drafts(fields):
    with pytest.raises(ValidationError):
        MessageDraft(sender="alice", **fields)


def test_empty_sender_is_rejected():
    with pytest.raises(ValidationError):
        MessageDraft(sender="", receiver="bob", content="hi")
