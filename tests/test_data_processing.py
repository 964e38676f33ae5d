from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from chatgraph.data_processing import (
    Message,
    clean_text,
    filter_messages,
    get_conversation_stats,
    parse_conversations,
    read_messages,
    sample_messages,
)
from chatgraph.errors import ArchiveFormatError


def test_clean_text_collapses_whitespace_and_truncates():
    assert clean_text("  hello \n\t world  ") == "hello world"
    assert clean_text("x" * 900) == "x" * 500
    assert clean_text("abcdef", max_length=3) == "abc"


@pytest.mark.parametrize("value", [None, "", 42, ["a"], {"text": "a"}])
def test_clean_text_non_strings_become_empty(value):
    assert clean_text(value) == ""


def test_parse_conversations_flattens_tree(export_archive):
    msgs = parse_conversations(export_archive)

    assert [m.id for m in msgs] == ["msg-a", "msg-b", "x"]
    first, second, third = msgs
    assert first.text == "Where should I go in Japan?"
    assert first.role == "user"
    assert first.conversation_id == "c1"
    assert first.conversation_title == "Travel plans"
    assert second.metadata["model"] == "gpt-4"
    assert second.metadata["finishReason"] == "stop"
    assert second.metadata["parentId"] == "root"
    assert second.metadata["children"] == ["n1"]

    # untitled conversation without id falls back to index-based id and its create_time
    assert third.conversation_id == "conv_1"
    assert third.conversation_title == "Untitled Conversation"
    assert third.role == "unknown"
    assert third.timestamp == 1710000000.0


def test_parse_conversations_accepts_json_text(export_archive):
    msgs = parse_conversations(json.dumps(export_archive))
    assert len(msgs) == 3


def test_parse_conversations_rejects_bad_input():
    with pytest.raises(ArchiveFormatError, match="Failed to parse"):
        parse_conversations("{not json")
    with pytest.raises(ArchiveFormatError, match="Expected an array"):
        parse_conversations('{"id": "c1"}')


def test_message_from_dict_accepts_both_key_styles():
    camel = Message.from_dict(
        {"id": "1", "text": "hi", "role": "user", "timestamp": "2024-01-01T00:00:00Z",
         "conversationId": "c", "conversationTitle": "T", "clusterId": 2}
    )
    snake = Message.from_dict(
        {"id": "1", "text": "hi", "role": "user", "create_time": 1704067200,
         "conversation_id": "c", "conversation_title": "T", "cluster_id": 2}
    )
    assert camel.timestamp == snake.timestamp == 1704067200.0
    assert camel.conversation_id == snake.conversation_id == "c"
    assert camel.cluster_id == snake.cluster_id == 2
    assert camel.to_dict()["conversationTitle"] == "T"
    assert "embedding" not in camel.to_dict()


def test_read_messages_jsonl_skips_bad_lines(tmp_path):
    path = tmp_path / "messages.jsonl"
    path.write_text(
        '{"id": "a", "text": "first", "role": "user", "conversationId": "c1"}\n'
        "this is not json\n"
        "\n"
        '{"id": "b", "text": "second", "role": "assistant", "conversationId": "c1"}\n',
        encoding="utf-8",
    )
    msgs = read_messages(str(path))
    assert [m.id for m in msgs] == ["a", "b"]


def test_read_messages_archive_file(tmp_path, export_archive):
    path = tmp_path / "conversations.json"
    path.write_text(json.dumps(export_archive), encoding="utf-8")
    assert len(read_messages(str(path))) == 3


def test_read_messages_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_messages(str(tmp_path / "nope.json"))


def test_conversation_stats(export_archive):
    stats = get_conversation_stats(parse_conversations(export_archive))

    assert stats["totalMessages"] == 3
    assert stats["totalConversations"] == 2
    assert stats["userMessages"] == 1
    assert stats["assistantMessages"] == 1
    assert stats["averageMessagesPerConversation"] == 1.5
    assert stats["topModels"] == [{"model": "gpt-4", "count": 1}]
    assert stats["dateRange"]["earliest"] == datetime.fromtimestamp(1700000100, tz=timezone.utc)
    assert stats["dateRange"]["latest"] == datetime.fromtimestamp(1710000000, tz=timezone.utc)


def test_conversation_stats_empty():
    stats = get_conversation_stats([])
    assert stats["totalMessages"] == 0
    assert stats["dateRange"] is None


def test_filter_messages(export_archive):
    msgs = parse_conversations(export_archive)

    assert [m.id for m in filter_messages(msgs, role="assistant")] == ["msg-b"]
    assert len(filter_messages(msgs, role="all")) == 3
    assert [m.id for m in filter_messages(msgs, search_term="KYOTO")] == ["msg-b"]
    assert [m.id for m in filter_messages(msgs, search_term="travel")] == ["msg-a", "msg-b"]
    assert [m.id for m in filter_messages(msgs, min_length=20)] == ["msg-a", "msg-b"]

    since = datetime.fromtimestamp(1700000150, tz=timezone.utc)
    assert [m.id for m in filter_messages(msgs, start_date=since)] == ["msg-b", "x"]
    assert [m.id for m in filter_messages(msgs, end_date="2023-12-31")] == ["msg-a", "msg-b"]


def _messages(n_convs: int, per_conv: int):
    return [
        Message(id=f"{c}-{i}", text=f"text {i}", role="user", timestamp=float(i),
                conversation_id=f"c{c}", conversation_title=f"Conv {c}")
        for c in range(n_convs)
        for i in range(per_conv)
    ]


def test_sample_messages_under_cap_is_unchanged():
    msgs = _messages(2, 3)
    assert sample_messages(msgs, max_messages=10) is msgs


def test_sample_messages_keeps_every_conversation():
    sampled = sample_messages(_messages(3, 10), max_messages=9)

    assert len(sampled) == 9
    by_conv = {}
    for m in sampled:
        by_conv.setdefault(m.conversation_id, []).append(m.id)
    assert by_conv == {
        "c0": ["0-0", "0-3", "0-6"],
        "c1": ["1-0", "1-3", "1-6"],
        "c2": ["2-0", "2-3", "2-6"],
    }


def test_sample_messages_more_conversations_than_cap():
    sampled = sample_messages(_messages(5, 1), max_messages=3)
    assert [m.id for m in sampled] == ["0-0", "1-0", "2-0"]


def test_sample_messages_many_long_conversations_stay_capped():
    sampled = sample_messages(_messages(30, 4), max_messages=20)
    assert len(sampled) == 20
    assert all(m.id.endswith("-0") for m in sampled)
