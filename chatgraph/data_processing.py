from __future__ import annotations

import json
import logging
import math
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import pandas as pd
from dateutil import parser as dateparser

from .errors import ArchiveFormatError
from .utils import read_jsonl


# ------------------------------
# Data structure
# ------------------------------
@dataclass
class Message:
    id: str
    text: str
    role: str
    timestamp: Optional[float]
    conversation_id: str
    conversation_title: str
    embedding: Optional[List[float]] = None
    cluster_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Wire form used on the host boundary (camelCase keys)."""
        out: Dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "role": self.role,
            "timestamp": self.timestamp,
            "conversationId": self.conversation_id,
            "conversationTitle": self.conversation_title,
        }
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        if self.embedding is not None:
            out["embedding"] = list(self.embedding)
        if self.cluster_id is not None:
            out["clusterId"] = int(self.cluster_id)
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        def pick(*keys: str, default: Any = None) -> Any:
            for k in keys:
                if data.get(k) is not None:
                    return data[k]
            return default

        ts = pick("timestamp", "create_time")
        cluster_id = pick("clusterId", "cluster_id")
        return cls(
            id=str(pick("id", default="")),
            text=pick("text", default="") or "",
            role=pick("role", default="unknown"),
            timestamp=_coerce_timestamp(ts),
            conversation_id=str(pick("conversationId", "conversation_id", default="")),
            conversation_title=pick("conversationTitle", "conversation_title", default="Untitled Conversation"),
            embedding=pick("embedding"),
            cluster_id=int(cluster_id) if cluster_id is not None else None,
            metadata=dict(pick("metadata", default={}) or {}),
        )


def _coerce_timestamp(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return _as_utc(value).timestamp()
    try:
        return float(value)
    except (TypeError, ValueError):
        pass
    try:
        return _as_utc(dateparser.parse(str(value))).timestamp()
    except (ValueError, OverflowError):
        return None


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ------------------------------
# Text normalizer
# ------------------------------
_WHITESPACE_RE = re.compile(r"\s+")

MAX_TEXT_LENGTH = 500


def clean_text(text: Any, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Trim, collapse whitespace runs and cap length. Total for any input."""
    if not text or not isinstance(text, str):
        return ""
    return _WHITESPACE_RE.sub(" ", text.strip())[:max_length]


# ------------------------------
# Archive parsing (conversations.json export)
# ------------------------------
def parse_conversations(raw: Union[str, bytes, List[Any]]) -> List[Message]:
    """Flatten the exported conversation tree into a list of messages.

    `raw` is either the JSON text of the export or the already decoded list.
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as err:
            raise ArchiveFormatError(f"Failed to parse conversations: {err}") from err
    else:
        data = raw

    if not isinstance(data, list):
        raise ArchiveFormatError("Invalid format: Expected an array of conversations")

    messages: List[Message] = []
    for index, conversation in enumerate(data):
        if not isinstance(conversation, dict):
            logging.warning("Skipping invalid conversation at index %d", index)
            continue
        conversation_id = conversation.get("id") or f"conv_{index}"
        title = conversation.get("title") or "Untitled Conversation"
        messages.extend(
            _messages_from_mapping(
                conversation.get("mapping") or {},
                conversation_id,
                title,
                conversation.get("create_time"),
                conversation.get("update_time"),
            )
        )

    logging.info("Parsed %d messages from %d conversations", len(messages), len(data))
    return messages


def _messages_from_mapping(
    mapping: Dict[str, Any],
    conversation_id: str,
    title: str,
    create_time: Optional[float],
    update_time: Optional[float],
) -> List[Message]:
    out: List[Message] = []
    for node_id, node in mapping.items():
        if not isinstance(node, dict) or not node.get("message"):
            continue
        msg = node["message"]
        parts = (msg.get("content") or {}).get("parts") or []
        text = _text_from_parts(parts)
        if not text:
            continue

        meta = msg.get("metadata") or {}
        author = msg.get("author") or {}
        out.append(
            Message(
                id=msg.get("id") or node_id,
                text=text,
                role=author.get("role") or "unknown",
                timestamp=_coerce_timestamp(msg.get("create_time") or create_time),
                conversation_id=conversation_id,
                conversation_title=title,
                metadata={
                    "nodeId": node_id,
                    "model": meta.get("model_slug"),
                    "finishReason": (meta.get("finish_details") or {}).get("type"),
                    "parentId": node.get("parent"),
                    "children": node.get("children") or [],
                    "conversationCreateTime": create_time,
                    "conversationUpdateTime": update_time,
                },
            )
        )
    out.sort(key=lambda m: m.timestamp or 0)
    return out


def _text_from_parts(parts: Any) -> str:
    if not isinstance(parts, list):
        return ""
    return " ".join(p for p in parts if isinstance(p, str) and p.strip()).strip()


def read_messages(input_path: str) -> List[Message]:
    """Read an export archive (.json) or a flat message file (.jsonl)."""
    if input_path.lower().endswith(".jsonl"):
        return [Message.from_dict(it) for it in read_jsonl(input_path)]
    if not os.path.isfile(input_path):
        raise FileNotFoundError(input_path)
    with open(input_path, "r", encoding="utf-8") as f:
        return parse_conversations(f.read())


# ------------------------------
# Stats, filtering, sampling
# ------------------------------
def get_conversation_stats(messages: List[Message]) -> Dict[str, Any]:
    if not messages:
        return {
            "totalMessages": 0,
            "totalConversations": 0,
            "userMessages": 0,
            "assistantMessages": 0,
            "averageMessagesPerConversation": 0,
            "dateRange": None,
            "topModels": [],
        }

    df = pd.DataFrame(
        {
            "conversation_id": [m.conversation_id for m in messages],
            "role": [m.role for m in messages],
            "timestamp": [m.timestamp for m in messages],
            "model": [m.metadata.get("model") for m in messages],
        }
    )
    n_convs = int(df["conversation_id"].nunique())
    roles = df["role"].value_counts()

    date_range = None
    ts = df["timestamp"].dropna()
    ts = ts[ts != 0]
    if not ts.empty:
        date_range = {
            "earliest": datetime.fromtimestamp(float(ts.min()), tz=timezone.utc),
            "latest": datetime.fromtimestamp(float(ts.max()), tz=timezone.utc),
        }

    models = df["model"].dropna()
    models = models[models != ""]
    top_models = [
        {"model": str(name), "count": int(count)}
        for name, count in models.value_counts().head(5).items()
    ]

    return {
        "totalMessages": len(messages),
        "totalConversations": n_convs,
        "userMessages": int(roles.get("user", 0)),
        "assistantMessages": int(roles.get("assistant", 0)),
        "averageMessagesPerConversation": round(len(messages) / n_convs, 1) if n_convs else 0,
        "dateRange": date_range,
        "topModels": top_models,
    }


def _to_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    return _as_utc(dateparser.parse(value))


def filter_messages(
    messages: List[Message],
    role: Optional[str] = None,
    start_date: Union[str, datetime, None] = None,
    end_date: Union[str, datetime, None] = None,
    min_length: Optional[int] = None,
    search_term: Optional[str] = None,
) -> List[Message]:
    filtered = list(messages)

    if role and role != "all":
        filtered = [m for m in filtered if m.role == role]

    start, end = _to_datetime(start_date), _to_datetime(end_date)
    if start or end:

        def in_range(m: Message) -> bool:
            if not m.timestamp:
                return False
            dt = datetime.fromtimestamp(m.timestamp, tz=timezone.utc)
            if start and dt < start:
                return False
            if end and dt > end:
                return False
            return True

        filtered = [m for m in filtered if in_range(m)]

    if min_length:
        filtered = [m for m in filtered if len(m.text) >= min_length]

    if search_term:
        term = search_term.lower()
        filtered = [
            m for m in filtered if term in m.text.lower() or term in m.conversation_title.lower()
        ]

    return filtered


def sample_messages(messages: List[Message], max_messages: int = 2000) -> List[Message]:
    """Cap the message count while keeping every conversation represented."""
    if len(messages) <= max_messages:
        return messages

    groups: Dict[str, List[Message]] = {}
    for m in messages:
        groups.setdefault(m.conversation_id, []).append(m)

    # more conversations than the cap: one message each, then cut
    per_conv = max(1, max_messages // len(groups))
    sampled: List[Message] = []
    for conv_msgs in groups.values():
        if len(conv_msgs) <= per_conv:
            sampled.extend(conv_msgs)
            continue
        step = len(conv_msgs) / per_conv
        sampled.extend(conv_msgs[math.floor(i * step)] for i in range(per_conv))
    return sampled[:max_messages]
