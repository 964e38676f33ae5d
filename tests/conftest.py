from __future__ import annotations

from typing import List

import numpy as np
import pytest

from chatgraph.config import PipelineConfig
from chatgraph.data_processing import Message
from chatgraph.embeddings import Embedder


class TopicEmbedder(Embedder):
    """Deterministic stand-in for a sentence model.

    Texts mentioning a known topic land next to that topic's axis; the
    small offset depends on text length so points are not identical.
    """

    name = "topic-fake"
    TOPICS = {
        "pizza": [1.0, 0.0, 0.0, 0.0],
        "rocket": [0.0, 0.0, 0.0, 1.0],
    }

    def __init__(self) -> None:
        self.calls: List[List[str]] = []

    def embed(self, texts: List[str], batch_size: int = 64) -> np.ndarray:
        self.calls.append(list(texts))
        rows = []
        for t in texts:
            base = next((v for k, v in self.TOPICS.items() if k in t.lower()), [0.5, 0.5, 0.5, 0.5])
            jitter = (len(t) % 7) * 0.01
            rows.append([b + jitter for b in base])
        return np.asarray(rows, dtype=np.float32)


class FailingEmbedder(Embedder):
    name = "failing"

    def __init__(self, fail_on_call: int = 1) -> None:
        self.fail_on_call = fail_on_call
        self.calls = 0

    def embed(self, texts: List[str], batch_size: int = 64) -> np.ndarray:
        self.calls += 1
        if self.calls >= self.fail_on_call:
            raise RuntimeError("model exploded")
        return np.ones((len(texts), 3), dtype=np.float32)


@pytest.fixture
def topic_embedder() -> TopicEmbedder:
    return TopicEmbedder()


@pytest.fixture
def fast_config() -> PipelineConfig:
    return PipelineConfig(provider="hash", yield_delay=0.0, seed=7)


def make_message(idx: int, conversation_id: str, text: str, ts: float, title: str = "") -> Message:
    return Message(
        id=f"m{idx}",
        text=text,
        role="user" if idx % 2 == 0 else "assistant",
        timestamp=ts,
        conversation_id=conversation_id,
        conversation_title=title or f"Title of {conversation_id}",
    )


@pytest.fixture
def two_topic_messages() -> List[Message]:
    pizza = [
        "I want to bake a pizza tonight",
        "Pizza dough needs time to rise",
        "Best pizza oven temperature?",
        "Use fresh mozzarella on the pizza",
        "Thanks, the pizza came out great",
    ]
    rocket = [
        "How does a rocket engine work",
        "Rocket fuel mixtures explained",
        "Why do rocket stages separate",
        "Reusable rocket boosters land upright",
        "Rocket launch windows depend on orbits",
    ]
    msgs = [make_message(i, "conv-pizza", t, 1000.0 + i, "Homemade pizza tips") for i, t in enumerate(pizza)]
    msgs += [
        make_message(i + 5, "conv-rocket", t, 2000.0 + i, "Rocket science questions")
        for i, t in enumerate(rocket)
    ]
    return msgs


@pytest.fixture
def export_archive() -> list:
    """A tiny conversations.json export with one system node and one empty node."""
    return [
        {
            "id": "c1",
            "title": "Travel plans",
            "create_time": 1700000000.0,
            "update_time": 1700000500.0,
            "mapping": {
                "root": {"id": "root", "message": None, "parent": None, "children": ["n2"]},
                "n2": {
                    "id": "n2",
                    "parent": "root",
                    "children": ["n1"],
                    "message": {
                        "id": "msg-b",
                        "author": {"role": "assistant"},
                        "create_time": 1700000200.0,
                        "content": {"content_type": "text", "parts": ["Visit Kyoto in spring."]},
                        "metadata": {"model_slug": "gpt-4", "finish_details": {"type": "stop"}},
                    },
                },
                "n1": {
                    "id": "n1",
                    "parent": "n2",
                    "children": [],
                    "message": {
                        "id": "msg-a",
                        "author": {"role": "user"},
                        "create_time": 1700000100.0,
                        "content": {"content_type": "text", "parts": ["Where should I", "", "go in Japan?"]},
                        "metadata": {},
                    },
                },
                "n3": {
                    "id": "n3",
                    "parent": "n1",
                    "children": [],
                    "message": {
                        "id": "msg-empty",
                        "author": {"role": "system"},
                        "content": {"content_type": "text", "parts": [""]},
                    },
                },
            },
        },
        {
            "title": None,
            "create_time": 1710000000.0,
            "mapping": {
                "x": {
                    "message": {
                        "author": {},
                        "content": {"parts": ["hello there"]},
                    },
                    "parent": None,
                    "children": [],
                }
            },
        },
        "not a conversation",
    ]


class FixedDraw:
    """Stand-in for a numpy Generator that returns preset centroid indices."""

    def __init__(self, indices):
        self.indices = list(indices)

    def integers(self, low, high, size=None):
        return np.asarray(self.indices[:size], dtype=int)
