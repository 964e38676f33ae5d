from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import networkx as nx
import numpy as np

from .analysis import OUTLIER_COLOR, color_for_cluster, make_cluster_label
from .data_processing import Message
from .errors import InvalidInput
from .layout import cluster_positions

CONVERSATION_LABEL_CHARS = 60
CONVERSATION_NODE_SIZE = 5


@dataclass
class Conversation:
    """Layout unit: one per conversation, carrying its earliest message's vector."""

    id: str
    title: str
    cluster_id: int
    embedding: List[float]
    x: float = 0.0
    y: float = 0.0

    @property
    def label(self) -> str:
        return self.title[:CONVERSATION_LABEL_CHARS]


@dataclass
class Cluster:
    cluster_id: int
    label: str
    color: str
    member_conversation_ids: List[str] = field(default_factory=list)
    centroid: Optional[List[float]] = None
    x: float = 0.0
    y: float = 0.0

    @property
    def node_id(self) -> str:
        return f"cluster-{self.cluster_id}"

    @property
    def size(self) -> int:
        return len(self.member_conversation_ids)

    @property
    def is_outlier(self) -> bool:
        return self.size < 2


def conversations_from_messages(messages: Sequence[Message]) -> List[Conversation]:
    """Pick each conversation's earliest message (first seen wins ties).

    Conversations keep the order in which they first appear.
    """
    first: Dict[str, Message] = {}
    for m in messages:
        if m.embedding is None or m.cluster_id is None:
            raise InvalidInput(f"Message {m.id} has no embedding/cluster assignment")
        current = first.get(m.conversation_id)
        if current is None or (m.timestamp or 0) < (current.timestamp or 0):
            first[m.conversation_id] = m
    return [
        Conversation(
            id=m.conversation_id,
            title=m.conversation_title or "",
            cluster_id=int(m.cluster_id),
            embedding=list(m.embedding),
        )
        for m in first.values()
    ]


def place_conversations(conversations: Sequence[Conversation], coords: np.ndarray) -> None:
    if len(conversations) != coords.shape[0]:
        raise InvalidInput(f"Got {coords.shape[0]} positions for {len(conversations)} conversations")
    for conv, (x, y) in zip(conversations, coords):
        conv.x, conv.y = float(x), float(y)


def build_clusters(
    conversations: Sequence[Conversation],
    centroids: Optional[np.ndarray] = None,
) -> List[Cluster]:
    """Group placed conversations by cluster id, label and colour each group."""
    members: Dict[int, List[Conversation]] = {}
    for conv in conversations:
        members.setdefault(conv.cluster_id, []).append(conv)

    coords = np.array([[c.x, c.y] for c in conversations], dtype=np.float64).reshape(-1, 2)
    positions = cluster_positions(coords, [c.cluster_id for c in conversations])

    clusters: List[Cluster] = []
    for cid, convs in members.items():
        outlier = len(convs) < 2
        x, y = positions[cid]
        clusters.append(
            Cluster(
                cluster_id=cid,
                label=make_cluster_label([c.title for c in convs], cid),
                color=OUTLIER_COLOR if outlier else color_for_cluster(cid),
                member_conversation_ids=[c.id for c in convs],
                centroid=centroids[cid].tolist() if centroids is not None and cid < len(centroids) else None,
                x=x,
                y=y,
            )
        )
    return clusters


def build_legend(clusters: Sequence[Cluster]) -> List[Dict[str, Any]]:
    return [
        {"id": cl.node_id, "label": cl.label, "color": cl.color, "count": cl.size}
        for cl in clusters
    ]


def build_graph(clusters: Sequence[Cluster], conversations: Sequence[Conversation]) -> nx.Graph:
    graph = nx.Graph()
    outliers = set()
    for cl in clusters:
        if cl.is_outlier:
            outliers.add(cl.cluster_id)
        graph.add_node(
            cl.node_id,
            label=cl.label,
            size=1 if cl.is_outlier else 5 + cl.size * 0.3,
            color=OUTLIER_COLOR if cl.is_outlier else color_for_cluster(cl.cluster_id, transparent=True),
            x=cl.x,
            y=cl.y,
            kind="cluster",
        )

    for conv in conversations:
        color = OUTLIER_COLOR if conv.cluster_id in outliers else color_for_cluster(conv.cluster_id)
        graph.add_node(
            conv.id,
            label=conv.label,
            size=CONVERSATION_NODE_SIZE,
            color=color,
            x=conv.x,
            y=conv.y,
            clusterId=conv.cluster_id,
            kind="convo",
        )
        graph.add_edge(f"cluster-{conv.cluster_id}", conv.id, color=color)
    return graph


def graph_to_dict(graph: nx.Graph) -> Dict[str, Any]:
    return nx.node_link_data(graph, edges="edges")


def assemble(
    conversations: Sequence[Conversation],
    centroids: Optional[np.ndarray] = None,
) -> Tuple[List[Cluster], nx.Graph, List[Dict[str, Any]]]:
    """Clusters, render graph and legend for already-placed conversations."""
    clusters = build_clusters(conversations, centroids)
    return clusters, build_graph(clusters, conversations), build_legend(clusters)
