from __future__ import annotations

import re
from collections import Counter
from typing import Iterable, List, Optional


STOPWORDS = frozenset(
    """
the a an and or to of in on for is at by my you me it with that this i we
your be can do from as but if so are was not
""".split()
)

LABEL_SEPARATOR = " · "
OUTLIER_LABEL = " "
OUTLIER_COLOR = "#000000"
MIN_LABELLED_MEMBERS = 2

_NON_ALNUM_RE = re.compile(r"[^a-z0-9 ]")


def tokenize(text: Optional[str]) -> List[str]:
    """Lowercase ASCII-alphanumeric words longer than two chars, minus stopwords."""
    words = _NON_ALNUM_RE.sub(" ", (text or "").lower()).split()
    return [w for w in words if w not in STOPWORDS and len(w) > 2]


def top_words(texts: Iterable[Optional[str]], n: int = 3) -> List[str]:
    counts: Counter = Counter()
    for text in texts:
        counts.update(tokenize(text))
    # most_common is a stable sort: equal counts stay in first-seen order
    return [w for w, _ in counts.most_common(n)]


def make_cluster_label(texts: List[str], cluster_id: int, n: int = 3) -> str:
    """Label for a cluster from its members' texts.

    Clusters with fewer than two members are outliers and get the blank
    label; otherwise the top words, or ``cluster <id>`` when none qualify.
    """
    if len(texts) < MIN_LABELLED_MEMBERS:
        return OUTLIER_LABEL
    words = top_words(texts, n=n)
    if not words:
        return f"cluster {cluster_id}"
    return LABEL_SEPARATOR.join(words)


# ------------------------------
# Palette
# ------------------------------
PALETTE = [
    "#e45756", "#4e79a7", "#76b7b2", "#f28e2c", "#59a14f",
    "#edc948", "#b07aa1", "#ff9da7", "#9c755f", "#bab0ab",
    "#6a3d9a", "#1f78b4", "#33a02c", "#fb9a99", "#e31a1c",
    "#fdbf6f", "#cab2d6", "#b15928", "#a6cee3", "#b2df8a",
]


def color_for_cluster(cluster_id: int, transparent: bool = False) -> str:
    base = PALETTE[int(cluster_id) % len(PALETTE)]
    if not transparent:
        return base
    r, g, b = (int(base[i : i + 2], 16) for i in (1, 3, 5))
    return f"rgba({r},{g},{b},.75)"
