"""
Chat history graph: embed, cluster and lay out exported conversations.

Modules:
- data_processing: Message dataclass, text cleaning, archive parsing
- embeddings: Embedding providers and the batched generator
- clustering: k selection and k-means
- analysis: Cluster labels and palette
- layout: 2-D projection (UMAP)
- graph: Conversation/cluster nodes, edges and legend
- pipeline: Pipeline context, run and message-passing worker
- utils: Small shared utilities
"""

__all__ = [
    "data_processing",
    "embeddings",
    "clustering",
    "analysis",
    "layout",
    "graph",
    "pipeline",
    "utils",
]

__version__ = "0.1.0"
