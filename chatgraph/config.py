from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Optional

from .utils import getenv_float, getenv_int, getenv_optional_int

DEFAULT_PROVIDER = "local"
DEFAULT_MODEL = "paraphrase-multilingual-MiniLM-L12-v2"


@dataclass(frozen=True)
class PipelineConfig:
    """Tunables for one processing run.

    Every field can be set from the environment via `from_env()`; the
    defaults leave k-means and UMAP unseeded.
    """

    provider: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    batch_size: int = 50
    max_text_length: int = 500
    max_iterations: int = 10
    k_min: int = 3
    k_max: int = 20
    n_neighbors: int = 10
    n_epochs: int = 250
    yield_delay: float = 0.01
    seed: Optional[int] = None

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            provider=os.getenv("PROVIDER", DEFAULT_PROVIDER),
            model=os.getenv("MODEL", DEFAULT_MODEL),
            batch_size=getenv_int("BATCH_SIZE", 50),
            max_text_length=getenv_int("MAX_TEXT_LENGTH", 500),
            max_iterations=getenv_int("KMEANS_MAX_ITER", 10),
            k_min=getenv_int("K_MIN", 3),
            k_max=getenv_int("K_MAX", 20),
            n_neighbors=getenv_int("UMAP_N_NEIGHBORS", 10),
            n_epochs=getenv_int("UMAP_N_EPOCHS", 250),
            yield_delay=getenv_float("YIELD_DELAY", 0.01),
            seed=getenv_optional_int("SEED"),
        )

    def override(self, **changes: Any) -> "PipelineConfig":
        """Copy with the non-None `changes` applied (CLI flags left unset are ignored)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
