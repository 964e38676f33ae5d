from __future__ import annotations

import asyncio
import logging
import os
import zlib
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .data_processing import MAX_TEXT_LENGTH, clean_text
from .errors import BatchFailure, DimensionMismatch, ModelNotReady
from .utils import notify

try:  # optional dependency
    from sentence_transformers import SentenceTransformer  # type: ignore
except ImportError:  # pragma: no cover - runtime optional import
    SentenceTransformer = None  # type: ignore

DEFAULT_LOCAL_MODEL = "paraphrase-multilingual-MiniLM-L12-v2"


class Embedder:
    name = "embedder"

    def embed(self, texts: List[str], batch_size: int = 64) -> np.ndarray:  # pragma: no cover - interface
        raise NotImplementedError


class SiliconFlowEmbedder(Embedder):
    """Remote OpenAI-compatible ``/embeddings`` endpoint (SiliconFlow by default).

    The API key is read from `api_key_env` when the provider is built and
    checked on the first call, so a missing key fails the batch, not the load.
    """

    def __init__(
        self,
        model: str = "BAAI/bge-m3",
        base_url: str = "https://api.siliconflow.cn/v1/embeddings",
        api_key_env: str = "SILICONFLOW_API_KEY",
        timeout: float = 60.0,
    ):
        import requests  # lazy import

        self.requests = requests
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key_env = api_key_env
        self.api_key = os.environ.get(api_key_env)
        self.timeout = timeout
        self.name = f"siliconflow:{model}"

    def _post(self, chunk: List[str]) -> List[List[float]]:
        resp = self.requests.post(
            self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"model": self.model, "input": chunk, "encoding_format": "float"},
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise RuntimeError(f"Embedding API error {resp.status_code}: {resp.text[:200]}")
        rows = resp.json().get("data") or []
        if len(rows) != len(chunk):
            raise RuntimeError(f"Embedding API returned {len(rows)} vectors for {len(chunk)} texts")
        # the endpoint tags each row with its input position
        rows = sorted(rows, key=lambda r: r.get("index", 0))
        return [r["embedding"] for r in rows]

    def embed(self, texts: List[str], batch_size: int = 64) -> np.ndarray:
        if not self.api_key:
            raise RuntimeError(f"{self.api_key_env} is not set")
        out: List[List[float]] = []
        for i in range(0, len(texts), batch_size):
            out.extend(self._post(texts[i : i + batch_size]))
        return np.asarray(out, dtype=np.float32)


class LocalSTEmbedder(Embedder):
    """sentence-transformers model running in-process.

    Loading happens in the constructor; `PipelineContext.load_model` runs it
    off the event loop.
    """

    def __init__(self, model: str = DEFAULT_LOCAL_MODEL, normalize: bool = False, device: Optional[str] = None):
        if SentenceTransformer is None:
            raise RuntimeError("sentence-transformers not installed; pip install sentence-transformers")
        logging.info("Loading sentence-transformers model %s", model)
        self.model = SentenceTransformer(model, device=device)
        self.normalize = normalize
        self.name = f"local:{model}"

    def embed(self, texts: List[str], batch_size: int = 64) -> np.ndarray:
        embs = self.model.encode(
            texts,
            batch_size=batch_size,
            convert_to_numpy=True,
            normalize_embeddings=self.normalize,
            show_progress_bar=False,
        )
        return np.asarray(embs, dtype=np.float32)


class CharNgramHasher(Embedder):
    """Model-free embedder: hashed character n-gram counts, L2-normalised."""

    name = "char-ngram-hash"

    def __init__(self, dim: int = 256, ngram_min: int = 2, ngram_max: int = 3):
        self.dim = dim
        self.ngram_min = ngram_min
        self.ngram_max = ngram_max

    def _ngrams(self, text: str) -> List[str]:
        t = text.strip().lower()
        ngrams: List[str] = []
        for n in range(self.ngram_min, self.ngram_max + 1):
            for i in range(0, max(0, len(t) - n + 1)):
                ngrams.append(t[i : i + n])
        return ngrams

    def embed(self, texts: List[str], batch_size: int = 64) -> np.ndarray:
        mat = np.zeros((len(texts), self.dim), dtype=np.float32)
        for row, text in enumerate(texts):
            for ng in self._ngrams(text):
                # crc32 is stable across interpreter runs
                mat[row, zlib.crc32(ng.encode("utf-8")) % self.dim] += 1.0
        norms = np.linalg.norm(mat, axis=1, keepdims=True) + 1e-6
        return mat / norms


def build_embedder(provider: str, model: Optional[str] = None) -> Embedder:
    provider = provider.lower()
    if provider == "local":
        return LocalSTEmbedder(model=model) if model else LocalSTEmbedder()
    if provider == "siliconflow":
        if model and model != DEFAULT_LOCAL_MODEL:
            return SiliconFlowEmbedder(model=model)
        return SiliconFlowEmbedder()
    if provider == "hash":
        return CharNgramHasher()
    raise ValueError(f"Unknown embedding provider {provider!r} (expected local / siliconflow / hash)")


class EmbeddingGenerator:
    """Turn message texts into vectors, one fixed-size batch at a time.

    Batches run strictly in order. After each batch a progress payload
    ``{"step": "embeddings", "current", "total", "message"}`` is delivered,
    where ``current`` counts the texts embedded so far. Any batch failure
    aborts the whole call; nothing partial is returned.
    """

    def __init__(
        self,
        embedder: Optional[Embedder],
        batch_size: int = 50,
        max_text_length: int = MAX_TEXT_LENGTH,
        yield_delay: float = 0.01,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.embedder = embedder
        self.batch_size = batch_size
        self.max_text_length = max_text_length
        self.yield_delay = yield_delay

    async def embed(
        self,
        texts: List[Any],
        on_progress: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> List[List[float]]:
        if self.embedder is None:
            raise ModelNotReady("Model not loaded. Call LOAD_MODEL first.")

        cleaned = [clean_text(t, self.max_text_length) for t in texts]
        total = len(cleaned)
        vectors: List[List[float]] = []
        dim: Optional[int] = None

        for start in range(0, total, self.batch_size):
            batch = cleaned[start : start + self.batch_size]
            end = start + len(batch)
            try:
                arr = await asyncio.to_thread(self.embedder.embed, batch, len(batch))
            except Exception as err:
                raise BatchFailure(f"Error processing batch {start}-{end}: {err}") from err

            arr = np.asarray(arr, dtype=np.float32)
            if arr.ndim != 2 or arr.shape[0] != len(batch):
                raise BatchFailure(
                    f"Error processing batch {start}-{end}: expected {len(batch)} vectors, got shape {arr.shape}"
                )
            if dim is None:
                dim = int(arr.shape[1])
            elif arr.shape[1] != dim:
                raise DimensionMismatch(f"Batch {start}-{end} returned dimension {arr.shape[1]}, expected {dim}")

            vectors.extend(arr.tolist())
            # drop the batch array before the next one is produced
            del arr
            logging.debug("Embedded batch %d-%d of %d", start, end, total)

            await notify(
                on_progress,
                {
                    "step": "embeddings",
                    "current": end,
                    "total": total,
                    "message": f"Processing embeddings: {end}/{total}",
                },
            )
            if end < total and self.yield_delay > 0:
                await asyncio.sleep(self.yield_delay)

        return vectors
