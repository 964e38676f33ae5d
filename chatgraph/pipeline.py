from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import networkx as nx
import numpy as np

from .clustering import choose_k, cluster_quality, kmeans
from .config import PipelineConfig
from .data_processing import Message
from .embeddings import Embedder, EmbeddingGenerator, build_embedder
from .errors import EmbeddingClusterMismatch, InvalidInput, ModelNotReady, PipelineError
from .graph import Cluster, Conversation, assemble, conversations_from_messages, graph_to_dict, place_conversations
from .layout import project
from .utils import notify


# ------------------------------
# Boundary protocol
# ------------------------------
class RequestType(str, Enum):
    LOAD_MODEL = "LOAD_MODEL"
    PROCESS_MESSAGES = "PROCESS_MESSAGES"
    SHUTDOWN = "SHUTDOWN"


class EventType(str, Enum):
    STATUS = "STATUS"
    PROGRESS = "PROGRESS"
    MODEL_LOADED = "MODEL_LOADED"
    PROCESSING_COMPLETE = "PROCESSING_COMPLETE"
    ERROR = "ERROR"


TERMINAL_EVENTS = (EventType.PROCESSING_COMPLETE, EventType.ERROR)


@dataclass
class Request:
    type: Union[RequestType, str]
    payload: Any = None


@dataclass
class Event:
    type: EventType
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "payload": self.payload}


# ------------------------------
# Context and run
# ------------------------------
@dataclass
class PipelineContext:
    """Holds the loaded model handle for a worker.

    `Pipeline.process` requires `load_model()` to have completed on this
    context; otherwise it fails with ModelNotReady.
    """

    config: PipelineConfig = field(default_factory=PipelineConfig)
    model: Optional[Embedder] = None
    loader: Optional[Callable[[], Embedder]] = None

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    async def load_model(self) -> Embedder:
        if self.model is None:
            loader = self.loader or (lambda: build_embedder(self.config.provider, self.config.model))
            self.model = await asyncio.to_thread(loader)
        return self.model


@dataclass
class PipelineResult:
    messages: List[Message]
    stats: Dict[str, int]
    conversations: List[Conversation]
    clusters: List[Cluster]
    graph: nx.Graph
    legend: List[Dict[str, Any]]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "stats": dict(self.stats),
            "graph": graph_to_dict(self.graph),
            "legend": list(self.legend),
        }


EventCallback = Callable[[Event], Any]


class Pipeline:
    """Embedding -> k-means -> projection -> graph for one message set.

    Runs are not guarded against overlap: the caller must wait for a run's
    terminal event before starting another on the same context.
    """

    def __init__(self, context: PipelineContext, on_event: Optional[EventCallback] = None) -> None:
        self.context = context
        self.on_event = on_event

    @property
    def config(self) -> PipelineConfig:
        return self.context.config

    async def _emit(self, type_: EventType, payload: Any = None) -> None:
        await notify(self.on_event, Event(type_, payload))

    async def _status(self, text: str) -> None:
        logging.debug(text)
        await self._emit(EventType.STATUS, text)

    async def _progress(self, payload: Dict[str, Any]) -> None:
        await self._emit(EventType.PROGRESS, payload)

    async def load_model(self) -> None:
        if self.context.is_loaded:
            await self._emit(EventType.MODEL_LOADED, "Model loaded successfully")
            return
        await self._status(f"Loading embedding model ({self.config.provider}: {self.config.model})...")
        try:
            model = await self.context.load_model()
        except Exception as err:
            raise PipelineError(f"Failed to load model: {err}") from err
        logging.info("Embedding model ready: %s", getattr(model, "name", type(model).__name__))
        await self._emit(EventType.MODEL_LOADED, "Model loaded successfully")

    async def process(self, messages: Any) -> PipelineResult:
        if not self.context.is_loaded:
            raise ModelNotReady("Model not loaded. Call LOAD_MODEL first.")
        if not isinstance(messages, (list, tuple)) or len(messages) == 0:
            raise InvalidInput("Invalid messages array")
        msgs = [m if isinstance(m, Message) else Message.from_dict(m) for m in messages]
        cfg = self.config
        n = len(msgs)
        logging.info("Processing %d messages...", n)

        # 1) embeddings
        await self._status(f"Generating embeddings for {n} messages...")
        generator = EmbeddingGenerator(
            self.context.model,
            batch_size=cfg.batch_size,
            max_text_length=cfg.max_text_length,
            yield_delay=cfg.yield_delay,
        )
        embeddings = await generator.embed([m.text for m in msgs], on_progress=self._progress)
        if len(embeddings) != n:
            raise EmbeddingClusterMismatch("Embeddings and messages length mismatch")
        dim = len(embeddings[0]) if embeddings else 0

        # 2) clustering
        await self._status("Clustering messages by similarity...")
        k = choose_k(n, cfg.k_min, cfg.k_max)
        await self._status(f"Running K-means clustering ({k} clusters)...")
        assignments, centroids = await kmeans(
            embeddings,
            k,
            max_iterations=cfg.max_iterations,
            on_progress=self._progress,
            yield_delay=cfg.yield_delay,
            rng=np.random.default_rng(cfg.seed),
        )
        score = await asyncio.to_thread(cluster_quality, np.asarray(embeddings), assignments)
        if score is not None:
            logging.info("Silhouette score: %.4f", score)

        clustered = [
            replace(m, embedding=emb, cluster_id=cid)
            for m, emb, cid in zip(msgs, embeddings, assignments)
        ]

        # 3) layout at conversation granularity
        conversations = conversations_from_messages(clustered)
        await self._status(f"Projecting {len(conversations)} conversations to 2D...")
        await self._progress(
            {"step": "layout", "current": 0, "total": 1, "message": "Computing conversation layout"}
        )
        coords = await asyncio.to_thread(
            project,
            [c.embedding for c in conversations],
            cfg.n_neighbors,
            cfg.n_epochs,
            cfg.seed,
        )
        place_conversations(conversations, coords)
        await self._progress(
            {"step": "layout", "current": 1, "total": 1, "message": "Computing conversation layout"}
        )

        # 4) graph
        clusters, graph, legend = assemble(conversations, centroids)
        stats = {
            "totalMessages": n,
            "totalClusters": max(assignments) + 1,
            "embeddingDimensions": dim,
        }
        logging.info(
            "Done: %d messages, %d clusters, %d conversations, dim=%d",
            n,
            stats["totalClusters"],
            len(conversations),
            dim,
        )
        result = PipelineResult(
            messages=clustered,
            stats=stats,
            conversations=conversations,
            clusters=clusters,
            graph=graph,
            legend=legend,
        )
        await self._emit(EventType.PROCESSING_COMPLETE, result.to_payload())
        return result

    async def run(self, messages: Any) -> Optional[PipelineResult]:
        """Like process(), but a failure becomes a single ERROR event."""
        try:
            return await self.process(messages)
        except Exception as err:
            _log_failure(err)
            await self._emit(EventType.ERROR, str(err))
            return None


def _log_failure(err: Exception) -> None:
    if isinstance(err, PipelineError):
        logging.error("Pipeline error: %s", err)
    else:
        logging.exception("Unexpected pipeline failure")


# ------------------------------
# Worker (message passing)
# ------------------------------
class PipelineWorker:
    """Serve LOAD_MODEL / PROCESS_MESSAGES requests from an inbox queue.

    Every event goes to `outbox`. Requests are handled one at a time in
    arrival order; heavy steps run in threads so the host loop stays free.
    """

    def __init__(self, context: Optional[PipelineContext] = None) -> None:
        self.context = context or PipelineContext()
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.pipeline = Pipeline(self.context, on_event=self.outbox.put)
        self._task: Optional[asyncio.Task] = None

    def post(self, type_: Union[RequestType, str], payload: Any = None) -> None:
        self.inbox.put_nowait(Request(type_, payload))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self.post(RequestType.SHUTDOWN)
        await self._task
        self._task = None

    async def run(self) -> None:
        logging.debug("Processing worker started")
        while True:
            request = await self.inbox.get()
            try:
                if request.type == RequestType.SHUTDOWN:
                    break
                await self.handle(request)
            finally:
                self.inbox.task_done()
        logging.debug("Processing worker stopped")

    async def handle(self, request: Request) -> None:
        try:
            kind = RequestType(request.type)
        except ValueError:
            await self.outbox.put(Event(EventType.ERROR, f"Unknown message type: {request.type}"))
            return

        try:
            if kind == RequestType.LOAD_MODEL:
                await self.pipeline.load_model()
            elif kind == RequestType.PROCESS_MESSAGES:
                await self.pipeline.process(request.payload)
        except Exception as err:
            _log_failure(err)
            await self.outbox.put(Event(EventType.ERROR, str(err)))

    async def collect(self, until: Sequence[EventType] = TERMINAL_EVENTS) -> List[Event]:
        """Drain events up to and including the first one whose type is in `until`."""
        events: List[Event] = []
        while True:
            event = await self.outbox.get()
            events.append(event)
            if event.type in until:
                return events
