#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from tqdm import tqdm

from .config import PipelineConfig
from .data_processing import (
    Message,
    filter_messages,
    get_conversation_stats,
    read_messages,
    sample_messages,
)
from .pipeline import EventType, PipelineContext, PipelineWorker, RequestType
from .utils import configure_logging, ensure_dir, getenv_int, write_json, write_jsonl


class ProgressRenderer:
    """Render worker events on the terminal: one tqdm bar per progress step."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.bars: Dict[str, tqdm] = {}

    def __call__(self, event) -> None:
        if not self.enabled:
            return
        if event.type == EventType.STATUS:
            tqdm.write(event.payload)
        elif event.type == EventType.PROGRESS:
            p = event.payload
            bar = self.bars.get(p["step"])
            if bar is None:
                bar = tqdm(total=p["total"], desc=p["step"], ncols=100)
                self.bars[p["step"]] = bar
            bar.n = p["current"]
            bar.refresh()

    def close(self) -> None:
        for bar in self.bars.values():
            bar.close()
        self.bars.clear()


async def process_with_worker(
    messages: List[Message],
    config: PipelineConfig,
    show_progress: bool = True,
) -> Dict[str, Any]:
    """Load the model and process `messages` through a worker; return the completion payload."""
    worker = PipelineWorker(PipelineContext(config=config))
    worker.start()
    renderer = ProgressRenderer(enabled=show_progress)
    try:
        worker.post(RequestType.LOAD_MODEL)
        for event in await worker.collect((EventType.MODEL_LOADED, EventType.ERROR)):
            renderer(event)
            if event.type == EventType.ERROR:
                raise RuntimeError(event.payload)

        worker.post(RequestType.PROCESS_MESSAGES, messages)
        while True:
            event = await worker.outbox.get()
            renderer(event)
            if event.type == EventType.ERROR:
                raise RuntimeError(event.payload)
            if event.type == EventType.PROCESSING_COMPLETE:
                return event.payload
    finally:
        renderer.close()
        await worker.stop()


def run(
    input_path: str,
    config: PipelineConfig,
    output_dir: Optional[str] = None,
    max_messages: int = 2000,
    role: Optional[str] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    min_length: Optional[int] = None,
    search: Optional[str] = None,
    show_progress: bool = True,
) -> Dict[str, Any]:
    logging.info("Reading %s ...", input_path)
    msgs = read_messages(input_path)
    msgs = filter_messages(
        msgs, role=role, start_date=since, end_date=until, min_length=min_length, search_term=search
    )
    sampled = sample_messages(msgs, max_messages)
    if len(sampled) < len(msgs):
        logging.info("Sampled %d messages from %d total", len(sampled), len(msgs))

    overview = get_conversation_stats(sampled)
    logging.info(
        "%d messages in %d conversations (user: %d, assistant: %d)",
        overview["totalMessages"],
        overview["totalConversations"],
        overview["userMessages"],
        overview["assistantMessages"],
    )

    payload = asyncio.run(process_with_worker(sampled, config, show_progress=show_progress))

    stats = payload["stats"]
    logging.info(
        "Processed %d messages into %d clusters (embedding dimensions: %d)",
        stats["totalMessages"],
        stats["totalClusters"],
        stats["embeddingDimensions"],
    )
    for entry in payload["legend"]:
        logging.info("  %-12s %3d  %s", entry["id"], entry["count"], entry["label"].strip() or "(outlier)")

    if output_dir:
        ensure_dir(output_dir)
        out_graph = os.path.join(output_dir, "graph.json")
        out_msgs = os.path.join(output_dir, "messages_with_clusters.jsonl")
        logging.info("Writing %s", out_graph)
        write_json(
            out_graph,
            {"graph": payload["graph"], "legend": payload["legend"], "stats": stats, "overview": overview},
        )
        logging.info("Writing %s", out_msgs)
        records = [
            {k: v for k, v in row.items() if k != "embedding"} for row in payload["messages"]
        ]
        write_jsonl(out_msgs, records)
    return payload


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    defaults = PipelineConfig.from_env()
    p = argparse.ArgumentParser(
        description="Embed, cluster and lay out an exported chat history as a graph",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--input", default=os.getenv("INPUT", "./conversations.json"), help="conversations.json export or flat .jsonl messages")
    p.add_argument("--output", default=os.getenv("OUTPUT"), help="directory for graph.json (omit to only print a summary)")
    p.add_argument("--provider", default=defaults.provider, choices=["local", "siliconflow", "hash"], help="embedding provider")
    p.add_argument("--model", default=defaults.model, help="embedding model name")
    p.add_argument("--batch_size", type=int, default=defaults.batch_size, help="embedding batch size")
    p.add_argument("--max_messages", type=int, default=getenv_int("MAX_MESSAGES", 2000), help="sample down to this many messages")
    p.add_argument("--role", default=None, help="only keep messages with this role (user/assistant/...)")
    p.add_argument("--since", default=None, help="only keep messages at or after this date")
    p.add_argument("--until", default=None, help="only keep messages at or before this date")
    p.add_argument("--min_length", type=int, default=None, help="minimum message length in characters")
    p.add_argument("--search", default=None, help="keep messages whose text or title contains this term")
    p.add_argument("--seed", type=int, default=defaults.seed, help="seed k-means and UMAP (unseeded by default)")
    p.add_argument("--no_progress", action="store_true", help="do not draw progress bars")
    p.add_argument("--log_level", default="INFO", help="DEBUG/INFO/WARN/ERROR")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()
    args = parse_args(argv)
    configure_logging(args.log_level)
    config = PipelineConfig.from_env().override(
        provider=args.provider,
        model=args.model,
        batch_size=args.batch_size,
        seed=args.seed,
    )
    try:
        run(
            input_path=args.input,
            config=config,
            output_dir=args.output,
            max_messages=args.max_messages,
            role=args.role,
            since=args.since,
            until=args.until,
            min_length=args.min_length,
            search=args.search,
            show_progress=not args.no_progress,
        )
    except Exception as err:
        logging.critical("Aborted: %s", err)
        sys.exit(1)


if __name__ == "__main__":
    main()
