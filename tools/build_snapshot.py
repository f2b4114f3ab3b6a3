from __future__ import annotations

"""CLI utility to build an index snapshot from the configured question source."""

import argparse
import asyncio

from src.app.settings import settings


async def _build(output: str) -> None:
    from src.app.dependencies import get_engine, reset_engine_cache

    reset_engine_cache()
    engine = get_engine()
    if engine.source is None:
        raise SystemExit("RAG_QUESTIONS_DB_URI is required to build a snapshot")
    summary = await engine.refresh(trigger="cli")
    path = await engine.save_snapshot(output)
    print(
        f"Wrote {path} (corpus_version={summary.corpus_version}, "
        f"documents={summary.document_count}, skipped={summary.skipped})"
    )


def main() -> None:
    """Index the question source and write the snapshot file."""
    parser = argparse.ArgumentParser(description="Build a retrieval index snapshot.")
    parser.add_argument(
        "--output",
        default=settings.snapshot_path,
        help="Snapshot file to write.",
    )
    args = parser.parse_args()
    if not args.output:
        raise SystemExit("--output or RAG_SNAPSHOT_PATH is required")
    asyncio.run(_build(args.output))


if __name__ == "__main__":
    main()
