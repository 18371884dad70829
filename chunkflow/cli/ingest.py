# =============================================================================
# chunkflow/cli/ingest.py: Pipeline CLI
# =============================================================================
#
# Subcommands:
#
#   ingest  : chunk a text file and queue its chunks as one job
#   work    : run the vectorization worker pool (forever, or --drain)
#   status  : show a job's derived status and per-status chunk counts
#   abandon : stop further claims for a job's chunks
#
# Ingest and status only touch the chunk store; work also needs an
# embedding provider (OPENAI_API_KEY).
#
# Usage examples:
#   python -m chunkflow.cli ingest --file notes.txt --source-type upload
#   python -m chunkflow.cli work --drain
#   python -m chunkflow.cli status 6f1c... --wait --timeout 300
#   python -m chunkflow.cli abandon 6f1c...
# =============================================================================

"""Command-line interface for the chunkflow ingestion pipeline."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from chunkflow.config.settings import Settings
from chunkflow.main import Pipeline, build_pipeline
from chunkflow.models.chunk import SourceMetadata
from chunkflow.models.job import JobProgress
from chunkflow.utils.errors import ChunkflowError, ChunkPersistenceError
from chunkflow.utils.logging import configure_logging


def _print_progress(progress: JobProgress) -> None:
    print(f"Job {progress.job_id}: {progress.status.value}")
    print(f"  Chunks:    {progress.total}")
    for status, count in sorted(progress.counts.items(), key=lambda kv: kv[0].value):
        print(f"  {status.value + ':':<11}{count}")
    print(f"  Done:      {progress.percent_complete:.1f}%")
    if progress.abandoned:
        print("  (abandoned)")


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def _handle_ingest(args: argparse.Namespace, pipeline: Pipeline) -> int:
    """Chunk a text file and queue it for vectorization."""
    path = Path(args.file)
    if not path.is_file():
        print(f"Error: file not found: {path}", file=sys.stderr)
        return 1

    text = path.read_text(encoding="utf-8")
    document_id = args.document_id or path.stem
    source = SourceMetadata(
        source_type=args.source_type,
        url=args.url,
        filename=path.name,
        title=args.title,
    )

    print(f"Ingesting {path} as document '{document_id}'")
    try:
        result = await pipeline.ingestion.ingest_document(
            text, document_id, source, job_id=args.job_id
        )
    except ChunkPersistenceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        for chunk_id, reason in exc.failures.items():
            print(f"  {chunk_id}: {reason}", file=sys.stderr)
        return 1

    if result.duplicate:
        print("\nUnchanged content; nothing queued.")
        return 0

    print("\nIngestion complete:")
    print(f"  Job ID:         {result.job_id}")
    print(f"  Chunks created: {result.chunks_created}")
    print(f"  Total tokens:   {result.total_tokens}")
    print(f"  Replaced:       {'yes' if result.replaced else 'no'}")
    print(f"  Time:           {result.ingestion_time:.2f}s")
    return 0


async def _handle_work(args: argparse.Namespace, pipeline: Pipeline) -> int:
    """Run the worker pool until drained (``--drain``) or interrupted."""
    pool = pipeline.pool
    if pool is None:
        print("Error: worker pool is not configured", file=sys.stderr)
        return 1

    if args.drain:
        stats = await pool.run_until_idle()
    else:
        print("Workers running; press Ctrl+C to stop.")
        try:
            async with pool:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
        stats = pool.stats

    print("\nWorker pool stats:")
    for key, value in stats.as_dict().items():
        print(f"  {key + ':':<12}{value}")
    return 0


async def _handle_status(args: argparse.Namespace, pipeline: Pipeline) -> int:
    """Print a job's derived status, optionally waiting for completion."""
    if args.wait:
        try:
            progress = await pipeline.tracker.wait_for_completion(
                args.job_id, timeout=args.timeout, poll_interval=args.interval
            )
        except TimeoutError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            _print_progress(await pipeline.tracker.progress(args.job_id))
            return 2
    else:
        progress = await pipeline.tracker.progress(args.job_id)
    _print_progress(progress)
    return 0


async def _handle_abandon(args: argparse.Namespace, pipeline: Pipeline) -> int:
    """Stop further claims for a job's chunks."""
    if not await pipeline.store.abandon_job(args.job_id):
        print(f"Error: job {args.job_id} not found", file=sys.stderr)
        return 1
    print(f"Job {args.job_id} abandoned; in-flight chunks will still finish.")
    return 0


_HANDLERS = {
    "ingest": _handle_ingest,
    "work": _handle_work,
    "status": _handle_status,
    "abandon": _handle_abandon,
}


async def _run(args: argparse.Namespace, app_settings: Settings) -> int:
    try:
        pipeline = build_pipeline(app_settings, with_workers=args.command == "work")
        await pipeline.store.initialize()
    except ChunkflowError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        return await _HANDLERS[args.command](args, pipeline)
    except ChunkflowError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await pipeline.store.close()


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m chunkflow.cli",
        description="Chunk documents, vectorize them, and track ingestion jobs.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ingest_parser = subparsers.add_parser("ingest", help="Chunk a text file and queue it")
    ingest_parser.add_argument("--file", required=True, help="Path to a UTF-8 text file")
    ingest_parser.add_argument(
        "--document-id",
        dest="document_id",
        help="Document id (default: file name without extension)",
    )
    ingest_parser.add_argument(
        "--source-type",
        dest="source_type",
        default="upload",
        help="Source type label (default: upload)",
    )
    ingest_parser.add_argument("--url", help="Source URL")
    ingest_parser.add_argument("--title", help="Document title")
    ingest_parser.add_argument("--job-id", dest="job_id", help="Explicit job id")

    work_parser = subparsers.add_parser("work", help="Run the vectorization worker pool")
    work_parser.add_argument(
        "--drain",
        action="store_true",
        help="Process claimable chunks until none are left, then exit",
    )

    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", help="Job id returned by 'ingest'")
    status_parser.add_argument("--wait", action="store_true", help="Poll until finished")
    status_parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait")
    status_parser.add_argument(
        "--interval", type=float, default=2.0, help="Poll interval in seconds (default: 2)"
    )

    abandon_parser = subparsers.add_parser("abandon", help="Stop claims for a job")
    abandon_parser.add_argument("job_id", help="Job id to abandon")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    app_settings = Settings()
    configure_logging(
        log_level=app_settings.log_level,
        json_output=app_settings.app_env == "production",
    )

    try:
        exit_code = asyncio.run(_run(args, app_settings))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
