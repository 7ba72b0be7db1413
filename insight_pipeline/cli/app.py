from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from insight_pipeline.cli import output as out
from insight_pipeline.cli.config import (
    Config,
    config_exists,
    config_path_display,
    load_config,
    save_config,
)
from insight_pipeline.errors import BatchNotFoundError, InvalidBatchStateError
from insight_pipeline.pipeline.jobs import TriggerOutcome

DESCRIPTION = """\
insight-pipeline: batch AI analysis of user events

Groups incoming user events into batches, seals them by size or age,
and retries the LLM analysis of each sealed batch until it succeeds or
is dead-lettered. Survives crashes, API outages and concurrent workers.

Quick start: insight-pipeline init-db && insight-pipeline run"""


# ── Infrastructure helpers ──────────────────────────────────────────


def _build_pipeline(cfg: Config, *, workers: int = 1):
    from insight_pipeline.config import parse_config
    from insight_pipeline.facade import InsightPipeline

    store, analyzer, pipeline_config = parse_config(cfg.to_dict())
    return InsightPipeline(store, analyzer, pipeline_config, workers=workers)


@asynccontextmanager
async def _open_pipeline(cfg: Config, *, workers: int = 1) -> AsyncIterator[Any]:
    """Build a pipeline with its tables in place, closing it on exit."""
    pipeline = _build_pipeline(cfg, workers=workers)
    try:
        await pipeline.init()
        yield pipeline
    finally:
        await pipeline.close()


def _require_api_key(cfg: Config) -> None:
    """Exit with guidance if no analyzer API key is configured."""
    if cfg.api_key:
        return
    out.error(
        "Analyzer API key not configured. "
        "Run 'insight-pipeline config set-key' or set INSIGHT_PIPELINE_API_KEY."
    )
    sys.exit(1)


def _warn_if_ephemeral(cfg: Config, command: str) -> None:
    if cfg.is_persistent:
        return
    out.warn(
        f"The in-memory store does not persist between commands; "
        f"'{command}' only sees data created in this process."
    )


def _fmt_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S")


def _short(identifier: str) -> str:
    return identifier[:8]


# ── config ──────────────────────────────────────────────────────────


async def cmd_config_show(args: argparse.Namespace) -> None:
    """Display current configuration."""
    cfg = load_config()
    out.header("Configuration")
    out.kv("Config file", config_path_display())
    out.kv("Exists", "yes" if config_exists() else "no (using defaults)")
    out.kv("Model", cfg.model)
    out.kv("API key", "set" if cfg.api_key else out.yellow("not set"))
    out.kv("Store", cfg.store_provider)
    if cfg.store_provider == "sqlite":
        out.kv("SQLite file", cfg.sqlite_path)
    if cfg.uses_postgres:
        out.kv("Database", f"{cfg.db_user}@{cfg.db_host}:{cfg.db_port}/{cfg.db_name}")
    if cfg.pipeline:
        out.header("Pipeline overrides")
        for key, value in sorted(cfg.pipeline.items()):
            out.kv(key, value)


async def cmd_config_set_key(args: argparse.Namespace) -> None:
    cfg = load_config()
    key = args.key
    if not key:
        if not sys.stdin.isatty():
            out.error("Pass the key as an argument when not running interactively.")
            sys.exit(1)
        key = input("  Analyzer API key: ").strip()
    if not key:
        out.error("No key given, nothing changed.")
        sys.exit(1)
    cfg.api_key = key
    if args.model:
        cfg.model = args.model
    path = save_config(cfg)
    out.success(f"API key saved to {path}")


async def cmd_config_set_store(args: argparse.Namespace) -> None:
    cfg = load_config()
    cfg.store_provider = args.provider
    if args.provider == "sqlite" and args.path:
        cfg.sqlite_path = args.path
    if args.provider == "postgres":
        cfg.db_host = args.host or cfg.db_host
        cfg.db_port = args.port or cfg.db_port
        cfg.db_name = args.database or cfg.db_name
        cfg.db_user = args.user or cfg.db_user
        cfg.db_password = args.password or cfg.db_password
    path = save_config(cfg)
    out.success(f"Store set to {args.provider} ({path})")
    out.next_step("insight-pipeline init-db", "Create the tables")


async def cmd_config_path(args: argparse.Namespace) -> None:
    print(config_path_display())


# ── setup & ingestion ───────────────────────────────────────────────


async def cmd_init_db(args: argparse.Namespace) -> None:
    cfg = load_config()
    pipeline = _build_pipeline(cfg)
    try:
        if args.reset:
            await pipeline.reset()
            out.success("Dropped and recreated all tables")
        else:
            await pipeline.init()
            out.success("Tables ready")
    finally:
        await pipeline.close()


def _read_events(args: argparse.Namespace) -> list[dict[str, Any]]:
    if args.file:
        lines = Path(args.file).read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines if line.strip()]
    if not args.event_type or not args.user_id:
        out.error("Give EVENT_TYPE and USER_ID, or --file with JSON lines.")
        sys.exit(1)
    metadata = json.loads(args.metadata) if args.metadata else {}
    return [{"event_type": args.event_type, "user_id": args.user_id, "metadata": metadata}]


async def cmd_ingest(args: argparse.Namespace) -> None:
    cfg = load_config()
    _warn_if_ephemeral(cfg, "ingest")
    records = _read_events(args)
    async with _open_pipeline(cfg) as pipeline:
        batch = None
        for record in records:
            timestamp = record.get("timestamp")
            _, batch = await pipeline.record_event(
                record["event_type"],
                record["user_id"],
                timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
                metadata=record.get("metadata") or {},
            )
    if batch is not None:
        out.success(
            f"Recorded {len(records)} event(s) in batch {batch.batch_id} "
            f"({batch.event_count} total)"
        )


# ── one-shot passes ─────────────────────────────────────────────────


async def cmd_seal(args: argparse.Namespace) -> None:
    cfg = load_config()
    async with _open_pipeline(cfg) as pipeline:
        sealed = await pipeline.seal_batches()
        archived = await pipeline.archive_batches()
    out.success(f"Sealed {len(sealed)} batch(es), archived {archived}")
    for batch_id in sealed:
        out.info(batch_id)


async def cmd_create_jobs(args: argparse.Namespace) -> None:
    cfg = load_config()
    async with _open_pipeline(cfg) as pipeline:
        jobs = await pipeline.create_jobs()
    out.success(f"Created {len(jobs)} job(s)")
    for job in jobs:
        out.info(f"{job.job_id}  batch {job.batch_id}")


async def cmd_work(args: argparse.Namespace) -> None:
    cfg = load_config()
    _require_api_key(cfg)
    async with _open_pipeline(cfg) as pipeline:
        processed = 0
        for _ in range(args.max_jobs):
            job = await pipeline.process_next_job()
            if job is None:
                break
            processed += 1
            stored = await pipeline.store.get_job(job.job_id)
            status = stored.status if stored else "?"
            out.info(f"{job.job_id}  {out.status_color(status)}")
    if processed == 0:
        out.info("No claimable jobs")
    else:
        out.success(f"Processed {processed} job(s)")


async def cmd_recover(args: argparse.Namespace) -> None:
    cfg = load_config()
    async with _open_pipeline(cfg) as pipeline:
        result = await pipeline.recover()
    out.success(
        f"Requeued {len(result.requeued)}, dead-lettered "
        f"{len(result.dead_lettered)}, released {len(result.released)}"
    )


async def cmd_run(args: argparse.Namespace) -> None:
    cfg = load_config()
    _require_api_key(cfg)
    _warn_if_ephemeral(cfg, "run")
    async with _open_pipeline(cfg, workers=args.workers) as pipeline:
        out.banner()
        out.info(f"Store: {cfg.store_provider}, workers: {args.workers}")
        out.info(out.dim("Press Ctrl+C to stop"))
        await pipeline.run()


# ── admin ───────────────────────────────────────────────────────────


async def cmd_trigger(args: argparse.Namespace) -> None:
    cfg = load_config()
    async with _open_pipeline(cfg) as pipeline:
        try:
            result = await pipeline.trigger_analysis(args.batch_id)
        except (BatchNotFoundError, InvalidBatchStateError) as exc:
            out.error(exc.message)
            sys.exit(1)

    job_id = result.job.job_id if result.job else "-"
    match result.outcome:
        case TriggerOutcome.CREATED:
            out.success(f"{result.message}: {job_id}")
        case TriggerOutcome.CONFLICT:
            out.warn(f"{result.message} (job {job_id})")
            sys.exit(2)
        case TriggerOutcome.ALREADY_ANALYZED:
            out.info(f"{result.message} (job {job_id})")


async def cmd_metrics(args: argparse.Namespace) -> None:
    cfg = load_config()
    async with _open_pipeline(cfg) as pipeline:
        metrics = await pipeline.metrics()

    if args.json:
        print(metrics.model_dump_json(indent=2))
        return

    out.header("Jobs")
    for status, count in sorted(metrics.jobs.by_status.items()):
        out.kv(out.status_color(status), count)
    out.kv("Success (1h)", metrics.jobs.success_last_hour)
    out.kv("Failed (1h)", metrics.jobs.failed_last_hour)
    out.kv("Oldest pending", f"{metrics.jobs.oldest_pending_age_seconds}s")

    out.header("Batches")
    for status, count in sorted(metrics.batches.by_status.items()):
        out.kv(out.status_color(status), count)
    out.kv("Total events", metrics.batches.total_events)
    out.kv("Oldest open", f"{metrics.batches.oldest_open_age_seconds}s")

    perf = metrics.performance
    out.header(f"Analysis latency (last {perf.completed_jobs_count} jobs)")
    out.kv("avg", f"{perf.avg_analysis_time_ms}ms")
    out.kv("p95", f"{perf.p95_analysis_time_ms}ms")
    out.kv("p99", f"{perf.p99_analysis_time_ms}ms")
    out.kv("max", f"{perf.max_analysis_time_ms}ms")

    out.header("Dead-letter queue")
    out.kv("Total", metrics.dead_letter_queue.total)
    out.kv("Last 24h", metrics.dead_letter_queue.last_24_hours)

    breaker = metrics.circuit_breaker
    if breaker is not None:
        out.header("Circuit breaker (this process)")
        out.kv("State", out.breaker_color(breaker.state))
        out.kv("Failures", breaker.failure_count)


async def cmd_dlq(args: argparse.Namespace) -> None:
    cfg = load_config()
    since = None
    if args.since_hours:
        since = datetime.now(UTC) - timedelta(hours=args.since_hours)
    async with _open_pipeline(cfg) as pipeline:
        entries = await pipeline.list_dead_letters(since=since, limit=args.limit)

    if not entries:
        out.info("Dead-letter queue is empty")
        return
    out.header(f"Dead-lettered jobs ({len(entries)})")
    out.table(
        ["failed at", "job", "batch", "attempts", "reason", "error"],
        [
            [
                _fmt_time(e.failed_at),
                _short(e.job_id),
                _short(e.batch_id),
                str(e.attempt_count),
                str(e.error_context.get("reason", "-")),
                e.last_error[:60],
            ]
            for e in entries
        ],
    )


async def cmd_jobs(args: argparse.Namespace) -> None:
    cfg = load_config()
    async with _open_pipeline(cfg) as pipeline:
        jobs = await pipeline.list_jobs(status=args.status, limit=args.limit)

    if not jobs:
        out.info("No jobs")
        return
    out.table(
        ["created", "job", "batch", "status", "attempts", "trigger", "time"],
        [
            [
                _fmt_time(j.created_at),
                _short(j.job_id),
                _short(j.batch_id),
                out.status_color(j.status),
                f"{j.attempt_count}/{j.max_attempts}",
                j.trigger_type,
                f"{j.analysis_time_ms}ms" if j.analysis_time_ms is not None else "-",
            ]
            for j in jobs
        ],
    )


async def cmd_batches(args: argparse.Namespace) -> None:
    cfg = load_config()
    async with _open_pipeline(cfg) as pipeline:
        batches = await pipeline.list_batches(status=args.status, limit=args.limit)

    if not batches:
        out.info("No batches")
        return
    out.table(
        ["created", "batch", "status", "events", "sealed"],
        [
            [
                _fmt_time(b.created_at),
                b.batch_id,
                out.status_color(b.status),
                str(b.event_count),
                _fmt_time(b.sealed_at),
            ]
            for b in batches
        ],
    )


async def cmd_insights(args: argparse.Namespace) -> None:
    cfg = load_config()
    async with _open_pipeline(cfg) as pipeline:
        insights = await pipeline.list_insights(limit=args.limit)

    if not insights:
        out.info("No insights yet")
        return

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "batch_id": i.batch_id,
                        "summary": i.summary,
                        "confidence": i.confidence,
                        "patterns": i.patterns,
                        "event_count": i.event_count,
                        "time_window": i.time_window,
                        "created_at": i.created_at.isoformat(),
                    }
                    for i in insights
                ],
                indent=2,
            )
        )
        return

    for insight in insights:
        out.header(f"Batch {insight.batch_id}")
        out.kv("Created", _fmt_time(insight.created_at))
        out.kv("Events", insight.event_count)
        out.kv("Confidence", f"{insight.confidence:.2f}")
        out.kv("Summary", insight.summary)
        if insight.patterns:
            out.kv("Patterns", ", ".join(insight.patterns))


# ── Parser ──────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="insight-pipeline",
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Run everything:\n"
            "  insight-pipeline run                     "
            "Sealer, job creator, worker and recovery loops\n"
            "\n"
            "One pass at a time:\n"
            "  insight-pipeline seal                    "
            "Seal full or old batches\n"
            "  insight-pipeline create-jobs             "
            "Queue analysis for sealed batches\n"
            "  insight-pipeline work                    "
            "Process queued jobs\n"
            "  insight-pipeline recover                 "
            "Requeue stuck jobs, release expired locks\n"
            "\n"
            "Inspect:\n"
            "  insight-pipeline metrics                 "
            "Queue depth, latency, DLQ\n"
            "  insight-pipeline batches | jobs | dlq    "
            "List records\n"
            "  insight-pipeline insights                "
            "Analysis results, newest first\n"
        ),
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed logs (claims, retries, state transitions)",
    )
    sub = parser.add_subparsers(dest="command", title="commands")

    p_run = sub.add_parser("run", help="Run every pipeline loop until interrupted")
    p_run.add_argument("--workers", type=int, default=1, help="Worker loops (default 1)")

    p_init = sub.add_parser("init-db", help="Create tables (idempotent)")
    p_init.add_argument(
        "--reset", action="store_true", help="Drop all data and recreate tables"
    )

    p_ingest = sub.add_parser("ingest", help="Record events into the open batch")
    p_ingest.add_argument("event_type", nargs="?", help="Event type, e.g. page_view")
    p_ingest.add_argument("user_id", nargs="?", help="User the event belongs to")
    p_ingest.add_argument("--metadata", help="JSON object with event details")
    p_ingest.add_argument(
        "--file",
        help="JSON-lines file of {event_type, user_id, timestamp?, metadata?}",
    )

    sub.add_parser("seal", help="Seal eligible batches and archive old ones")
    sub.add_parser("create-jobs", help="Create jobs for sealed batches")
    p_work = sub.add_parser("work", help="Process pending jobs")
    p_work.add_argument(
        "--max-jobs", type=int, default=10, help="Stop after N jobs (default 10)"
    )
    sub.add_parser("recover", help="Run one recovery pass")

    p_trigger = sub.add_parser("trigger", help="Manually trigger analysis of a batch")
    p_trigger.add_argument("batch_id")

    p_metrics = sub.add_parser("metrics", help="Show pipeline metrics")
    p_metrics.add_argument("--json", action="store_true", help="Print raw JSON")

    p_dlq = sub.add_parser("dlq", help="List dead-lettered jobs")
    p_dlq.add_argument("--since-hours", type=float, help="Only entries this recent")
    p_dlq.add_argument("--limit", type=int, default=20)

    p_jobs = sub.add_parser("jobs", help="List analysis jobs")
    p_jobs.add_argument(
        "--status", choices=["PENDING", "RUNNING", "SUCCESS", "FAILED"]
    )
    p_jobs.add_argument("--limit", type=int, default=20)

    p_batches = sub.add_parser("batches", help="List batches")
    p_batches.add_argument(
        "--status", choices=["OPEN", "SEALED", "ANALYZED", "ARCHIVED"]
    )
    p_batches.add_argument("--limit", type=int, default=20)

    p_insights = sub.add_parser("insights", help="Show stored analysis results")
    p_insights.add_argument("--limit", type=int, default=10)
    p_insights.add_argument("--json", action="store_true", help="Print raw JSON")

    p_cfg = sub.add_parser("config", help="View and change settings")
    cfg_sub = p_cfg.add_subparsers(dest="config_command")
    cfg_sub.add_parser("show", help="Show current settings")
    p_cfg_key = cfg_sub.add_parser("set-key", help="Set the analyzer API key")
    p_cfg_key.add_argument("key", nargs="?")
    p_cfg_key.add_argument("--model", help="Also change the litellm model name")
    p_cfg_store = cfg_sub.add_parser("set-store", help="Configure the store backend")
    p_cfg_store.add_argument("provider", choices=["sqlite", "postgres", "memory"])
    p_cfg_store.add_argument("--path", help="SQLite file path")
    p_cfg_store.add_argument("--host")
    p_cfg_store.add_argument("--port", type=int)
    p_cfg_store.add_argument("--database")
    p_cfg_store.add_argument("--user")
    p_cfg_store.add_argument("--password")
    cfg_sub.add_parser("path", help="Print config file location")

    return parser


# ── Dispatch ────────────────────────────────────────────────────────

_CommandHandler = Callable[[argparse.Namespace], Coroutine[Any, Any, None]]

_COMMAND_MAP: dict[str, _CommandHandler] = {
    "run": cmd_run,
    "init-db": cmd_init_db,
    "ingest": cmd_ingest,
    "seal": cmd_seal,
    "create-jobs": cmd_create_jobs,
    "work": cmd_work,
    "recover": cmd_recover,
    "trigger": cmd_trigger,
    "metrics": cmd_metrics,
    "dlq": cmd_dlq,
    "jobs": cmd_jobs,
    "batches": cmd_batches,
    "insights": cmd_insights,
}

_CONFIG_MAP: dict[str, _CommandHandler] = {
    "show": cmd_config_show,
    "set-key": cmd_config_set_key,
    "set-store": cmd_config_set_store,
    "path": cmd_config_path,
}


def main() -> None:
    import logging

    parser = _build_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="  %(asctime)s %(name)s: %(message)s",
        )
    logging.getLogger("LiteLLM").setLevel(logging.CRITICAL)
    logging.getLogger("litellm").setLevel(logging.CRITICAL)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if not args.command:
        parser.print_help()
        return

    if args.command == "config":
        if not args.config_command:
            parser.parse_args(["config", "--help"])
            return
        handler = _CONFIG_MAP.get(args.config_command)
    else:
        handler = _COMMAND_MAP.get(args.command)

    if handler is None:
        parser.print_help()
        return

    try:
        asyncio.run(handler(args))
    except KeyboardInterrupt:
        print()
