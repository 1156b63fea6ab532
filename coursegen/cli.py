"""Command line entry point for the worker process and operator tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Sequence
from dataclasses import replace

from coursegen.config import Settings, get_settings
from coursegen.core.logging import initialize_logging
from coursegen.core.runtime import PipelineRuntime
from coursegen.utils.clock import to_iso

logger = logging.getLogger("coursegen.cli")


def _build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog="coursegen-worker", description="Course generation worker and queue tooling.")
  commands = parser.add_subparsers(dest="command", required=True)

  run = commands.add_parser("run", help="Run the worker pool until SIGTERM/SIGINT.")
  run.add_argument("--concurrency", type=int, default=None, help="Override COURSEGEN_WORKER_CONCURRENCY.")
  run.add_argument("--grace-seconds", type=float, default=30.0, help="How long in-flight jobs may finish on shutdown.")

  limits = commands.add_parser("rate-limits", help="Inspect or clear provider rate limits.")
  limit_commands = limits.add_subparsers(dest="action", required=True)
  limit_commands.add_parser("list", help="Show active rate limits.")
  history = limit_commands.add_parser("history", help="Show the durable rate-limit audit trail.")
  history.add_argument("--limit", type=int, default=50)
  clear = limit_commands.add_parser("clear", help="Clear one pair, or every pair with --all.")
  clear.add_argument("--provider")
  clear.add_argument("--model")
  clear.add_argument("--all", action="store_true", dest="clear_all")

  jobs = commands.add_parser("jobs", help="Inspect or manage queued jobs.")
  job_commands = jobs.add_subparsers(dest="action", required=True)
  counts = job_commands.add_parser("counts", help="Job counts by state.")
  counts.add_argument("--workflow-id")
  retry = job_commands.add_parser("retry", help="Move a failed job back to waiting.")
  retry.add_argument("job_id")
  job_commands.add_parser("purge", help="Apply retention and requeue stalled jobs.")
  return parser


async def _run_worker(runtime: PipelineRuntime, *, grace_seconds: float) -> int:
  stop = asyncio.Event()
  loop = asyncio.get_running_loop()
  for signum in (signal.SIGTERM, signal.SIGINT):
    loop.add_signal_handler(signum, stop.set)

  await runtime.open()
  try:
    runtime.workers.start()
    await stop.wait()
    logger.info("Shutdown signal received; draining in-flight jobs.")
    await runtime.workers.stop(grace_seconds=grace_seconds)
  finally:
    await runtime.close()
  return 0


async def _rate_limits(runtime: PipelineRuntime, args: argparse.Namespace) -> int:
  store = runtime.rate_limits
  await runtime.open()
  try:
    if args.action == "list":
      for info in await store.list_active():
        print(f"{info.provider}:{info.model_id}\tuntil={to_iso(info.timeout_until) if info.timeout_until else '-'}\tremaining={info.seconds_remaining}s")
      return 0
    if args.action == "history":
      for record in await store.history(args.limit):
        state = "active" if record.is_active else "inactive"
        print(f"{record.provider}:{record.model_id}\t{state}\thits={record.hit_count}\tlast={to_iso(record.last_hit_at)}")
      return 0
    if args.clear_all:
      removed = await store.clear_all()
      print(f"Cleared {removed} rate limit(s).")
      return 0
    if not args.provider or not args.model:
      print("Pass --provider and --model, or --all.", file=sys.stderr)
      return 2
    await store.clear(args.provider, args.model)
    print(f"Cleared {args.provider}:{args.model}.")
    return 0
  finally:
    await store.wait_for_reconciliation()
    await runtime.close()


async def _jobs(runtime: PipelineRuntime, args: argparse.Namespace) -> int:
  await runtime.open()
  try:
    queue = runtime.queue
    if args.action == "counts":
      print(json.dumps(await queue.counts(args.workflow_id), indent=2, sort_keys=True))
      return 0
    if args.action == "retry":
      try:
        job = await runtime.workflows.retry_job(args.job_id)
      except (LookupError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
      print(f"Requeued {job.job_type} job {job.job_id}.")
      return 0
    stalled = await runtime.workers.release_stalled()
    requeued = sum(1 for job in stalled if job.state == "waiting")
    purged = await queue.purge_expired()
    print(f"Requeued {requeued} stalled job(s); purged {purged} expired job(s).")
    return 0
  finally:
    await runtime.close()


def main(argv: Sequence[str] | None = None) -> int:
  args = _build_parser().parse_args(argv)
  settings: Settings = get_settings()
  if args.command == "run" and args.concurrency is not None:
    settings = replace(settings, worker_concurrency=args.concurrency)

  process_name = "worker" if args.command == "run" else "cli"
  initialize_logging(settings, process_name=process_name)
  runtime = PipelineRuntime.from_settings(settings)

  if args.command == "run":
    return asyncio.run(_run_worker(runtime, grace_seconds=args.grace_seconds))
  if args.command == "rate-limits":
    return asyncio.run(_rate_limits(runtime, args))
  return asyncio.run(_jobs(runtime, args))


if __name__ == "__main__":
  raise SystemExit(main())
