from __future__ import annotations

import argparse
import asyncio
import json

from app.core.logging import configure_logging
from app.database import AsyncSessionLocal, engine
from app.jobs.worker import default_job_context, drain, worker_loop


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run background jobs.")
    parser.add_argument("--once", action="store_true", help="Run due jobs and exit instead of polling.")
    parser.add_argument("--max-jobs", type=int, default=None, help="Stop after this many jobs (with --once).")
    parser.add_argument("--poll-interval", type=float, default=None, help="Idle poll delay in seconds.")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    context = default_job_context()
    try:
        if args.once:
            processed = await drain(AsyncSessionLocal, context, max_jobs=args.max_jobs)
            print(json.dumps({"processed": processed}))
            return 0
        await worker_loop(AsyncSessionLocal, context, poll_interval=args.poll_interval)
        return 0
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
