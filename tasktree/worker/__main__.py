"""
Worker entry point.

Usage:
    python -m tasktree.worker
    python -m tasktree.worker --workflow brand_wizard --concurrency 4
    python -m tasktree.worker --purge
"""

import argparse
import asyncio

from tasktree.config.settings import Settings, get_settings
from tasktree.observability.logging import configure_logging, get_logger
from tasktree.runtime.factory import build_context

logger = get_logger("tasktree.worker.main")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="tasktree.worker", description="Run the tasktree worker pool")
    parser.add_argument("--workflow", help="Workflow profile to run (default from settings)")
    parser.add_argument("--concurrency", type=int, help="Override WORKER_CONCURRENCY")
    parser.add_argument(
        "--purge",
        action="store_true",
        help="Delete jobs past their retention window and exit",
    )
    return parser.parse_args(argv)


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if args.concurrency is None:
        return settings
    worker = settings.worker.model_copy(update={"concurrency": args.concurrency})
    return settings.model_copy(update={"worker": worker})


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = _apply_overrides(get_settings(), args)
    obs = settings.observability
    configure_logging(obs.log_level, json_output=obs.log_format == "json", log_file=obs.log_file)

    async with build_context(settings) as ctx:
        if args.purge:
            counts = await ctx.dispatcher.purge_expired()
            logger.info("Purge finished", **counts)
            return

        pool = ctx.create_worker_pool(args.workflow)
        await pool.run()


if __name__ == "__main__":
    asyncio.run(main())
