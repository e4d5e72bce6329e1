"""
Standalone memory worker process.

    python run_worker.py          # poll until SIGINT/SIGTERM, then drain
    python run_worker.py --once   # process everything runnable and exit
"""

import argparse
import asyncio
import logging
import signal
from typing import List, Optional

from config import FeatureConfig, setup_logging
from db import close_sqlite_client, get_sqlite_client
from runtime_state import RuntimeState

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the memory job worker.")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Drain the queue once and exit instead of polling.",
    )
    return parser.parse_args(argv)


def warn_if_process_local_cache(config: FeatureConfig) -> bool:
    """
    The in-process cache only lives inside this worker, so invalidations sent
    after enrichment never reach a separate API process.
    """
    if config.cache_backend != "memory":
        return False
    logger.warning(
        "CACHE_BACKEND=memory in a standalone worker: context cached by the API process "
        "is not invalidated by enrichment here and may be stale for up to %ss. "
        "Use CACHE_BACKEND=redis when the API and worker run as separate processes.",
        config.cache_ttl_seconds,
    )
    return True


async def _run(once: bool) -> int:
    config = FeatureConfig.from_env()
    setup_logging(config)
    logger.info("Worker configuration: %s", config.as_dict())
    warn_if_process_local_cache(config)

    state = RuntimeState(config)
    client = get_sqlite_client()
    await client.init_db()

    if once:
        await state.ensure_started(get_sqlite_client, start_worker=False)
        executed = await state.worker.run_until_idle()
        logger.info("Processed %d jobs", executed)
        await state.shutdown()
        await close_sqlite_client()
        return 0

    if not config.worker_enabled:
        logger.warning("MEMORY_WORKER_ENABLED is false; nothing to do")
        await close_sqlite_client()
        return 0

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler.
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop.set))

    await state.ensure_started(get_sqlite_client, start_worker=True)
    logger.info("Worker running; waiting for shutdown signal")
    await stop.wait()

    logger.info("Shutdown signal received; draining in-flight jobs")
    result = await state.shutdown()
    await close_sqlite_client()
    return 0 if result.get("drained", True) else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    return asyncio.run(_run(args.once))


if __name__ == "__main__":
    raise SystemExit(main())
