"""
FastStream timeout worker – launch with

    $ python -m infrastructure.worker --log-level DEBUG

Consumes the dead-lettered expiration signals so the web processes can run
with ``MATCHING_RUN_CONSUMER_IN_APP=false``. Timeout pushes go out through
the relay exchange and reach whichever web instance holds the socket.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from contextlib import suppress
from typing import TYPE_CHECKING, Final

import structlog

from apps.matching.services.wiring import build_services
from config.log import configure_logging
from config.settings import get_settings
from infrastructure.broker import BrokerRuntime

if TYPE_CHECKING:
    from collections.abc import Sequence

    from apps.matching.services.wiring import MatchingServices
    from config.settings import MatchingSettings

# ───────────────────────── config knobs ─────────────────────────
log: Final = structlog.get_logger(__name__)

HEALTH_CHECK_INTERVAL_S = 30
GRACEFUL_SHUTDOWN_TIMEOUT_S = 30


# ───────────────────────── lifecycle manager ───────────────────
class WorkerManager:
    def __init__(self, settings: MatchingSettings, *, health_interval_s: float = HEALTH_CHECK_INTERVAL_S) -> None:
        self._settings = settings
        self._health_interval_s = health_interval_s
        self._shutdown_evt = asyncio.Event()
        self._health_task: asyncio.Task | None = None
        self.services: MatchingServices | None = None

    async def start(self) -> None:
        log.info("WorkerManager starting")
        self.services = build_services(self._settings, broker=BrokerRuntime(self._settings))
        await self.services.start(consume_timeouts=True, relay_pushes=False)
        self._install_signals()
        self._health_task = asyncio.create_task(self._health_loop())
        await self._shutdown_evt.wait()

    async def stop(self) -> None:
        if self.services is None and self._health_task is None:
            return
        self._shutdown_evt.set()
        log.warning("Stopping workers…")
        if self._health_task:
            self._health_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        if self.services is not None:
            try:
                await asyncio.wait_for(self.services.stop(), timeout=GRACEFUL_SHUTDOWN_TIMEOUT_S)
            except TimeoutError:
                log.warning("services.stop timed out – forcing shutdown")
            self.services = None
        log.info("Workers stopped")

    def _install_signals(self) -> None:
        if sys.platform != "win32":
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        log.warning("OS signal received", sig=sig.name)
        self._shutdown_evt.set()

    async def _health_loop(self) -> None:
        while not self._shutdown_evt.is_set():
            await asyncio.sleep(self._health_interval_s)
            if not self._shutdown_evt.is_set() and self.services is not None:
                log.info("Worker health", **self.services.consumer.metrics.as_dict())


# ───────────────────────── CLI entrypoint ───────────────────────
def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the match timeout consumer.")
    parser.add_argument("--log-level", default=None, help="override MATCHING_LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", default=None, help="emit JSON log lines")
    return parser.parse_args(argv)


async def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point to start the worker manager."""
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, json_logs=args.json_logs or settings.log_json)

    mgr = WorkerManager(settings)
    try:
        await mgr.start()
    except (KeyboardInterrupt, SystemExit):
        log.info("Shutdown initiated by user")
    finally:
        await mgr.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
