"""Graceful shutdown of the poller via SIGTERM / SIGINT."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable, Iterable

import structlog

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(
    shutdown_event: asyncio.Event,
    signals: Iterable[signal.Signals] = SHUTDOWN_SIGNALS,
) -> Callable[[], None]:
    """Register handlers that set *shutdown_event* and return their remover.

    The poll loop waits on the event between ingestion passes, so the first
    signal ends the wait at once; a pass already in flight finishes before
    the poller stops.  Repeated signals are only logged.
    """
    loop = asyncio.get_running_loop()
    installed = list(signals)

    def _handle(sig: signal.Signals) -> None:
        if shutdown_event.is_set():
            logger.warning("shutdown_signal_repeated", signal=sig.name)
            return
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in installed:
        loop.add_signal_handler(sig, _handle, sig)

    def remove() -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return remove
