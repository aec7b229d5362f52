"""Service loop for the shop dunning agent."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Sequence

from backend.core.config import settings

from .config import TenantConfig
from .playbooks import DunningPlaybook

logger = logging.getLogger(__name__)


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Set `stop_event` on SIGINT and SIGTERM.

    The running order is finished; the loop stops at the next check.
    """

    def _handler(signum, frame):  # noqa: ARG001
        logger.info("Shutdown requested", extra={"signal": signal.Signals(signum).name})
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_service(
    playbook: DunningPlaybook,
    tenants: Sequence[TenantConfig],
    stop_event: threading.Event,
    service_mode: bool = True,
    interval: float | None = None,
) -> int:
    """Run dunning cycles until stopped.

    - service_mode=True: one cycle per interval until the stop event is set.
    - service_mode=False (one-shot): exactly one cycle.
    Returns recommended exit code: 0 on normal stop or completed run.
    """
    interval = settings.DUNNING_CYCLE_INTERVAL_SEC if interval is None else interval
    cycles = 0

    while not stop_event.is_set():
        try:
            result = playbook.run_cycle(tenants, stop_event)
            cycles += 1
            if not result.success:
                logger.warning(
                    "Dunning cycle finished with shop errors",
                    extra={"cycle": result.to_dict()},
                )
        except Exception as e:
            logger.error("Dunning cycle failed", extra={"error": str(e)}, exc_info=True)
            if not service_mode:
                raise

        if not service_mode:
            break

        logger.info("Waiting for next cycle", extra={"interval_sec": interval})
        if stop_event.wait(interval):
            break

    logger.info("Dunning service stopped", extra={"cycles": cycles})
    return 0
