"""Fan out pollers against one queue and gather what they drained."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from botocore.client import BaseClient

from queueops.aws import DeleteFailure
from queueops.config import DrainConfig
from queueops.poller import Forwarder, Message, Poller, PollerReport

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    """Aggregate of every poller report; built after all pollers finish."""

    reports: List[PollerReport] = field(default_factory=list)

    @property
    def messages(self) -> List[Message]:
        return [msg for report in self.reports for msg in report.messages]

    @property
    def failed_deletes(self) -> List[DeleteFailure]:
        return [failure for report in self.reports for failure in report.failed_deletes]

    @property
    def errors(self) -> List[Tuple[int, BaseException]]:
        return [(r.poller_id, r.error) for r in self.reports if r.error is not None]

    @property
    def receive_calls(self) -> int:
        return sum(report.receive_calls for report in self.reports)

    @property
    def cancelled(self) -> bool:
        return any(report.cancelled for report in self.reports)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.failed_deletes


class DrainCoordinator:
    """Run `config.concurrency` independent pollers and wait for all of them.

    A failing poller does not cancel the others: each runs to its own
    termination and the failure is carried in the result.
    """

    def __init__(
        self,
        sqs: BaseClient,
        queue_url: str,
        config: DrainConfig,
        forward: Optional[Forwarder] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.sqs = sqs
        self.queue_url = queue_url
        self.config = config
        self.forward = forward
        self.stop_event = stop_event or threading.Event()
        self.sleep = sleep

    def make_poller(self, poller_id: int) -> Poller:
        return Poller(
            poller_id,
            self.sqs,
            self.queue_url,
            self.config,
            forward=self.forward,
            stop_event=self.stop_event,
            sleep=self.sleep,
        )

    def _run_poller(self, poller: Poller) -> PollerReport:
        try:
            return poller.run()
        except Exception as exc:
            logger.error(
                "poller %s failed after %s messages: %s",
                poller.poller_id,
                len(poller.report.messages),
                exc,
            )
            poller.report.error = exc
            poller.report.final_phase = poller.state.phase
            return poller.report

    def stop(self) -> None:
        """Ask pollers to stop issuing receives; in-flight calls complete."""
        self.stop_event.set()

    def run(self) -> DrainResult:
        pollers = [self.make_poller(i) for i in range(self.config.concurrency)]
        logger.info(
            "starting %s pollers against %s (keep=%s, stop_after_batch=%s)",
            len(pollers),
            self.queue_url,
            self.config.keep_messages,
            self.config.stop_after_batch,
        )
        with ThreadPoolExecutor(
            max_workers=self.config.concurrency, thread_name_prefix="poller"
        ) as executor:
            futures = [executor.submit(self._run_poller, poller) for poller in pollers]
            reports = [future.result() for future in futures]

        result = DrainResult(reports=reports)
        logger.info(
            "drain finished: %s messages, %s receive calls, %s delete failures, %s poller errors",
            len(result.messages),
            result.receive_calls,
            len(result.failed_deletes),
            len(result.errors),
        )
        return result
