"""One long-poll loop against a queue, driven by an explicit state machine.

A poller receives batches, keeps or deletes them, and terminates once it
has seen `empty_streak_threshold` empty receives in a row. By default it
also terminates after its first non-empty batch; `stop_after_batch=False`
keeps it draining until the empty streak is reached.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from botocore.client import BaseClient

from queueops.aws import DeleteFailure, call_with_retry, delete_batch
from queueops.config import DrainConfig

logger = logging.getLogger(__name__)

Message = Dict[str, Any]
# Returns the ids of messages that could NOT be forwarded.
Forwarder = Callable[[Sequence[Message]], Set[str]]


class Phase(Enum):
    POLLING = "polling"
    DRAINING = "draining"
    EMPTY_STREAK = "empty_streak"
    TERMINATED = "terminated"


class Action(Enum):
    RECEIVE = "receive"
    KEEP = "keep"
    DELETE = "delete"
    STOP = "stop"


@dataclass(frozen=True)
class PollerState:
    phase: Phase = Phase.POLLING
    empty_receives: int = 0
    batches: int = 0


def transition(
    state: PollerState, received: int, config: DrainConfig
) -> Tuple[PollerState, Action]:
    """Advance the poller after a receive that returned `received` messages.

    Pure: no I/O, so the termination rules can be checked without a queue.
    The returned action is what the poller must do with the batch; the
    returned phase is TERMINATED when no further receive should happen.
    """
    if state.phase is Phase.TERMINATED:
        return state, Action.STOP

    if received == 0:
        empty = state.empty_receives + 1
        if empty >= config.empty_streak_threshold:
            return replace(state, phase=Phase.TERMINATED, empty_receives=empty), Action.STOP
        return replace(state, phase=Phase.EMPTY_STREAK, empty_receives=empty), Action.RECEIVE

    phase = Phase.TERMINATED if config.stop_after_batch else Phase.DRAINING
    action = Action.KEEP if config.keep_messages else Action.DELETE
    return PollerState(phase=phase, empty_receives=0, batches=state.batches + 1), action


@dataclass
class PollerReport:
    """What one poller did before terminating."""

    poller_id: int
    messages: List[Message] = field(default_factory=list)
    failed_deletes: List[DeleteFailure] = field(default_factory=list)
    receive_calls: int = 0
    final_phase: Phase = Phase.POLLING
    cancelled: bool = False
    error: Optional[BaseException] = None


class Poller:
    """Sequential receive loop owned by a single worker thread.

    The report is filled in as the loop runs, so a caller that catches an
    exception from `run` still has the messages processed before it.
    """

    def __init__(
        self,
        poller_id: int,
        sqs: BaseClient,
        queue_url: str,
        config: DrainConfig,
        forward: Optional[Forwarder] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.poller_id = poller_id
        self.sqs = sqs
        self.queue_url = queue_url
        self.config = config
        self.forward = forward
        self.stop_event = stop_event or threading.Event()
        self.sleep = sleep
        self.state = PollerState()
        self.seen_ids: Set[str] = set()
        self.report = PollerReport(poller_id=poller_id)

    def receive(self) -> List[Message]:
        params: Dict[str, Any] = {
            "QueueUrl": self.queue_url,
            "MaxNumberOfMessages": self.config.max_batch_size,
            "MessageAttributeNames": ["All"],
            "AttributeNames": ["All"],
        }
        if self.config.wait_time_seconds is not None:
            params["WaitTimeSeconds"] = self.config.wait_time_seconds
        self.report.receive_calls += 1
        response = call_with_retry(
            self.sqs.receive_message, self.config.retry, sleep=self.sleep, **params
        )
        return response.get("Messages", [])

    def forward_batch(self, messages: Sequence[Message]) -> List[Message]:
        """Forward a batch when replaying; return the messages that made it."""
        if self.forward is None or not messages:
            return list(messages)
        failed_forward = self.forward(messages)
        if failed_forward:
            logger.warning(
                "poller %s: %s messages not forwarded, leaving them on the queue: %s",
                self.poller_id,
                len(failed_forward),
                sorted(failed_forward),
            )
        delivered = []
        for msg in messages:
            if msg["MessageId"] in failed_forward:
                self.report.failed_deletes.append(
                    DeleteFailure(msg["MessageId"], "ForwardFailed", "not forwarded", False)
                )
            else:
                delivered.append(msg)
        return delivered

    def keep(self, messages: Sequence[Message]) -> None:
        """Record (and forward) a batch without acknowledging it."""
        fresh = []
        for msg in messages:
            message_id = msg["MessageId"]
            if message_id in self.seen_ids:
                logger.debug("poller %s: redelivery of %s ignored", self.poller_id, message_id)
                continue
            self.seen_ids.add(message_id)
            fresh.append(msg)
        self.report.messages.extend(self.forward_batch(fresh))

    def delete(self, messages: Sequence[Message]) -> None:
        """Forward (when replaying) then delete everything that made it."""
        to_delete = self.forward_batch(messages)
        if not to_delete:
            return

        outcome = delete_batch(
            self.sqs, self.queue_url, to_delete, self.config.retry, sleep=self.sleep
        )
        deleted = set(outcome.succeeded)
        self.report.messages.extend(msg for msg in to_delete if msg["MessageId"] in deleted)
        self.report.failed_deletes.extend(outcome.failed)
        for failure in outcome.failed:
            logger.error(
                "poller %s: delete failed for %s (%s: %s)",
                self.poller_id,
                failure.message_id,
                failure.code,
                failure.message,
            )

    def run(self) -> PollerReport:
        """Poll until the state machine terminates or a stop is requested."""
        logger.debug("poller %s: starting against %s", self.poller_id, self.queue_url)
        while self.state.phase is not Phase.TERMINATED:
            if self.stop_event.is_set():
                logger.info("poller %s: stop requested, not polling again", self.poller_id)
                self.report.cancelled = True
                break

            messages = self.receive()
            self.state, action = transition(self.state, len(messages), self.config)

            if action is Action.KEEP:
                self.keep(messages)
            elif action is Action.DELETE:
                self.delete(messages)

            if messages:
                logger.info(
                    "poller %s: processed batch of %s (total %s)",
                    self.poller_id,
                    len(messages),
                    len(self.report.messages),
                )

        self.report.final_phase = self.state.phase
        logger.debug(
            "poller %s: finished after %s receives, phase=%s",
            self.poller_id,
            self.report.receive_calls,
            self.state.phase.value,
        )
        return self.report
