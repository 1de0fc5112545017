"""boto3 client construction, retry with backoff and SQS helpers shared by the commands."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from queueops.config import RetryPolicy, ToolConfig
from queueops.errors import QueueNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUEUE_MISSING_CODES = {
    "AWS.SimpleQueueService.NonExistentQueue",
    "QueueDoesNotExist",
}

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestThrottled",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "RequestTimeout",
    "RequestTimeoutException",
    "ProvisionedThroughputExceededException",
    "KMSThrottlingException",
}

TRANSIENT_EXCEPTIONS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ReadTimeoutError,
    ConnectTimeoutError,
)


def build_client(config: ToolConfig, service: str) -> BaseClient:
    """Construct a boto3 client using region/profile/proxy from the config."""
    session = boto3.Session(region_name=config.region, profile_name=config.profile or None)
    client_config = Config(proxies=config.proxies) if config.proxies else None
    return session.client(service, config=client_config)


def error_code(exc: BaseException) -> str:
    """AWS error code of a ClientError, or the exception class name."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "Unknown")
    return exc.__class__.__name__


def is_transient(exc: BaseException) -> bool:
    """True for throttling, 5xx-style codes and connection-level failures."""
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return True
    if isinstance(exc, ClientError):
        return error_code(exc) in TRANSIENT_ERROR_CODES
    return False


def call_with_retry(
    func: Callable[..., T],
    policy: RetryPolicy,
    *args: Any,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Invoke an AWS call, retrying transient failures with backoff.

    Non-transient errors propagate on the first attempt; transient ones
    propagate once `policy.max_retries` retries are spent.
    """
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            if not is_transient(exc) or attempt >= policy.max_retries:
                raise
            delay = policy.delay_for(attempt)
            attempt += 1
            logger.warning(
                "Transient %s from %s, retry %s/%s in %.2fs",
                error_code(exc),
                getattr(func, "__name__", "call"),
                attempt,
                policy.max_retries,
                delay,
            )
            sleep(delay)


def resolve_queue_url(
    sqs: BaseClient, queue_name: str, region: Optional[str] = None
) -> str:
    """Map a queue name to its URL; raise QueueNotFoundError if absent."""
    try:
        return sqs.get_queue_url(QueueName=queue_name)["QueueUrl"]
    except ClientError as exc:
        if error_code(exc) in QUEUE_MISSING_CODES:
            raise QueueNotFoundError(queue_name, region) from exc
        raise


DEPTH_ATTRIBUTES = {
    "visible": "ApproximateNumberOfMessages",
    "not_visible": "ApproximateNumberOfMessagesNotVisible",
    "delayed": "ApproximateNumberOfMessagesDelayed",
}


def get_queue_depth(sqs: BaseClient, queue_url: str) -> Dict[str, int]:
    """Approximate visible, in-flight and delayed message counts."""
    attrs = sqs.get_queue_attributes(
        QueueUrl=queue_url, AttributeNames=list(DEPTH_ATTRIBUTES.values())
    )["Attributes"]
    return {key: int(attrs.get(name, "0")) for key, name in DEPTH_ATTRIBUTES.items()}


@dataclass(frozen=True)
class DeleteFailure:
    message_id: str
    code: str
    message: str
    sender_fault: bool


@dataclass
class DeleteOutcome:
    """Per-entry result of deleting one batch."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[DeleteFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def delete_entries(messages: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Batch delete entries, one per message, keyed by MessageId."""
    return [
        {"Id": msg["MessageId"], "ReceiptHandle": msg["ReceiptHandle"]}
        for msg in messages
    ]


def delete_batch(
    sqs: BaseClient,
    queue_url: str,
    messages: Sequence[Dict[str, Any]],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> DeleteOutcome:
    """Delete a received batch and report which entries failed.

    Entries that fail server-side (SenderFault false) are resubmitted up to
    `policy.max_retries` times; sender faults such as an expired receipt
    handle are reported straight away.
    """
    outcome = DeleteOutcome()
    pending = delete_entries(messages)
    attempt = 0
    while pending:
        resp = call_with_retry(
            sqs.delete_message_batch, policy, QueueUrl=queue_url, Entries=pending, sleep=sleep
        )
        outcome.succeeded.extend(entry["Id"] for entry in resp.get("Successful", []))

        retryable: List[Dict[str, str]] = []
        by_id = {entry["Id"]: entry for entry in pending}
        for failed in resp.get("Failed", []):
            failure = DeleteFailure(
                message_id=failed["Id"],
                code=failed.get("Code", "Unknown"),
                message=failed.get("Message", ""),
                sender_fault=bool(failed.get("SenderFault", False)),
            )
            if not failure.sender_fault and attempt < policy.max_retries:
                retryable.append(by_id[failure.message_id])
            else:
                outcome.failed.append(failure)

        if retryable:
            delay = policy.delay_for(attempt)
            attempt += 1
            logger.warning(
                "Retrying %s failed delete entries (%s/%s) in %.2fs",
                len(retryable),
                attempt,
                policy.max_retries,
                delay,
            )
            sleep(delay)
        pending = retryable
    return outcome
