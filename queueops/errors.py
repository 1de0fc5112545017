"""Exceptions raised by the queueops commands."""

from __future__ import annotations


class QueueOpsError(Exception):
    """Base class for failures the CLI reports and exits non-zero on."""


class QueueNotFoundError(QueueOpsError):
    """Raised when a queue name does not resolve to a URL."""

    def __init__(self, queue_name: str, region: str | None = None) -> None:
        where = f" in [{region}]" if region else ""
        super().__init__(f"SQS queue [{queue_name}] not found{where}")
        self.queue_name = queue_name
        self.region = region


class StreamNotFoundError(QueueOpsError):
    """Raised when a Kinesis stream does not exist."""

    def __init__(self, stream_name: str) -> None:
        super().__init__(f"Kinesis stream [{stream_name}] not found")
        self.stream_name = stream_name


class TopicNotFoundError(QueueOpsError):
    """Raised when an SNS topic name has no matching ARN."""

    def __init__(self, topic_name: str) -> None:
        super().__init__(f"SNS topic [{topic_name}] not found")
        self.topic_name = topic_name


class ScanUploadError(QueueOpsError):
    """Raised when the scan report could not be delivered."""


class ExportTargetError(QueueOpsError):
    """Raised when the export file cannot be written."""

    def __init__(self, path, reason: str) -> None:
        super().__init__(f"Cannot write export to [{path}]: {reason}")
        self.path = path
