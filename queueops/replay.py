"""Replay targets: re-publish drained DLQ batches to SQS, SNS or Kinesis.

Every forwarder takes one received batch and returns the ids of messages
it could NOT deliver; the poller leaves those on the DLQ.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Set

from botocore.client import BaseClient
from botocore.exceptions import ClientError

from queueops.aws import call_with_retry, error_code, resolve_queue_url
from queueops.config import RetryPolicy
from queueops.errors import StreamNotFoundError, TopicNotFoundError
from queueops.poller import Message

logger = logging.getLogger(__name__)

TARGET_TYPES = ("SQS", "SNS", "Kinesis")


def clean_message_attributes(message: Message) -> Dict[str, Dict[str, Any]]:
    """Strip receive-only fields so attributes can be sent back out."""
    cleaned: Dict[str, Dict[str, Any]] = {}
    for name, attr in (message.get("MessageAttributes") or {}).items():
        value: Dict[str, Any] = {"DataType": attr["DataType"]}
        if "StringValue" in attr:
            value["StringValue"] = attr["StringValue"]
        if "BinaryValue" in attr:
            value["BinaryValue"] = attr["BinaryValue"]
        cleaned[name] = value
    return cleaned


class SqsForwarder:
    def __init__(self, sqs: BaseClient, queue_url: str, retry: RetryPolicy) -> None:
        self.sqs = sqs
        self.queue_url = queue_url
        self.retry = retry
        self.fifo = queue_url.endswith(".fifo")

    def entry(self, message: Message) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "Id": message["MessageId"],
            "MessageBody": message["Body"],
        }
        attributes = clean_message_attributes(message)
        if attributes:
            entry["MessageAttributes"] = attributes
        if self.fifo:
            system = message.get("Attributes") or {}
            entry["MessageGroupId"] = system.get("MessageGroupId", "replay")
            entry["MessageDeduplicationId"] = system.get(
                "MessageDeduplicationId", message["MessageId"]
            )
        return entry

    def __call__(self, messages: Sequence[Message]) -> Set[str]:
        resp = call_with_retry(
            self.sqs.send_message_batch,
            self.retry,
            QueueUrl=self.queue_url,
            Entries=[self.entry(msg) for msg in messages],
        )
        return {failed["Id"] for failed in resp.get("Failed", [])}


class SnsForwarder:
    def __init__(self, sns: BaseClient, topic_arn: str, retry: RetryPolicy) -> None:
        self.sns = sns
        self.topic_arn = topic_arn
        self.retry = retry

    def __call__(self, messages: Sequence[Message]) -> Set[str]:
        entries: List[Dict[str, Any]] = []
        for msg in messages:
            entry: Dict[str, Any] = {"Id": msg["MessageId"], "Message": msg["Body"]}
            attributes = clean_message_attributes(msg)
            if attributes:
                entry["MessageAttributes"] = attributes
            entries.append(entry)
        resp = call_with_retry(
            self.sns.publish_batch,
            self.retry,
            TopicArn=self.topic_arn,
            PublishBatchRequestEntries=entries,
        )
        return {failed["Id"] for failed in resp.get("Failed", [])}


class KinesisForwarder:
    def __init__(self, kinesis: BaseClient, stream_name: str, retry: RetryPolicy) -> None:
        self.kinesis = kinesis
        self.stream_name = stream_name
        self.retry = retry

    def __call__(self, messages: Sequence[Message]) -> Set[str]:
        records = [
            {"Data": msg["Body"].encode("utf-8"), "PartitionKey": msg["MessageId"]}
            for msg in messages
        ]
        resp = call_with_retry(
            self.kinesis.put_records,
            self.retry,
            StreamName=self.stream_name,
            Records=records,
        )
        # put_records results are positional
        return {
            msg["MessageId"]
            for msg, result in zip(messages, resp.get("Records", []))
            if result.get("ErrorCode")
        }


def find_topic_arn(sns: BaseClient, topic_name: str) -> str:
    """Look up a topic ARN by its name."""
    paginator = sns.get_paginator("list_topics")
    for page in paginator.paginate():
        for topic in page.get("Topics", []):
            arn = topic["TopicArn"]
            if arn.rsplit(":", 1)[-1] == topic_name:
                return arn
    raise TopicNotFoundError(topic_name)


def ensure_stream_exists(kinesis: BaseClient, stream_name: str) -> None:
    try:
        kinesis.describe_stream_summary(StreamName=stream_name)
    except ClientError as exc:
        if error_code(exc) == "ResourceNotFoundException":
            raise StreamNotFoundError(stream_name) from exc
        raise


def build_forwarder(
    target_type: str, target_name: str, client: BaseClient, retry: RetryPolicy
):
    """Resolve the replay target and return a forwarder for it."""
    if target_type == "SQS":
        queue_url = resolve_queue_url(client, target_name)
        logger.info("replaying to SQS queue %s", queue_url)
        return SqsForwarder(client, queue_url, retry)
    if target_type == "SNS":
        topic_arn = find_topic_arn(client, target_name)
        logger.info("replaying to SNS topic %s", topic_arn)
        return SnsForwarder(client, topic_arn, retry)
    if target_type == "Kinesis":
        ensure_stream_exists(client, target_name)
        logger.info("replaying to Kinesis stream %s", target_name)
        return KinesisForwarder(client, target_name, retry)
    raise ValueError(f"Unknown target type {target_type}")


def client_service(target_type: str) -> str:
    """boto3 service name for a replay target type."""
    return {"SQS": "sqs", "SNS": "sns", "Kinesis": "kinesis"}[target_type]
