"""Tail the records arriving on every shard of a Kinesis stream."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from botocore.client import BaseClient
from botocore.exceptions import ClientError

from queueops.aws import call_with_retry, error_code
from queueops.config import RetryPolicy
from queueops.errors import StreamNotFoundError

logger = logging.getLogger(__name__)

RECORDS_PER_CALL = 10
ITERATOR_TYPES = ("LATEST", "TRIM_HORIZON")


@dataclass(frozen=True)
class StreamInfo:
    arn: str
    status: str
    shard_ids: List[str]


def describe_stream(kinesis: BaseClient, stream_name: str) -> StreamInfo:
    """Fetch ARN, status and every shard id, following pagination."""
    try:
        desc = kinesis.describe_stream(StreamName=stream_name)["StreamDescription"]
        shard_ids = [shard["ShardId"] for shard in desc["Shards"]]
        while desc.get("HasMoreShards"):
            desc = kinesis.describe_stream(
                StreamName=stream_name, ExclusiveStartShardId=shard_ids[-1]
            )["StreamDescription"]
            shard_ids.extend(shard["ShardId"] for shard in desc["Shards"])
    except ClientError as exc:
        if error_code(exc) == "ResourceNotFoundException":
            raise StreamNotFoundError(stream_name) from exc
        raise
    return StreamInfo(arn=desc["StreamARN"], status=desc["StreamStatus"], shard_ids=shard_ids)


def decode_record(record: Dict) -> str:
    """Record payload as text; boto3 has already base64-decoded Data."""
    data = record.get("Data", b"")
    if isinstance(data, str):
        return data
    return data.decode("utf-8", errors="replace")


class KinesisTailer:
    """One polling loop per shard, all stopped by a shared event."""

    def __init__(
        self,
        kinesis: BaseClient,
        stream_name: str,
        iterator_type: str = "LATEST",
        poll_interval: float = 1.0,
        retry: Optional[RetryPolicy] = None,
        emit: Callable[[str], None] = print,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        if iterator_type not in ITERATOR_TYPES:
            raise ValueError(f"iterator_type must be one of {ITERATOR_TYPES}")
        self.kinesis = kinesis
        self.stream_name = stream_name
        self.iterator_type = iterator_type
        self.poll_interval = poll_interval
        self.retry = retry or RetryPolicy()
        self.emit = emit
        self.stop_event = stop_event or threading.Event()
        self._emit_lock = threading.Lock()
        self.records_seen = 0

    def stop(self) -> None:
        self.stop_event.set()

    def shard_iterator(self, shard_id: str, after_sequence: Optional[str] = None) -> str:
        """Iterator at the configured start, or just past `after_sequence`."""
        params = {"StreamName": self.stream_name, "ShardId": shard_id}
        if after_sequence is None:
            params["ShardIteratorType"] = self.iterator_type
        else:
            params["ShardIteratorType"] = "AFTER_SEQUENCE_NUMBER"
            params["StartingSequenceNumber"] = after_sequence
        resp = call_with_retry(self.kinesis.get_shard_iterator, self.retry, **params)
        return resp["ShardIterator"]

    def tail_shard(self, shard_id: str) -> int:
        """Poll one shard until stopped or the shard closes; return records seen."""
        shard_iterator = self.shard_iterator(shard_id)
        last_sequence: Optional[str] = None

        count = 0
        while not self.stop_event.is_set():
            try:
                resp = call_with_retry(
                    self.kinesis.get_records,
                    self.retry,
                    ShardIterator=shard_iterator,
                    Limit=RECORDS_PER_CALL,
                )
            except ClientError as exc:
                if error_code(exc) != "ExpiredIteratorException":
                    raise
                logger.info("iterator for shard %s expired, fetching a new one", shard_id)
                shard_iterator = self.shard_iterator(shard_id, after_sequence=last_sequence)
                continue

            records = resp.get("Records", [])
            with self._emit_lock:
                for record in records:
                    self.emit(decode_record(record))
                    self.records_seen += 1
            if records:
                last_sequence = records[-1]["SequenceNumber"]
            count += len(records)

            shard_iterator = resp.get("NextShardIterator")
            if shard_iterator is None:
                logger.info("shard %s is closed", shard_id)
                break
            if not records:
                # Event.wait doubles as an interruptible sleep.
                self.stop_event.wait(self.poll_interval)
        return count

    def run(self, shard_ids: List[str]) -> int:
        if not shard_ids:
            return 0
        with ThreadPoolExecutor(max_workers=len(shard_ids), thread_name_prefix="shard") as executor:
            futures = [executor.submit(self.tail_shard, shard_id) for shard_id in shard_ids]
            try:
                done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            finally:
                # The first failing shard stops the rest.
                self.stop_event.set()
            for future in done:
                exc = future.exception()
                if exc is not None:
                    raise exc
        return sum(future.result() for future in futures)
