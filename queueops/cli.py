"""Operator CLI: export/replay SQS queues, tail Kinesis, scan an account."""

from __future__ import annotations

import argparse
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from botocore.client import BaseClient
from botocore.exceptions import ClientError

from queueops.aws import build_client, get_queue_depth, resolve_queue_url
from queueops.config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_SCAN_ENDPOINT,
    MAX_WAIT_TIME_SECONDS,
    DrainConfig,
    ToolConfig,
    apply_env_file,
    env_float,
    env_int,
    env_str,
    get_log_level,
)
from queueops.drain import DrainCoordinator, DrainResult
from queueops.errors import QueueOpsError
from queueops.kinesis import ITERATOR_TYPES, KinesisTailer, describe_stream
from queueops.output import dump_messages, prepare_target, write_messages
from queueops.replay import TARGET_TYPES, build_forwarder, client_service
from queueops import scanner

logger = logging.getLogger("queueops")


def add_connection_args(parser: argparse.ArgumentParser, region_required: bool = True) -> None:
    region_help = "AWS region, e.g. us-east-1"
    if region_required:
        region_help += " (defaults to AWS_REGION)"
    parser.add_argument("-r", "--region", default=env_str("AWS_REGION"), help=region_help)
    parser.add_argument(
        "-p", "--profile", default=env_str("AWS_PROFILE"), help="AWS CLI profile name"
    )
    parser.add_argument(
        "--http-proxy",
        default=env_str("HTTPS_PROXY"),
        help="URL of the http/https proxy (when running in a corporate network)",
    )


def add_drain_args(parser: argparse.ArgumentParser, keep_help: str) -> None:
    parser.add_argument(
        "-c",
        "--concurrency",
        type=int,
        default=env_int("QUEUEOPS_CONCURRENCY", DEFAULT_CONCURRENCY),
        help="how many concurrent pollers to run",
    )
    parser.add_argument("-k", "--keep", action="store_true", help=keep_help)
    parser.add_argument(
        "--until-empty",
        action="store_true",
        help="keep polling after the first batch until the queue looks empty",
    )
    parser.add_argument(
        "--wait-time",
        type=int,
        default=None,
        help=f"long-poll wait per receive, 0-{MAX_WAIT_TIME_SECONDS}s (default: queue setting)",
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="queueops", description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    export = subparsers.add_parser("export-sqs", help="Export the messages in a SQS queue to a file")
    export.add_argument(
        "-n", "--queue-name", required=True, help="name of the SQS queue, e.g. task-queue-dlq-dev"
    )
    export.add_argument(
        "-o", "--target-path", required=True, type=Path, help="file to write the messages to"
    )
    add_connection_args(export)
    add_drain_args(export, keep_help="keep the exported messages in the queue")

    replay = subparsers.add_parser(
        "replay-dlq", help="Replays the messages in a SQS DLQ back to the main queue"
    )
    replay.add_argument(
        "-d", "--dlq-queue-name", required=True, help="name of the SQS DLQ queue, e.g. task-queue-dlq-dev"
    )
    replay.add_argument(
        "-n",
        "--target-name",
        required=True,
        help="name of the target SQS queue/SNS topic/Kinesis stream, e.g. task-queue-dev",
    )
    replay.add_argument(
        "-t", "--target-type", choices=TARGET_TYPES, default="SQS", help="type of the target"
    )
    replay.add_argument("--target-profile", help="AWS CLI profile name to use for the target account")
    replay.add_argument("--target-region", help="AWS region for the target resource, e.g. eu-west-1")
    add_connection_args(replay)
    add_drain_args(replay, keep_help="keep the replayed messages in the DLQ")

    tail = subparsers.add_parser("tail-kinesis", help="Tails the records going into a Kinesis stream")
    tail.add_argument(
        "-n", "--stream-name", required=True, help="name of the Kinesis stream, e.g. event-stream-dev"
    )
    tail.add_argument("--iterator", choices=ITERATOR_TYPES, default="LATEST", help="where to start reading")
    tail.add_argument(
        "--poll-interval",
        type=float,
        default=env_float("QUEUEOPS_POLL_INTERVAL", 1.0),
        help="seconds between polls of an idle shard",
    )
    add_connection_args(tail)

    scan = subparsers.add_parser(
        "scan", help="Scan the AWS account's serverless resources and send them for analysis"
    )
    scan.add_argument("--email", help="send the report to this email")
    scan.add_argument("-y", "--yes", action="store_true", help="do not ask for confirmation")
    scan.add_argument(
        "--endpoint",
        default=env_str("QUEUEOPS_SCAN_ENDPOINT") or DEFAULT_SCAN_ENDPOINT,
        help="URL the scan report is POSTed to",
    )
    add_connection_args(scan, region_required=False)

    args = parser.parse_args(argv)
    if args.command != "scan" and not args.region:
        parser.error("--region is required (or set AWS_REGION)")
    if args.command in ("export-sqs", "replay-dlq"):
        if args.concurrency < 1:
            parser.error("--concurrency must be at least 1")
        if args.wait_time is not None and not 0 <= args.wait_time <= MAX_WAIT_TIME_SECONDS:
            parser.error(f"--wait-time must be between 0 and {MAX_WAIT_TIME_SECONDS}")
    return args


def tool_config(args: argparse.Namespace) -> ToolConfig:
    return ToolConfig(region=args.region, profile=args.profile, http_proxy=args.http_proxy)


def drain_config(args: argparse.Namespace) -> DrainConfig:
    return DrainConfig(
        concurrency=args.concurrency,
        keep_messages=args.keep,
        stop_after_batch=not args.until_empty,
        wait_time_seconds=args.wait_time,
    )


@contextlib.contextmanager
def stop_on_signals(on_stop: Callable[[], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to `on_stop` for the duration of the block."""

    def handler(signum: int, _frame) -> None:
        logger.warning("Received %s, finishing in-flight calls ...", signal.Signals(signum).name)
        on_stop()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def report_drain(result: DrainResult, verb: str) -> int:
    """Log the outcome of a drain; return the exit code."""
    logger.info(
        "%s %s messages using %s receive calls",
        verb,
        len(result.messages),
        result.receive_calls,
    )
    if result.failed_deletes:
        logger.error(
            "%s messages were not processed and remain on the queue:", len(result.failed_deletes)
        )
        for failure in result.failed_deletes:
            logger.error("  %s (%s: %s)", failure.message_id, failure.code, failure.message)
    for poller_id, exc in result.errors:
        logger.error("poller %s failed: %s", poller_id, exc)
    if result.cancelled:
        logger.warning("stopped before the queue was drained")
    return 0 if result.ok else 1


def open_queue(config: ToolConfig, queue_name: str) -> Tuple[BaseClient, str]:
    """Resolve the queue and log how many messages it roughly holds."""
    sqs = build_client(config, "sqs")
    logger.info("finding the SQS [%s] in [%s]", queue_name, config.region)
    queue_url = resolve_queue_url(sqs, queue_name, config.region)
    try:
        depth = get_queue_depth(sqs, queue_url)
    except ClientError as exc:
        logger.warning("could not read the depth of [%s]: %s", queue_name, exc)
    else:
        logger.info(
            "[%s] holds approximately %s visible, %s in flight and %s delayed messages",
            queue_name,
            depth["visible"],
            depth["not_visible"],
            depth["delayed"],
        )
    return sqs, queue_url


def run_drain(sqs: BaseClient, queue_url: str, drain: DrainConfig, forward=None) -> DrainResult:
    coordinator = DrainCoordinator(sqs, queue_url, drain, forward=forward)
    with stop_on_signals(coordinator.stop):
        return coordinator.run()


def cmd_export_sqs(args: argparse.Namespace) -> int:
    config = tool_config(args)
    drain = drain_config(args)
    sqs, queue_url = open_queue(config, args.queue_name)
    prepare_target(args.target_path)
    logger.info(
        "exporting events from [%s] to [%s] with %s concurrent pollers",
        args.queue_name,
        args.target_path,
        drain.concurrency,
    )
    result = run_drain(sqs, queue_url, drain)
    # Written even on failure so nothing already deleted is lost.
    try:
        write_messages(args.target_path, result.messages)
    except OSError as exc:
        logger.error(
            "failed to write %s messages to [%s] (%s), printing them instead",
            len(result.messages),
            args.target_path,
            exc,
        )
        dump_messages(sys.stdout, result.messages)
        report_drain(result, "exported")
        return 1
    code = report_drain(result, "exported")
    if code == 0:
        logger.info("all done!")
    return code


def cmd_replay_dlq(args: argparse.Namespace) -> int:
    config = tool_config(args)
    drain = drain_config(args)
    target_config = config.with_overrides(region=args.target_region, profile=args.target_profile)
    target_client = build_client(target_config, client_service(args.target_type))
    forward = build_forwarder(args.target_type, args.target_name, target_client, drain.retry)
    sqs, queue_url = open_queue(config, args.dlq_queue_name)
    logger.info(
        "replaying events from [%s] to %s [%s] with %s concurrent pollers",
        args.dlq_queue_name,
        args.target_type,
        args.target_name,
        drain.concurrency,
    )
    result = run_drain(sqs, queue_url, drain, forward=forward)
    code = report_drain(result, "replayed")
    if code == 0:
        logger.info("all done!")
    return code


def cmd_tail_kinesis(args: argparse.Namespace) -> int:
    config = tool_config(args)
    kinesis = build_client(config, "kinesis")
    logger.info("checking Kinesis stream [%s] in [%s]", args.stream_name, config.region)
    stream = describe_stream(kinesis, args.stream_name)
    logger.info(
        "polling Kinesis stream [%s] (%s shards, %s) ...",
        args.stream_name,
        len(stream.shard_ids),
        stream.status,
    )
    logger.info("press Ctrl+C to stop")
    tailer = KinesisTailer(
        kinesis, args.stream_name, iterator_type=args.iterator, poll_interval=args.poll_interval
    )
    with stop_on_signals(tailer.stop):
        tailer.run(stream.shard_ids)
    logger.info("stopped after %s records", tailer.records_seen)
    return 0


def confirm(question: str) -> bool:
    answer = input(f"{question} [y/N] ").strip().lower()
    return answer in ("y", "yes")


def cmd_scan(args: argparse.Namespace) -> int:
    config = tool_config(args)
    print(
        "This command scans AWS resources in the AWS account you're connected to\n"
        "and sends their metadata for analysis. A report will be sent to your email.\n"
    )
    if not args.yes and not confirm("Send metadata about your AWS resources for analysis?"):
        logger.info("Nothing sent")
        return 0
    email = args.email or input("Send the report to this email: ").strip()
    if not email:
        logger.error("An email address is required to receive the report")
        return 1

    logger.info("Scanning account for relevant resources ...")
    resources = scanner.scan(lambda service: build_client(config, service))
    logger.info("Found %s AWS resources", scanner.count_resources(resources))

    account_id = scanner.get_account_id(build_client(config, "sts"))
    logger.info("Sending metadata for account %s to %s ...", account_id, args.endpoint)
    scanner.send_report(args.endpoint, resources, account_id, email, proxies=config.proxies)
    return 0


COMMANDS = {
    "export-sqs": cmd_export_sqs,
    "replay-dlq": cmd_replay_dlq,
    "tail-kinesis": cmd_tail_kinesis,
    "scan": cmd_scan,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point: dispatch to the chosen subcommand and map errors to exit codes."""
    apply_env_file()
    args = parse_args(argv)
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    try:
        return COMMANDS[args.command](args)
    except QueueOpsError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        return 130
    except Exception:
        logger.exception("Fatal error running %s", args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
