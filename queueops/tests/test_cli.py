import json
import logging

import pytest

from queueops import cli
from queueops.tests.fakes import FakeSQS, make_messages


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    # setenv first so that values loaded from .env are undone afterwards
    for name in ("AWS_REGION", "HTTPS_PROXY", "QUEUEOPS_CONCURRENCY"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return tmp_path


@pytest.fixture
def fake_sqs(monkeypatch):
    holder = {}

    def build_client(config, service):
        assert service == "sqs"
        holder["config"] = config
        return holder["sqs"]

    monkeypatch.setattr(cli, "build_client", build_client)
    return holder


def test_export_requires_region(workdir) -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(["export-sqs", "-n", "orders-dlq", "-o", "out.json"])


def test_export_defaults(workdir, monkeypatch) -> None:
    monkeypatch.setenv("AWS_REGION", "us-west-2")
    args = cli.parse_args(["export-sqs", "-n", "orders-dlq", "-o", "out.json"])
    assert args.region == "us-west-2"
    assert args.concurrency == 10
    assert args.keep is False

    drain = cli.drain_config(args)
    assert drain.stop_after_batch is True
    assert drain.wait_time_seconds is None


def test_until_empty_and_keep_flags(workdir) -> None:
    args = cli.parse_args(
        ["export-sqs", "-n", "q", "-o", "out.json", "-r", "us-east-1", "-k", "--until-empty", "-c", "3"]
    )
    drain = cli.drain_config(args)
    assert drain.keep_messages is True
    assert drain.stop_after_batch is False
    assert drain.concurrency == 3


@pytest.mark.parametrize("extra", [["-c", "0"], ["--wait-time", "30"]])
def test_invalid_drain_options_rejected(workdir, extra) -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(["export-sqs", "-n", "q", "-o", "out.json", "-r", "us-east-1", *extra])


def test_region_read_from_env_file(workdir) -> None:
    (workdir / ".env").write_text("AWS_REGION=ap-southeast-2\n")
    cli.apply_env_file()
    args = cli.parse_args(["tail-kinesis", "-n", "events"])
    assert args.region == "ap-southeast-2"


def test_replay_parses_target_options(workdir) -> None:
    args = cli.parse_args(
        ["replay-dlq", "-d", "orders-dlq", "-n", "orders", "-t", "SNS", "-r", "us-east-1", "--target-region", "eu-west-1"]
    )
    assert args.target_type == "SNS"
    config = cli.tool_config(args).with_overrides(region=args.target_region, profile=args.target_profile)
    assert config.region == "eu-west-1"


def test_export_writes_messages_and_exits_zero(workdir, fake_sqs) -> None:
    fake_sqs["sqs"] = sqs = FakeSQS(make_messages(3))
    target = workdir / "out" / "messages.json"

    code = cli.main(["export-sqs", "-n", "orders-dlq", "-o", str(target), "-r", "us-east-1", "-c", "1"])

    assert code == 0
    assert fake_sqs["config"].region == "us-east-1"
    assert sqs.receive_calls == 1
    assert len(sqs.delete_calls) == 1
    written = json.loads(target.read_text())
    assert [row["MessageId"] for row in written] == ["msg-0", "msg-1", "msg-2"]
    assert all("ReceiptHandle" not in row for row in written)


def test_export_empty_queue_two_pollers(workdir, fake_sqs) -> None:
    fake_sqs["sqs"] = sqs = FakeSQS()
    target = workdir / "messages.json"

    code = cli.main(["export-sqs", "-n", "orders-dlq", "-o", str(target), "-r", "us-east-1", "-c", "2"])

    assert code == 0
    assert sqs.receive_calls == 20
    assert sqs.delete_calls == []
    assert json.loads(target.read_text()) == []


def test_export_reports_failed_deletes(workdir, fake_sqs, caplog) -> None:
    fake_sqs["sqs"] = FakeSQS(make_messages(3), fail_delete_ids=["msg-1"])
    target = workdir / "messages.json"

    with caplog.at_level(logging.INFO):
        code = cli.main(["export-sqs", "-n", "orders-dlq", "-o", str(target), "-r", "us-east-1", "-c", "1"])

    assert code == 1
    assert [row["MessageId"] for row in json.loads(target.read_text())] == ["msg-0", "msg-2"]
    assert "1 messages were not processed" in caplog.text
    assert "msg-1 (ReceiptHandleIsInvalid" in caplog.text


def test_export_unknown_queue_exits_one(workdir, fake_sqs, caplog) -> None:
    fake_sqs["sqs"] = FakeSQS(queues={})
    target = workdir / "messages.json"

    code = cli.main(["export-sqs", "-n", "missing", "-o", str(target), "-r", "us-east-1"])

    assert code == 1
    assert not target.exists()
    assert "SQS queue [missing] not found in [us-east-1]" in caplog.text


def test_export_to_unwritable_target_deletes_nothing(workdir, fake_sqs, caplog) -> None:
    fake_sqs["sqs"] = sqs = FakeSQS(make_messages(3))
    target = workdir / "exports"
    target.mkdir()

    code = cli.main(["export-sqs", "-n", "orders-dlq", "-o", str(target), "-r", "us-east-1", "-c", "1"])

    assert code == 1
    assert sqs.receive_calls == 0
    assert sqs.deleted_ids == []
    assert len(sqs.queue) == 3
    assert "it is a directory" in caplog.text


def test_export_prints_messages_when_file_write_fails(workdir, fake_sqs, monkeypatch, capsys) -> None:
    fake_sqs["sqs"] = FakeSQS(make_messages(2))

    def disk_full(path, messages):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(cli, "write_messages", disk_full)

    code = cli.main(["export-sqs", "-n", "orders-dlq", "-o", str(workdir / "out.json"), "-r", "us-east-1", "-c", "1"])

    assert code == 1
    printed = json.loads(capsys.readouterr().out)
    assert [row["MessageId"] for row in printed] == ["msg-0", "msg-1"]


def test_export_logs_queue_depth(workdir, fake_sqs, caplog) -> None:
    fake_sqs["sqs"] = FakeSQS(make_messages(4))

    with caplog.at_level(logging.INFO):
        cli.main(["export-sqs", "-n", "orders-dlq", "-o", str(workdir / "out.json"), "-r", "us-east-1", "-c", "1"])

    assert "[orders-dlq] holds approximately 4 visible" in caplog.text


def test_replay_forwards_then_deletes(workdir, monkeypatch) -> None:
    sqs = FakeSQS(make_messages(2), queues={"orders-dlq": "https://queue/orders-dlq", "orders": "https://queue/orders"})
    sent = []

    def send_message_batch(QueueUrl, Entries):
        sent.append((QueueUrl, [entry["Id"] for entry in Entries]))
        return {"Successful": [{"Id": entry["Id"]} for entry in Entries]}

    sqs.send_message_batch = send_message_batch
    monkeypatch.setattr(cli, "build_client", lambda config, service: sqs)

    code = cli.main(["replay-dlq", "-d", "orders-dlq", "-n", "orders", "-r", "us-east-1", "-c", "1"])

    assert code == 0
    assert sent == [("https://queue/orders", ["msg-0", "msg-1"])]
    assert sqs.deleted_ids == ["msg-0", "msg-1"]


def test_scan_declined_sends_nothing(workdir, monkeypatch) -> None:
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    monkeypatch.setattr(cli.scanner, "scan", lambda factory: pytest.fail("should not scan"))
    assert cli.main(["scan"]) == 0


def test_scan_with_yes_and_email(workdir, monkeypatch) -> None:
    sent = {}
    monkeypatch.setattr(cli, "build_client", lambda config, service: service)
    monkeypatch.setattr(cli.scanner, "scan", lambda factory: {"sqs": [{"name": factory("sqs")}]})
    monkeypatch.setattr(cli.scanner, "get_account_id", lambda sts: "123456789012")

    def send_report(endpoint, resources, account_id, email, proxies=None):
        sent.update(endpoint=endpoint, resources=resources, account_id=account_id, email=email)

    monkeypatch.setattr(cli.scanner, "send_report", send_report)

    code = cli.main(["scan", "-y", "--email", "ops@example.test", "--endpoint", "https://example.test/scan"])

    assert code == 0
    assert sent == {
        "endpoint": "https://example.test/scan",
        "resources": {"sqs": [{"name": "sqs"}]},
        "account_id": "123456789012",
        "email": "ops@example.test",
    }
