import json

import pytest

from queueops.errors import ExportTargetError
from queueops.output import exportable, prepare_target, write_messages
from queueops.tests.fakes import make_messages


def test_exportable_drops_receipt_handle() -> None:
    row = exportable(make_messages(1)[0])
    assert "ReceiptHandle" not in row
    assert row["Body"] == '{"order": 0}'


def test_write_messages_encodes_binary_attributes(tmp_path) -> None:
    message = dict(
        make_messages(1)[0],
        MessageAttributes={"blob": {"DataType": "Binary", "BinaryValue": b"\x00\x01"}},
    )
    path = tmp_path / "nested" / "out.json"

    assert write_messages(path, [message]) == 1
    rows = json.loads(path.read_text())
    assert rows[0]["MessageAttributes"]["blob"]["BinaryValue"] == "AAE="


def test_prepare_target_creates_missing_file(tmp_path) -> None:
    path = tmp_path / "a" / "b" / "out.json"
    prepare_target(path)
    assert path.exists()


def test_prepare_target_keeps_existing_content(tmp_path) -> None:
    path = tmp_path / "out.json"
    path.write_text("[]\n")
    prepare_target(path)
    assert path.read_text() == "[]\n"


def test_prepare_target_rejects_directory(tmp_path) -> None:
    with pytest.raises(ExportTargetError):
        prepare_target(tmp_path)
