"""Export file handling for drained SQS messages."""

from __future__ import annotations

import base64
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence, TextIO

from queueops.errors import ExportTargetError

logger = logging.getLogger(__name__)

# Receipt handles are single-use and meaningless once written out.
DROPPED_FIELDS = ("ReceiptHandle",)


def exportable(message: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in message.items() if key not in DROPPED_FIELDS}


def _json_default(value: Any) -> str:
    """Binary message attributes are written base64-encoded."""
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(value).decode("ascii")
    return str(value)


def render(messages: Sequence[Dict[str, Any]]) -> str:
    """Messages as the JSON array written to export files."""
    rows: List[Dict[str, Any]] = [exportable(msg) for msg in messages]
    return json.dumps(rows, indent=2, default=_json_default) + "\n"


def prepare_target(path: Path) -> None:
    """Check that `path` can be written before anything leaves the queue.

    Creates the parent directories and the file itself when missing; an
    existing file keeps its content until the export replaces it.
    """
    if path.is_dir():
        raise ExportTargetError(path, "it is a directory")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8"):
            pass
    except OSError as exc:
        raise ExportTargetError(path, exc.strerror or str(exc)) from exc


def write_messages(path: Path, messages: Sequence[Dict[str, Any]]) -> int:
    """Write messages as a JSON array; return how many were written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render(messages), encoding="utf-8")
    logger.info("wrote %s messages to %s", len(messages), path)
    return len(messages)


def dump_messages(stream: TextIO, messages: Sequence[Dict[str, Any]]) -> None:
    """Last resort when the export file fails mid-write."""
    stream.write(render(messages))
    stream.flush()
