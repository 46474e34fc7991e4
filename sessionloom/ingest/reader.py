"""
Event log reader — load a JSONL session log into Records.

One JSON object per line. Corrupt lines are skipped and counted; a missing
file is an empty log; any I/O failure is reported in ``ReadResult.error``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Union

from ..core.config import Config
from ..core.models import ReadResult, Record
from .discovery import InvalidSessionIdError, session_log_path, sidecar_log_path

logger = logging.getLogger(__name__)


def read_log(path: Union[str, Path]) -> ReadResult:
    """Read a JSONL log. Never raises."""
    path = Path(path)
    try:
        if not path.exists():
            return ReadResult()
        data = path.read_bytes()
    except Exception as e:
        logger.error(f"Failed to read {path}: {e}")
        return ReadResult(error=str(e))

    return parse_lines(data, source=str(path))


def parse_lines(text: Union[str, bytes], *, source: str = "<memory>") -> ReadResult:
    """Parse JSONL text or raw bytes; blank lines are ignored, bad lines counted.

    Bytes are decoded line by line, so one undecodable line is skipped
    like any other malformed line.
    """
    result = ReadResult()
    for line_no, raw_line in enumerate(text.splitlines(), 1):
        if isinstance(raw_line, bytes):
            try:
                raw_line = raw_line.decode("utf-8")
            except UnicodeDecodeError:
                logger.debug(f"{source}:{line_no}: skipping undecodable line")
                result.skipped_count += 1
                continue
        stripped = raw_line.strip()
        if not stripped:
            continue
        try:
            data = json.loads(stripped)
        except (ValueError, RecursionError):
            logger.debug(f"{source}:{line_no}: skipping malformed line")
            result.skipped_count += 1
            continue
        if not isinstance(data, dict):
            logger.debug(f"{source}:{line_no}: skipping non-object line")
            result.skipped_count += 1
            continue
        result.records.append(Record.from_dict(data))
    return result


def read_session(
    workspace: str,
    session_id: str,
    config: Optional[Config] = None,
) -> ReadResult:
    """Read the main log of a session; invalid ids yield an error result."""
    try:
        path = session_log_path(workspace, session_id, config)
    except InvalidSessionIdError as e:
        logger.warning(str(e))
        return ReadResult(error=str(e))
    return read_log(path)


def read_sidecar(
    workspace: str,
    session_id: str,
    agent_id: str,
    config: Optional[Config] = None,
) -> ReadResult:
    try:
        path = sidecar_log_path(workspace, session_id, agent_id, config)
    except InvalidSessionIdError as e:
        logger.warning(str(e))
        return ReadResult(error=str(e))
    return read_log(path)
