"""
Session location — map a workspace path and session id to log files on disk.

The producer stores one JSONL log per session under
``<projects_dir>/<encoded workspace>/<session_id>.jsonl`` and one sidecar log
per async subagent under ``<session_id>/subagents/agent-<agent_id>.jsonl``.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from ..core.config import Config

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")
_VALID_ID = re.compile(r"^[A-Za-z0-9_-]+$")
_MAX_ID_LENGTH = 128


class InvalidSessionIdError(ValueError):
    """Raised when a session or agent id could escape its directory."""


def encode_workspace_path(workspace: str) -> str:
    """Encode a workspace path the way the producer names its project dirs.

    Every character outside ``[A-Za-z0-9]`` becomes ``-``, one for one:
        /Users/test/vault      ->  -Users-test-vault
        C:\\Users\\test\\vault  ->  C--Users-test-vault
    """
    return _NON_ALNUM.sub("-", workspace)


def is_valid_session_id(session_id: str) -> bool:
    """Accept only short ids made of letters, digits, ``_`` and ``-``."""
    if not isinstance(session_id, str):
        return False
    if not session_id or len(session_id) > _MAX_ID_LENGTH:
        return False
    if ".." in session_id or "/" in session_id or "\\" in session_id:
        return False
    return bool(_VALID_ID.match(session_id))


def project_dir(workspace: str, config: Optional[Config] = None) -> Path:
    cfg = config or Config.load()
    return cfg.resolved_projects_dir / encode_workspace_path(workspace)


def session_log_path(workspace: str, session_id: str, config: Optional[Config] = None) -> Path:
    if not is_valid_session_id(session_id):
        raise InvalidSessionIdError(f"Invalid session ID: {session_id!r}")
    return project_dir(workspace, config) / f"{session_id}.jsonl"


def sidecar_log_path(
    workspace: str,
    session_id: str,
    agent_id: str,
    config: Optional[Config] = None,
) -> Path:
    if not is_valid_session_id(session_id):
        raise InvalidSessionIdError(f"Invalid session ID: {session_id!r}")
    if not is_valid_session_id(agent_id):
        raise InvalidSessionIdError(f"Invalid agent ID: {agent_id!r}")
    return project_dir(workspace, config) / session_id / "subagents" / f"agent-{agent_id}.jsonl"


def session_exists(workspace: str, session_id: str, config: Optional[Config] = None) -> bool:
    try:
        return session_log_path(workspace, session_id, config).exists()
    except (InvalidSessionIdError, OSError):
        return False


def delete_session(workspace: str, session_id: str, config: Optional[Config] = None) -> None:
    """Remove a session log. Missing files and failures are ignored."""
    try:
        path = session_log_path(workspace, session_id, config)
    except InvalidSessionIdError:
        logger.warning(f"Refusing to delete session with invalid id: {session_id!r}")
        return
    try:
        if path.exists():
            path.unlink()
    except OSError as e:
        logger.warning(f"Cannot delete {path}: {e}")


def discover_sessions(
    *,
    project_filter: Optional[str] = None,
    config: Optional[Config] = None,
) -> List[Dict[str, str]]:
    """
    Find all main session logs on disk.

    Returns list of dicts:
        {path, project_dir, workspace, session_id}
    """
    cfg = config or Config.load()
    base = cfg.resolved_projects_dir
    if not base.exists():
        return []

    results = []
    for proj in sorted(_safe_iterdir(base)):
        if not proj.is_dir():
            continue

        for f in sorted(proj.glob("*.jsonl")):
            # Subagent sidecars live in their own directory, but older
            # producers wrote them beside the main log.
            if f.name.startswith("agent-"):
                continue
            workspace = _read_cwd(f) or proj.name
            if project_filter and project_filter not in workspace:
                continue
            results.append({
                "path": str(f),
                "project_dir": proj.name,
                "workspace": workspace,
                "session_id": f.stem,
            })

    return results


def _read_cwd(session_file: Path) -> Optional[str]:
    """Read the recorded working directory from the first lines of a log."""
    try:
        with open(session_file, "r", encoding="utf-8", errors="replace") as f:
            for i, line in enumerate(f):
                if i >= 20:
                    break
                try:
                    obj = json.loads(line)
                except (ValueError, RecursionError):
                    continue
                cwd = obj.get("cwd") if isinstance(obj, dict) else None
                if isinstance(cwd, str) and cwd.strip():
                    return cwd.strip()
    except OSError as e:
        logger.debug(f"Cannot read {session_file}: {e}")
    return None


def _safe_iterdir(path: Path):
    """Iterate directory entries, ignoring permission errors."""
    try:
        yield from path.iterdir()
    except PermissionError:
        pass
