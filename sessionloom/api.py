"""
sessionloom API — importable functions for every operation.

Every function returns JSON-serializable dicts/lists.
Designed to be called from scripts, editors, or other agents.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Optional


def _serialize(obj: Any) -> Any:
    """Convert dataclass to dict."""
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    return obj


# ── Status ────────────────────────────────────────────────────────────────────

def status() -> Dict[str, Any]:
    """Configuration diagnostics."""
    from .core.config import Config, _config_path
    cfg = Config.load()

    projects_dir = cfg.resolved_projects_dir
    return {
        "config_path": str(_config_path()),
        "config_exists": _config_path().exists(),
        "projects_dir": str(projects_dir),
        "projects_dir_exists": projects_dir.exists(),
        "output_ext": cfg.output_ext,
        "trusted_tmp_roots": cfg.resolved_trusted_roots,
        "log_level": cfg.log_level,
    }


def set_config(key: str, value: str) -> Dict[str, str]:
    """Write one config key."""
    from .core.config import Config
    Config.set_config(key, value)
    return {"key": key, "value": value, "status": "ok"}


# ── Discovery ─────────────────────────────────────────────────────────────────

def sessions(project: Optional[str] = None) -> List[Dict[str, str]]:
    """Find session logs on disk."""
    from .ingest.discovery import discover_sessions
    return discover_sessions(project_filter=project)


def encode(path: str) -> Dict[str, str]:
    """Project directory name for a workspace path."""
    from .ingest.discovery import encode_workspace_path
    return {"workspace": path, "encoded": encode_workspace_path(path)}


# ── Loading ───────────────────────────────────────────────────────────────────

def load(workspace: str, session_id: str, resume_at: Optional[str] = None) -> Dict[str, Any]:
    """Messages of the active branch, with async subagents attached."""
    from .ingest.loader import load_session_messages
    result = load_session_messages(workspace, session_id, resume_at)

    out: Dict[str, Any] = {
        "session_id": session_id,
        "messages": [_serialize(m) for m in result.messages],
        "total": len(result.messages),
        "skipped_lines": result.skipped_lines,
    }
    if result.error:
        out["error"] = result.error
    return out


def subagent_calls(workspace: str, session_id: str, agent_id: str) -> Dict[str, Any]:
    """Tool calls recorded in one async subagent's sidecar log."""
    from .ingest.loader import load_subagent_tool_calls
    calls = load_subagent_tool_calls(workspace, session_id, agent_id)
    return {
        "agent_id": agent_id,
        "tool_calls": [_serialize(c) for c in calls],
        "total": len(calls),
    }
