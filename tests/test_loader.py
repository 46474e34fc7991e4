"""Tests for sessionloom.ingest.loader — full session load with subagent replay."""

import json

import pytest

from sessionloom.core.config import Config
from sessionloom.core.models import Record
from sessionloom.ingest.discovery import encode_workspace_path
from sessionloom.ingest.loader import (
    load_session_messages,
    load_subagent_tool_calls,
    pair_tool_calls,
)

WORKSPACE = "/Users/test/vault"


@pytest.fixture
def cfg(tmp_path):
    return Config(projects_dir=str(tmp_path / "projects"))


def _write_jsonl(path, lines):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(l if isinstance(l, str) else json.dumps(l) for l in lines) + "\n")


def _session(cfg, session_id, lines):
    path = cfg.resolved_projects_dir / encode_workspace_path(WORKSPACE) / f"{session_id}.jsonl"
    _write_jsonl(path, lines)
    return path


def _sidecar(cfg, session_id, agent_id, lines):
    path = (
        cfg.resolved_projects_dir / encode_workspace_path(WORKSPACE)
        / session_id / "subagents" / f"agent-{agent_id}.jsonl"
    )
    _write_jsonl(path, lines)


def _user(uuid, text, parent=None, ts="2024-01-15T10:00:00Z"):
    return {"type": "user", "uuid": uuid, "parentUuid": parent, "timestamp": ts, "message": {"content": text}}


def _assistant(uuid, blocks, parent=None, ts="2024-01-15T10:01:00Z"):
    return {"type": "assistant", "uuid": uuid, "parentUuid": parent, "timestamp": ts, "message": {"content": blocks}}


def _task_use(run_in_background, task_id="task-1"):
    return {
        "type": "tool_use",
        "id": task_id,
        "name": "Task",
        "input": {"description": "Review code", "prompt": "Check for bugs", "run_in_background": run_in_background},
    }


def _tool_result(uuid, tool_use_id, content, tool_use_result=None, parent=None, ts="2024-01-15T10:01:01Z"):
    data = {
        "type": "user",
        "uuid": uuid,
        "parentUuid": parent,
        "timestamp": ts,
        "message": {"content": [{"type": "tool_result", "tool_use_id": tool_use_id, "content": content}]},
    }
    if tool_use_result is not None:
        data["toolUseResult"] = tool_use_result
    return data


def _notification(task_id, result, status="completed"):
    return {
        "type": "queue-operation",
        "operation": "enqueue",
        "content": (
            f"<task-notification><task-id>{task_id}</task-id><status>{status}</status>"
            f"<summary>Agent completed</summary><result>{result}</result></task-notification>"
        ),
    }


def _task_call(result):
    for message in result.messages:
        for call in message.tool_calls:
            if call.name == "Task":
                return call
    raise AssertionError("no Task call")


# ── Async subagent hydration ─────────────────────────────────────────────────


class TestAsyncHydration:
    def test_notification_completes_subagent(self, cfg):
        _session(cfg, "session-async", [
            _user("u1", "Run background task"),
            _assistant("a1", [_task_use(True)], parent="u1"),
            _tool_result("u2", "task-1", "Task launched in background.", {
                "isAsync": True, "agentId": "ae5eb9a", "status": "async_launched",
                "outputFile": "/tmp/agent.output",
            }, parent="a1"),
            _notification("ae5eb9a", "Found 3 issues:\n1. Missing error handling\n3. Race condition"),
            _assistant("a2", [{"type": "text", "text": "The review found 3 issues."}],
                       parent="u2", ts="2024-01-15T10:05:00Z"),
        ])

        result = load_session_messages(WORKSPACE, "session-async", config=cfg)
        call = _task_call(result)

        assert call.subagent.mode == "async"
        assert call.subagent.agent_id == "ae5eb9a"
        assert call.subagent.status == "completed"
        assert call.subagent.async_status == "completed"
        assert "Found 3 issues" in call.subagent.result
        assert "Race condition" in call.subagent.result
        assert "Found 3 issues" in call.result
        assert call.status == "completed"

    def test_no_notification_keeps_inline_result(self, cfg):
        _session(cfg, "session-no-queue", [
            _user("u1", "Run task"),
            _assistant("a1", [_task_use(True)], parent="u1"),
            _tool_result("u2", "task-1", "Task launched.", {"isAsync": True, "agentId": "abc123"}, parent="a1"),
        ])

        call = _task_call(load_session_messages(WORKSPACE, "session-no-queue", config=cfg))
        assert call.subagent.agent_id == "abc123"
        assert call.subagent.async_status == "running"
        assert call.subagent.result == "Task launched."
        assert call.result == "Task launched."

    def test_sync_task_has_no_subagent(self, cfg):
        _session(cfg, "session-sync", [
            _user("u1", "Run sync task"),
            _assistant("a1", [_task_use(False)], parent="u1"),
            _tool_result("u2", "task-1", "Sync result", {}, parent="a1"),
        ])

        call = _task_call(load_session_messages(WORKSPACE, "session-sync", config=cfg))
        assert call.subagent is None
        assert call.result == "Sync result"

    def test_sidecar_tool_calls_attached(self, cfg):
        _session(cfg, "session-sidecar", [
            _user("u1", "Review"),
            _assistant("a1", [_task_use(True)], parent="u1"),
            _tool_result("u2", "task-1", "Launched", {"isAsync": True, "agentId": "ae5eb9a"}, parent="a1"),
            _notification("ae5eb9a", "Done reviewing"),
        ])
        _sidecar(cfg, "session-sidecar", "ae5eb9a", [
            {"type": "assistant", "timestamp": "2024-01-15T10:02:00Z", "message": {"content": [
                {"type": "tool_use", "id": "sub-tool-1", "name": "Grep", "input": {"pattern": "TODO"}},
            ]}},
            {"type": "user", "timestamp": "2024-01-15T10:02:01Z", "message": {"content": [
                {"type": "tool_result", "tool_use_id": "sub-tool-1", "content": "3 matches found"},
            ]}},
        ])

        call = _task_call(load_session_messages(WORKSPACE, "session-sidecar", config=cfg))
        assert call.subagent.result == "Done reviewing"
        assert len(call.subagent.tool_calls) == 1
        assert call.subagent.tool_calls[0].name == "Grep"
        assert call.subagent.tool_calls[0].result == "3 matches found"
        assert call.subagent.tool_calls[0].status == "completed"

    def test_agent_output_call_completes_subagent(self, cfg):
        _session(cfg, "session-output", [
            _user("u1", "Review"),
            _assistant("a1", [_task_use(True)], parent="u1"),
            _tool_result("u2", "task-1", "Launched", {"isAsync": True, "agentId": "abc123"}, parent="a1"),
            _assistant("a2", [{"type": "tool_use", "id": "out-1", "name": "TaskOutput",
                               "input": {"task_id": "abc123"}}], parent="u2", ts="2024-01-15T10:03:00Z"),
            _tool_result("u3", "out-1", json.dumps({"status": "completed", "result": "All clear"}),
                         parent="a2", ts="2024-01-15T10:03:01Z"),
        ])

        call = _task_call(load_session_messages(WORKSPACE, "session-output", config=cfg))
        assert call.subagent.status == "completed"
        assert call.subagent.result == "All clear"
        assert call.result == "All clear"

    def test_failed_notification_marks_error(self, cfg):
        _session(cfg, "session-failed", [
            _user("u1", "Review"),
            _assistant("a1", [_task_use(True)], parent="u1"),
            _tool_result("u2", "task-1", "Launched", {"isAsync": True, "agentId": "abc123"}, parent="a1"),
            _notification("abc123", "Crashed", status="failed"),
        ])

        call = _task_call(load_session_messages(WORKSPACE, "session-failed", config=cfg))
        assert call.subagent.status == "error"
        assert call.status == "error"
        assert call.result == "Crashed"


# ── Branches, resume, and failures ───────────────────────────────────────────


class TestLoadSession:
    def test_active_branch_only(self, cfg):
        _session(cfg, "branched", [
            _user("u1", "first"),
            _assistant("a1", [{"type": "text", "text": "reply 1"}], parent="u1"),
            _user("u2", "abandoned", parent="a1", ts="2024-01-15T10:02:00Z"),
            _assistant("a2", [{"type": "text", "text": "abandoned reply"}], parent="u2", ts="2024-01-15T10:03:00Z"),
            _user("u3", "retry", parent="a1", ts="2024-01-15T10:04:00Z"),
            _assistant("a3", [{"type": "text", "text": "retry reply"}], parent="u3", ts="2024-01-15T10:05:00Z"),
        ])

        result = load_session_messages(WORKSPACE, "branched", config=cfg)
        assert [m.content for m in result.messages] == ["first", "reply 1", "retry", "retry reply"]
        assert result.error is None

    def test_resume_at_truncates(self, cfg):
        _session(cfg, "linear", [
            _user("u1", "first"),
            _assistant("a1", [{"type": "text", "text": "reply 1"}], parent="u1"),
            _user("u2", "second", parent="a1", ts="2024-01-15T10:02:00Z"),
            _assistant("a2", [{"type": "text", "text": "reply 2"}], parent="u2", ts="2024-01-15T10:03:00Z"),
        ])

        result = load_session_messages(WORKSPACE, "linear", "a1", config=cfg)
        assert [m.content for m in result.messages] == ["first", "reply 1"]

    @pytest.mark.parametrize("run_in_background", [False, None])
    def test_deeply_nested_task_result(self, cfg, run_in_background):
        nested = "[" * 100000
        task = _task_use(run_in_background)
        if run_in_background is None:
            del task["input"]["run_in_background"]
        _session(cfg, "nested", [
            _user("u1", "Run task"),
            _assistant("a1", [task], parent="u1"),
            _tool_result("u2", "task-1", nested, parent="a1"),
        ])

        result = load_session_messages(WORKSPACE, "nested", config=cfg)
        call = _task_call(result)
        assert result.error is None
        assert call.result == nested
        assert call.subagent is None

    def test_skipped_lines_counted(self, cfg):
        _session(cfg, "corrupt", [
            _user("u1", "hello"),
            "{not json",
            "[1, 2]",
        ])

        result = load_session_messages(WORKSPACE, "corrupt", config=cfg)
        assert result.skipped_lines == 2
        assert [m.content for m in result.messages] == ["hello"]

    def test_missing_session_is_empty(self, cfg):
        result = load_session_messages(WORKSPACE, "does-not-exist", config=cfg)
        assert result.messages == []
        assert result.error is None

    def test_invalid_session_id(self, cfg):
        result = load_session_messages(WORKSPACE, "../escape", config=cfg)
        assert result.messages == []
        assert "Invalid session ID" in result.error

    def test_unreadable_log_reports_error(self, cfg):
        path = cfg.resolved_projects_dir / encode_workspace_path(WORKSPACE) / "broken.jsonl"
        path.mkdir(parents=True)

        result = load_session_messages(WORKSPACE, "broken", config=cfg)
        assert result.messages == []
        assert result.error


# ── Sidecar pairing ──────────────────────────────────────────────────────────


class TestSidecars:
    def test_pair_ignores_orphan_results(self):
        records = [
            Record.from_dict({"type": "user", "message": {"content": [
                {"type": "tool_result", "tool_use_id": "missing", "content": "stray"},
            ]}}),
            Record.from_dict({"type": "assistant", "message": {"content": [
                {"type": "tool_use", "id": "c1", "name": "Read", "input": {"file_path": "a.py"}},
                {"type": "tool_use", "id": "c2", "name": "Bash"},
            ]}}),
            Record.from_dict({"type": "user", "message": {"content": [
                {"type": "tool_result", "tool_use_id": "c2", "content": "boom", "is_error": True},
            ]}}),
        ]

        calls = pair_tool_calls(records)
        assert [c.id for c in calls] == ["c1", "c2"]
        assert calls[0].status == "running"
        assert calls[0].input == {"file_path": "a.py"}
        assert calls[1].status == "error"
        assert calls[1].result == "boom"

    def test_missing_sidecar_is_empty(self, cfg):
        assert load_subagent_tool_calls(WORKSPACE, "s1", "nope", cfg) == []

    def test_invalid_agent_id(self, cfg):
        assert load_subagent_tool_calls(WORKSPACE, "s1", "../x", cfg) == []
