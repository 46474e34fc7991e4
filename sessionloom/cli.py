#!/usr/bin/env python3
"""
sessionloom — conversation log reader CLI

Usage:
    sessionloom load <workspace> <session_id> [--resume-at UUID]
                                          Messages of the active branch
    sessionloom subagent <workspace> <session_id> <agent_id>
                                          Tool calls of a background agent
    sessionloom sessions [--project PATH] Find session logs on disk
    sessionloom encode <workspace>        Project directory name for a path
    sessionloom status                    Config diagnostics
    sessionloom config <key> <value>      Set a config value
"""

from __future__ import annotations

import json
import logging
import sys


def _json_out(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def cmd_load(args):
    from sessionloom.api import load
    positional = [a for a in args if not a.startswith("-") and a != _get_opt(args, "--resume-at")]
    if len(positional) < 2:
        _err("Usage: sessionloom load <workspace> <session_id> [--resume-at UUID]")

    result = load(positional[0], positional[1], resume_at=_get_opt(args, "--resume-at"))
    if "error" in result:
        _err(result["error"])
    if result["skipped_lines"]:
        print(f"  skipped {result['skipped_lines']} malformed line(s)", file=sys.stderr)
    _json_out(result)


def cmd_subagent(args):
    from sessionloom.api import subagent_calls
    if len(args) < 3:
        _err("Usage: sessionloom subagent <workspace> <session_id> <agent_id>")
    _json_out(subagent_calls(args[0], args[1], args[2]))


def cmd_sessions(args):
    from sessionloom.api import sessions
    project = _get_opt(args, "--project")
    items = sessions(project=project)
    print(f"  found {len(items)} sessions", file=sys.stderr)
    _json_out(items)


def cmd_encode(args):
    from sessionloom.api import encode
    if not args:
        _err("Usage: sessionloom encode <workspace>")
    print(encode(args[0])["encoded"])


def cmd_status(args):
    from sessionloom.api import status
    result = status()
    print(f"  config:   {result['config_path']}{'' if result['config_exists'] else ' (defaults)'}")
    print(f"  projects: {result['projects_dir']}{'' if result['projects_dir_exists'] else ' (missing)'}")
    print(f"  tmp:      {', '.join(result['trusted_tmp_roots']) or '-'}")
    print(f"  log:      {result['log_level']}")


def cmd_config(args):
    from sessionloom.api import set_config
    if len(args) < 2:
        _err("Usage: sessionloom config <key> <value>")
    _json_out(set_config(args[0], args[1]))


COMMANDS = {
    "load": cmd_load,
    "subagent": cmd_subagent,
    "sessions": cmd_sessions,
    "encode": cmd_encode,
    "status": cmd_status,
    "config": cmd_config,
}


def _get_opt(args, flag):
    """Extract value after a flag from args list."""
    if flag in args:
        idx = args.index(flag)
        if idx + 1 < len(args):
            return args[idx + 1]
    return None


def _err(msg):
    print(msg, file=sys.stderr)
    sys.exit(1)


def _setup_logging():
    from sessionloom.core.config import Config
    level = Config.load().log_level
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main():
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help", "help"):
        print(__doc__.strip())
        sys.exit(0)

    cmd = sys.argv[1]
    handler = COMMANDS.get(cmd)
    if not handler:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        print(f"Available: {', '.join(COMMANDS.keys())}", file=sys.stderr)
        sys.exit(1)

    _setup_logging()
    handler(sys.argv[2:])


if __name__ == "__main__":
    main()
