"""
Commands shared by the CLI and the daemon.

`dispatch` executes one named command against an engine. When a daemon is
running the CLI does not touch the engine itself: `submit` drops a command
file into `command_dir`, the daemon's `drain` dispatches it and writes the
reply to `response_dir`.
"""

import json
import os
import time
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger

from pause_lock.engine import Engine
from pause_lock.errors import InvalidInput, NotFound, TransitionResult
from pause_lock.schema import Schedule, Selection, Source
from pause_lock.settings import Settings
from pause_lock.utils.time import parse_time_string, parse_weekdays


class CommandTimeout(Exception):
    pass


def _selection(args: dict) -> Selection:
    return Selection(
        apps=frozenset(args.get("apps") or []),
        categories=frozenset(args.get("categories") or []),
        web_domains=frozenset(args.get("domains") or []),
    )


def _schedule(args: dict, base: Schedule | None = None) -> Schedule:
    base = base or Schedule()
    weekdays = parse_weekdays(args["days"]) if args.get("days") else base.weekdays
    start = parse_time_string(args["start"]) if args.get("start") else base.start
    end = parse_time_string(args["end"]) if args.get("end") else base.end
    return Schedule(weekdays=set(weekdays), start=start, end=end)


def _tag_source(engine: Engine, ref: str) -> Source:
    tag = engine.controller.find_tag(ref)
    if tag is None:
        raise NotFound(f"tag '{ref}'")
    return Source.tag(tag.id)


def _profile_source(engine: Engine, ref: str) -> Source:
    profile = engine.controller.find_profile(ref)
    if profile is None:
        raise NotFound(f"time profile '{ref}'")
    return Source.profile(profile.id)


def dispatch(engine: Engine, command: str, args: dict[str, Any]) -> dict[str, Any]:
    """Runs one command and returns a JSON-serializable reply."""
    controller = engine.controller
    try:
        if command == "status":
            return {"ok": True, "snapshot": controller.snapshot()}

        if command == "scan":
            result = controller.handle_scan(args["identifier"])
        elif command == "tag_add":
            result = controller.register_tag(args["name"], args["identifier"])
        elif command == "tag_link":
            result = controller.link_selection(_tag_source(engine, args["ref"]), _selection(args))
        elif command == "tag_remove":
            result = controller.delete_source(_tag_source(engine, args["ref"]))
        elif command == "profile_add":
            result = controller.create_profile(
                args["name"], _schedule(args), enabled=args.get("enabled", True)
            )
        elif command == "profile_link":
            result = controller.link_selection(
                _profile_source(engine, args["ref"]), _selection(args)
            )
        elif command == "profile_schedule":
            source = _profile_source(engine, args["ref"])
            current = controller.get_profile(source.id)
            result = controller.update_schedule(source.id, _schedule(args, current.schedule))
        elif command == "profile_toggle":
            result = controller.toggle_profile_enabled(_profile_source(engine, args["ref"]).id)
        elif command == "profile_remove":
            result = controller.delete_source(_profile_source(engine, args["ref"]))
        else:
            result = TransitionResult.rejected(InvalidInput(f"Unknown command '{command}'."))
    except (NotFound, InvalidInput) as e:
        result = TransitionResult.rejected(e)
    except (KeyError, ValueError) as e:
        result = TransitionResult.rejected(InvalidInput(f"Bad arguments for {command}: {e}"))

    reply = result.to_dict()
    if result.source is not None:
        reply["name"] = controller.name_of(result.source)
    return reply


def _write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w") as f:
        json.dump(data, f, default=str)
    os.replace(tmp, path)


def submit(settings: Settings, command: str, args: dict[str, Any]) -> dict[str, Any]:
    """Sends a command to the running daemon and waits for its reply."""
    request_id = f"{time.time_ns()}-{uuid4().hex[:8]}"
    _write_json(
        settings.command_dir / f"{request_id}.json",
        {"id": request_id, "command": command, "args": args},
    )

    response_path = settings.response_dir / f"{request_id}.json"
    deadline = time.time() + settings.command_timeout_seconds
    while time.time() < deadline:
        if response_path.exists():
            with open(response_path) as f:
                reply = json.load(f)
            response_path.unlink(missing_ok=True)
            return reply
        time.sleep(0.1)

    (settings.command_dir / f"{request_id}.json").unlink(missing_ok=True)
    raise CommandTimeout(f"Daemon did not answer '{command}' within {settings.command_timeout_seconds:g}s")


def drain(engine: Engine) -> int:
    """Dispatches every pending command file in arrival order."""
    command_dir = engine.settings.command_dir
    if not command_dir.exists():
        return 0

    handled = 0
    for path in sorted(command_dir.glob("*.json")):
        try:
            with open(path) as f:
                request = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Dropping unreadable command {path.name}: {e}")
            continue
        finally:
            path.unlink(missing_ok=True)

        command = request.get("command", "")
        logger.debug(f"Handling command {command} ({request.get('id')})")
        reply = dispatch(engine, command, request.get("args") or {})
        _write_json(engine.settings.response_dir / f"{request.get('id', path.stem)}.json", reply)
        handled += 1
    return handled

