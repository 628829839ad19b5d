import json

from batcher.messages import CommandMessage, command, parse_command, parse_completion
from batcher.timing import Phase


def test_parse_completion_from_json():
    raw = json.dumps({"phase": "extract", "target": "alpha", "batch": 3, "finish_time": 1234.5})
    msg = parse_completion(raw)
    assert msg is not None
    assert msg.phase is Phase.EXTRACT
    assert msg.batch == 3
    assert msg.finish_time == 1234.5


def test_parse_completion_accepts_dicts():
    msg = parse_completion({"phase": "stabilize_replenish", "target": "a", "batch": 0, "finish_time": 0})
    assert msg.phase is Phase.STABILIZE_REPLENISH


def test_malformed_completions_are_dropped():
    assert parse_completion("{not json") is None
    assert parse_completion(json.dumps({"phase": "hack", "target": "a", "batch": 0, "finish_time": 0})) is None
    assert parse_completion(json.dumps({"phase": "extract", "target": "a", "batch": -1, "finish_time": 0})) is None
    assert parse_completion(json.dumps({"phase": "extract", "batch": 0, "finish_time": 0})) is None


def test_command_helpers():
    msg = parse_command(command("target", "alpha", 0.25))
    assert isinstance(msg, CommandMessage)
    assert msg.command == "target"
    assert msg.args == ["alpha", 0.25]

    bare = parse_command('{"command": "status"}')
    assert bare.args == []
    assert parse_command('{"args": []}') is None
