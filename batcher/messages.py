"""
Wire format of the two channels.

Completion messages are written by batch phases when they finish:
    {"phase": "extract", "target": "n00dles", "batch": 12, "finish_time": 183220.0}

Commands are written by operators or other tools:
    {"command": "target", "args": ["n00dles", 0.25]}
"""
from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .timing import Phase

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

KNOWN_COMMANDS = ("target", "rescan", "servers", "status", "stop")


class CompletionMessage(BaseModel):
    phase: Phase = Field(..., description="Batch phase that just finished.")
    target: str = Field(..., min_length=1, description="Target the phase ran against.")
    batch: int = Field(..., ge=0, description="Batch index assigned at dispatch.")
    finish_time: float = Field(..., description="Clock value (ms) when the phase finished.")


class CommandMessage(BaseModel):
    command: str = Field(..., min_length=1)
    args: List[Any] = Field(default_factory=list)


def _load(raw: Union[str, bytes, dict]) -> Any:
    if isinstance(raw, dict):
        return raw
    return json.loads(raw)


def parse_completion(raw: Union[str, bytes, dict]) -> Optional[CompletionMessage]:
    """Parse a completion message; None (logged) when malformed."""
    try:
        return CompletionMessage.model_validate(_load(raw))
    except (ValidationError, ValueError, TypeError) as e:
        logger.warning("[message] dropped malformed completion %r: %s", raw, e)
        return None


def parse_command(raw: Union[str, bytes, dict]) -> Optional[CommandMessage]:
    try:
        return CommandMessage.model_validate(_load(raw))
    except (ValidationError, ValueError, TypeError) as e:
        logger.warning("[message] dropped malformed command %r: %s", raw, e)
        return None


def encode(message: BaseModel) -> str:
    return message.model_dump_json()


def command(name: str, *args: Any) -> str:
    return encode(CommandMessage(command=name, args=list(args)))


__all__ = [
    "KNOWN_COMMANDS",
    "CompletionMessage",
    "CommandMessage",
    "parse_completion",
    "parse_command",
    "encode",
    "command",
]
