#!/usr/bin/env python3
"""
Command Proxy

Validates a single structured command and forwards it to the connection
manager for a named router. Used for read-now queries and for every
mutating command (add/set/remove).

The proxy has no caching side effect: a mutation does NOT refresh the
resource cache. Callers that mutate a cached resource kind must trigger
a resync themselves (see sync_engine.SyncEngine.resync_after_write).

Values come back exactly as the router sent them (strings). Callers that
need numbers convert explicitly.
"""

import logging
import re
from typing import Any, List, Mapping, Optional, Sequence

from routeros_client import CommandReply, CommandRequest, ConnectionManager

logger = logging.getLogger(__name__)

# /ppp/secret/print, /ip/hotspot/active/remove, /interface/monitor-traffic
COMMAND_PATH_PATTERN = re.compile(r"^(/[A-Za-z0-9_.\-]+)+$")
ARG_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")

# Prefixes of non-path words a raw command may carry
ALLOWED_WORD_PREFIXES = ("=", "?", ".")

# Last path segments that change router state
MUTATING_ACTIONS = {
    "add", "set", "remove", "enable", "disable", "unset",
    "edit", "move", "reset", "reset-counters", "comment",
}

MAX_WORDS = 256


def validate_command_path(command_path: str) -> str:
    """Check a command path like /ppp/secret/print

    Raises:
        ValueError: path is empty, not /-rooted or contains spaces
    """
    if not isinstance(command_path, str) or not COMMAND_PATH_PATTERN.match(command_path):
        raise ValueError(f"Invalid command path: {command_path!r}")
    return command_path


def format_value(value: Any) -> str:
    """Render an argument value the way RouterOS expects it"""
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def normalize_args(args: Optional[Mapping[str, Any]]) -> dict:
    """Stringify argument values, drop None values, validate keys"""
    result = {}
    for key, value in (args or {}).items():
        if not isinstance(key, str) or not ARG_KEY_PATTERN.match(key):
            raise ValueError(f"Invalid argument name: {key!r}")
        if value is None:
            continue
        result[key] = format_value(value)
    return result


def validate_words(words: Sequence[str]) -> List[str]:
    """Validate a raw word list as sent by the dashboard.

    The first word is the command path; the rest must be attribute
    (=k=v), query (?...) or API (.tag=...) words.
    """
    if isinstance(words, str):
        words = [words]
    words = list(words)
    if not words:
        raise ValueError("Command must contain at least one word")
    if len(words) > MAX_WORDS:
        raise ValueError(f"Too many words: {len(words)}")
    validate_command_path(words[0])
    for word in words[1:]:
        if not isinstance(word, str) or not word:
            raise ValueError(f"Invalid word: {word!r}")
        if not word.startswith(ALLOWED_WORD_PREFIXES):
            raise ValueError(f"Word must start with '=', '?' or '.': {word!r}")
        if word.startswith(".tag="):
            raise ValueError("Tags are assigned by the gateway")
    return words


def is_mutation(command_path: str) -> bool:
    """True if the command changes router state"""
    action = command_path.rstrip("/").rsplit("/", 1)[-1]
    return action in MUTATING_ACTIONS


class CommandProxy:
    """Forward validated commands through the connection manager"""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def execute(
        self,
        router_id: str,
        command_path: str,
        args: Optional[Mapping[str, Any]] = None,
        queries: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandReply:
        """Run one command on ``router_id``.

        Raises:
            ValueError: invalid path or argument name
            UnknownRouterError: router not registered
            CommandError: router rejected the command (!trap)
            NetworkError / AuthError / RouterTimeoutError / ProtocolError
        """
        validate_command_path(command_path)
        request = CommandRequest.build(router_id, command_path, normalize_args(args), queries)
        return await self._forward(request, timeout)

    async def execute_words(
        self,
        router_id: str,
        words: Sequence[str],
        timeout: Optional[float] = None,
    ) -> CommandReply:
        """Run a raw word list, e.g. ["/ppp/active/print", "?name=bob"]"""
        request = CommandRequest(router_id, tuple(validate_words(words)))
        return await self._forward(request, timeout)

    async def _forward(self, request: CommandRequest, timeout: Optional[float]) -> CommandReply:
        if is_mutation(request.command_path):
            logger.info(f"[{request.router_id}] {request.command_path} ({len(request.words) - 1} args)")
        else:
            logger.debug(f"[{request.router_id}] {request.command_path}")
        return await self.manager.call(request.router_id, request, timeout)
