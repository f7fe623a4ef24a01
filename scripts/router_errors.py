#!/usr/bin/env python3
"""
RouterOS gateway error taxonomy

Every failure raised by the gateway core is a RouterError. The ``kind``
attribute is what the HTTP layer reports so the dashboard can tell
"router unreachable" from "router rejected the command" from "timed out".

    NetworkError        socket connect/read/write failure (retried once)
    AuthError           login rejected by the router (never retried)
    RouterTimeoutError  operation exceeded its deadline (session invalidated)
    ProtocolError       malformed frame from the router (session invalidated)
    CommandError        the router's own !trap reply, message kept verbatim
"""

from typing import Optional


class RouterError(Exception):
    """Base class for gateway errors"""
    kind = "error"

    def __init__(self, message: str, router_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.router_id = router_id

    def to_dict(self) -> dict:
        data = {"error": self.message, "kind": self.kind}
        if self.router_id:
            data["serverId"] = self.router_id
        return data


class NetworkError(RouterError):
    """Socket-level failure (renamed to avoid shadowing built-in ConnectionError)"""
    kind = "network"


class AuthError(RouterError):
    """Credentials rejected during login"""
    kind = "auth"


class RouterTimeoutError(RouterError, TimeoutError):
    """Deadline exceeded (still catchable as the built-in TimeoutError)"""
    kind = "timeout"


class ProtocolError(RouterError):
    """Malformed or truncated sentence from the router"""
    kind = "protocol"


class CommandError(RouterError):
    """Command delivered and rejected by the router (!trap)"""
    kind = "command"

    def __init__(
        self,
        message: str,
        router_id: Optional[str] = None,
        category: Optional[str] = None,
        command: Optional[str] = None,
    ):
        super().__init__(message, router_id)
        self.category = category
        self.command = command

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.category is not None:
            data["category"] = self.category
        if self.command:
            data["command"] = self.command
        return data


class UnknownRouterError(KeyError):
    """No descriptor registered for the router id"""

    def __init__(self, router_id: str):
        super().__init__(router_id)
        self.router_id = router_id

    def __str__(self) -> str:
        return f"Unknown router: {self.router_id}"
