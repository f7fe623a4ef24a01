#!/usr/bin/env python3
"""Active-session terminator

Force-closes a subscriber's live PPP session on a router so credential or
profile changes take effect immediately. Always queries the router live.
"""
import logging
from typing import List

from command_proxy import CommandProxy
from router_errors import CommandError

logger = logging.getLogger(__name__)

ACTIVE_PRINT = "/ppp/active/print"
ACTIVE_REMOVE = "/ppp/active/remove"


class ActiveSessionTerminator:
    """Look up and remove /ppp/active entries by username"""

    def __init__(self, proxy: CommandProxy):
        self.proxy = proxy

    async def _active_ids(self, router_id: str, username: str) -> List[str]:
        reply = await self.proxy.execute(router_id, ACTIVE_PRINT, queries=[f"?name={username}"])
        return [r[".id"] for r in reply.records if r.get(".id")]

    async def disconnect_active(self, router_id: str, username: str) -> int:
        """Disconnect every active session of ``username``.

        Returns:
            Number of sessions removed; 0 when the user is not connected,
            including when the session ended between lookup and removal

        Raises:
            ValueError: empty username
            RouterError: the query or the removal itself failed
        """
        if not username:
            raise ValueError("username is required")

        ids = await self._active_ids(router_id, username)
        if not ids:
            logger.debug(f"[{router_id}] No active session for {username}")
            return 0

        # RouterOS accepts a comma-separated id list in one remove
        try:
            await self.proxy.execute(router_id, ACTIVE_REMOVE, {".id": ",".join(ids)})
        except CommandError as e:
            if await self._active_ids(router_id, username):
                raise
            logger.debug(f"[{router_id}] {username} disconnected before removal: {e.message}")
            return 0
        logger.info(f"[{router_id}] Disconnected {len(ids)} active session(s) of {username}")
        return len(ids)
