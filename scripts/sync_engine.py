#!/usr/bin/env python3
"""
Sync Engine

Pulls whole resource collections (PPP secrets, profiles, address pools...)
from routers and swaps them into the resource cache.

Features:
- Replace only after the router's terminal !done: a failed or interrupted
  sync never blanks or half-updates the cached collection
- Failed syncs keep the last known-good records and flag the entry stale
- One sync at a time per (router, resource kind); a second caller waits
- Routers are synced concurrently, one router's failure never affects another
- Periodic refresher loop for the API server
- Explicit resync-after-write policy for mutating commands

Usage:
    engine = SyncEngine(proxy, store)
    result = await engine.sync_resource("r1", "secrets")
    if not result.ok:
        print(result.error_kind, result.error)

CLI:
    sync_engine.py --config routers.yml --router r1 --resource secrets
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

# Add script directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from cache_store import ResourceCacheStore
from command_proxy import CommandProxy, is_mutation
from router_errors import RouterError, UnknownRouterError

logger = logging.getLogger(__name__)

# Resource kind -> bulk list command
RESOURCE_COMMANDS: Dict[str, str] = {
    "secrets": "/ppp/secret/print",
    "profiles": "/ppp/profile/print",
    "pools": "/ip/pool/print",
    "interfaces": "/interface/print",
    "queues": "/queue/simple/print",
}

# Bulk lists can be large; give them more time than a single command
DEFAULT_SYNC_TIMEOUT = 30.0  # seconds


def register_resource_kind(kind: str, command_path: str) -> None:
    """Make another bulk list command syncable"""
    RESOURCE_COMMANDS[kind] = command_path


def resource_kind_for_command(command_path: str) -> Optional[str]:
    """Cached kind affected by a mutating command, if any.

    /ppp/secret/add -> "secrets", /ip/pool/set -> "pools",
    /ppp/secret/print -> None (not a mutation)
    """
    if not is_mutation(command_path):
        return None
    menu = command_path.rstrip("/").rsplit("/", 1)[0]
    for kind, list_command in RESOURCE_COMMANDS.items():
        if list_command.rsplit("/", 1)[0] == menu:
            return kind
    return None


@dataclass
class SyncResult:
    """Result of one resource sync"""
    router_id: str
    resource_kind: str
    ok: bool
    count: int = 0
    synced_at: Optional[float] = None
    generation: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict:
        if self.ok:
            return {
                "ok": True,
                "serverId": self.router_id,
                "resource": self.resource_kind,
                "count": self.count,
                "syncedAt": self.synced_at,
                "generation": self.generation,
            }
        return {
            "ok": False,
            "serverId": self.router_id,
            "resource": self.resource_kind,
            "error": self.error,
            "kind": self.error_kind,
            "stale": True,
            "generation": self.generation,
        }


class SyncEngine:
    """Only writer of the resource cache"""

    def __init__(
        self,
        proxy: CommandProxy,
        store: ResourceCacheStore,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
    ):
        self.proxy = proxy
        self.store = store
        self.timeout = timeout
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, router_id: str, resource_kind: str) -> asyncio.Lock:
        key = (router_id, resource_kind)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def sync_resource(
        self,
        router_id: str,
        resource_kind: str,
        timeout: Optional[float] = None,
    ) -> SyncResult:
        """Fetch one resource collection and swap it into the cache.

        Raises:
            ValueError: unknown resource kind (checked before any I/O)
            UnknownRouterError: router not registered
        """
        command_path = RESOURCE_COMMANDS.get(resource_kind)
        if command_path is None:
            raise ValueError(f"Unknown resource kind: {resource_kind}")
        if router_id not in self.proxy.manager:
            raise UnknownRouterError(router_id)

        async with self._lock_for(router_id, resource_kind):
            started = time.monotonic()
            try:
                reply = await self.proxy.execute(router_id, command_path, timeout=timeout or self.timeout)
            except RouterError as e:
                entry = await asyncio.to_thread(self.store.mark_stale, router_id, resource_kind, e.message)
                logger.warning(
                    f"[{router_id}] Sync of {resource_kind} failed ({e.kind}): {e.message}; "
                    f"keeping {entry.count} cached records"
                )
                return SyncResult(
                    router_id=router_id,
                    resource_kind=resource_kind,
                    ok=False,
                    generation=entry.generation,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error=e.message,
                    error_kind=e.kind,
                )

            entry = await asyncio.to_thread(self.store.replace, router_id, resource_kind, reply.records)
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"[{router_id}] Synced {entry.count} {resource_kind} in {duration_ms}ms")
            return SyncResult(
                router_id=router_id,
                resource_kind=resource_kind,
                ok=True,
                count=entry.count,
                synced_at=entry.synced_at,
                generation=entry.generation,
                duration_ms=duration_ms,
            )

    async def sync_router(
        self,
        router_id: str,
        kinds: Optional[Sequence[str]] = None,
    ) -> List[SyncResult]:
        """Sync several kinds of one router, one after another"""
        results = []
        for kind in kinds or list(RESOURCE_COMMANDS):
            results.append(await self.sync_resource(router_id, kind))
        return results

    async def sync_all(self, kinds: Optional[Sequence[str]] = None) -> Dict[str, List[SyncResult]]:
        """Sync every registered router concurrently"""
        router_ids = [d.router_id for d in self.proxy.manager.descriptors()]
        outcomes = await asyncio.gather(
            *(self.sync_router(rid, kinds) for rid in router_ids),
            return_exceptions=True,
        )
        results: Dict[str, List[SyncResult]] = {}
        for rid, outcome in zip(router_ids, outcomes):
            if isinstance(outcome, BaseException):
                # Router unregistered mid-run; nothing was written for it
                logger.error(f"[{rid}] Sync aborted: {outcome}")
                results[rid] = []
            else:
                results[rid] = outcome
        return results

    async def resync_after_write(self, router_id: str, command_path: str) -> Optional[SyncResult]:
        """Resync the cached kind a mutating command touched.

        Returns None when the command does not affect a cached kind.
        """
        kind = resource_kind_for_command(command_path)
        if kind is None:
            return None
        return await self.sync_resource(router_id, kind)

    async def run_periodic(
        self,
        interval: float,
        stop_event: asyncio.Event,
        kinds: Optional[Sequence[str]] = None,
    ) -> None:
        """Refresh every router every ``interval`` seconds until stopped"""
        logger.info(f"Periodic sync started (interval={interval}s)")
        while not stop_event.is_set():
            results = await self.sync_all(kinds)
            failed = sum(1 for rs in results.values() for r in rs if not r.ok)
            if failed:
                logger.warning(f"Periodic sync finished with {failed} failed resources")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Periodic sync stopped")


def main():
    from gateway_config import GatewayConfig, load_router_descriptors
    from log_config import setup_logging
    from routeros_client import ConnectionManager

    parser = argparse.ArgumentParser(description="Sync router resources into the gateway cache")
    parser.add_argument("--config", "-c", help="Routers YAML file (default: $ROUTERS_CONFIG)")
    parser.add_argument("--router", "-r", help="Router id (default: all routers)")
    parser.add_argument("--resource", "-k", action="append", choices=sorted(RESOURCE_COMMANDS),
                        help="Resource kind, repeatable (default: all kinds)")
    parser.add_argument("--db", help="Cache database path (default: $ROUTER_GATEWAY_DB_PATH)")
    args = parser.parse_args()

    setup_logging()
    config = GatewayConfig.from_env()
    routers_file = args.config or config.routers_config
    if not routers_file:
        print("[sync] ERROR: no routers config (use --config or ROUTERS_CONFIG)", file=sys.stderr)
        sys.exit(1)

    async def run() -> int:
        manager = ConnectionManager(idle_timeout=config.idle_timeout)
        for descriptor in load_router_descriptors(routers_file, config.default_timeout):
            manager.register(descriptor)
        engine = SyncEngine(CommandProxy(manager), ResourceCacheStore(args.db or config.db_path), config.sync_timeout)
        try:
            if args.router:
                results = {args.router: await engine.sync_router(args.router, args.resource)}
            else:
                results = await engine.sync_all(args.resource)
        finally:
            await manager.shutdown()
        print(json.dumps({rid: [r.to_dict() for r in rs] for rid, rs in results.items()}, indent=2))
        return 0 if all(r.ok for rs in results.values() for r in rs) else 1

    try:
        sys.exit(asyncio.run(run()))
    except Exception as e:
        print(f"[sync] ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
