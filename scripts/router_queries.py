#!/usr/bin/env python3
"""
Dashboard router queries

Typed helpers over CommandProxy for the commands the dashboard issues
live: system resource, interface traffic, active PPP sessions and the
PPP secret/profile writes.

Writes go live and leave the cache untouched; resync the matching
resource kind afterwards if the dashboard reads it from the cache.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from command_proxy import CommandProxy
from routeros_client import CommandReply


@dataclass
class SystemResource:
    """Subset of /system/resource/print"""
    uptime: str = "0s"
    version: str = "Unknown"
    cpu_load: int = 0
    free_memory: int = 0
    total_memory: int = 0
    board_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime": self.uptime,
            "version": self.version,
            "cpu-load": self.cpu_load,
            "free-memory": self.free_memory,
            "total-memory": self.total_memory,
            "board-name": self.board_name,
        }


@dataclass
class InterfaceTraffic:
    """One /interface/monitor-traffic sample"""
    name: str
    rx_bits_per_second: int = 0
    tx_bits_per_second: int = 0

    @property
    def rx_bytes_per_second(self) -> float:
        return self.rx_bits_per_second / 8

    @property
    def tx_bytes_per_second(self) -> float:
        return self.tx_bits_per_second / 8


def to_int(value: Optional[str], default: int = 0) -> int:
    """Convert a RouterOS numeric string, tolerating missing values"""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _without_empty(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None and v != ""}


async def get_system_resource(proxy: CommandProxy, router_id: str) -> SystemResource:
    reply = await proxy.execute(router_id, "/system/resource/print")
    record = reply.records[0] if reply.records else {}
    return SystemResource(
        uptime=record.get("uptime") or "0s",
        version=record.get("version") or "Unknown",
        cpu_load=to_int(record.get("cpu-load")),
        free_memory=to_int(record.get("free-memory")),
        total_memory=to_int(record.get("total-memory")),
        board_name=record.get("board-name"),
    )


async def get_interface_traffic(
    proxy: CommandProxy, router_id: str, interface: str = "ether1"
) -> InterfaceTraffic:
    """Single traffic sample (monitor-traffic with =once)"""
    reply = await proxy.execute_words(
        router_id, ["/interface/monitor-traffic", f"=interface={interface}", "=once="]
    )
    record = reply.records[0] if reply.records else {}
    return InterfaceTraffic(
        name=interface,
        rx_bits_per_second=to_int(record.get("rx-bits-per-second")),
        tx_bits_per_second=to_int(record.get("tx-bits-per-second")),
    )


async def get_active_sessions(
    proxy: CommandProxy, router_id: str, username: Optional[str] = None
) -> List[Dict[str, str]]:
    queries = [f"?name={username}"] if username else None
    reply = await proxy.execute(router_id, "/ppp/active/print", queries=queries)
    return reply.records


async def count_active_sessions(proxy: CommandProxy, router_id: str) -> int:
    return len(await get_active_sessions(proxy, router_id))


# ============ PPP secrets ============

async def add_ppp_secret(proxy: CommandProxy, router_id: str, data: Mapping[str, Any]) -> CommandReply:
    return await proxy.execute(router_id, "/ppp/secret/add", data)


async def update_ppp_secret(
    proxy: CommandProxy, router_id: str, item_id: str, data: Mapping[str, Any]
) -> CommandReply:
    return await proxy.execute(router_id, "/ppp/secret/set", {".id": item_id, **data})


async def toggle_ppp_secret(
    proxy: CommandProxy, router_id: str, item_id: str, disabled: bool
) -> CommandReply:
    return await proxy.execute(router_id, "/ppp/secret/set", {".id": item_id, "disabled": disabled})


async def remove_ppp_secret(proxy: CommandProxy, router_id: str, item_id: str) -> CommandReply:
    return await proxy.execute(router_id, "/ppp/secret/remove", {".id": item_id})


# ============ PPP profiles ============

async def add_ppp_profile(proxy: CommandProxy, router_id: str, data: Mapping[str, Any]) -> CommandReply:
    return await proxy.execute(router_id, "/ppp/profile/add", _without_empty(data))


async def update_ppp_profile(
    proxy: CommandProxy, router_id: str, item_id: str, data: Mapping[str, Any]
) -> CommandReply:
    return await proxy.execute(router_id, "/ppp/profile/set", {".id": item_id, **_without_empty(data)})


async def remove_ppp_profile(proxy: CommandProxy, router_id: str, item_id: str) -> CommandReply:
    return await proxy.execute(router_id, "/ppp/profile/remove", {".id": item_id})
