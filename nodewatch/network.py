"""Reachability probing, neighbour-cache lookup and Wake-on-LAN."""

from __future__ import annotations

import asyncio
import functools
import ipaddress
import logging
import platform
import re
import socket
from pathlib import Path

from wakeonlan import send_magic_packet

logger = logging.getLogger(__name__)

PING_TIMEOUT_SECONDS = 2
LOOKUP_TIMEOUT_SECONDS = 5.0
WOL_PORT = 9

PROC_NET_ARP = Path("/proc/net/arp")
INCOMPLETE_MAC = "00:00:00:00:00:00"

_MAC_RE = re.compile(r"\b([0-9A-Fa-f]{1,2}(?:[:-][0-9A-Fa-f]{1,2}){5})\b")

# Detached wake tasks; the event loop only keeps weak references.
_wake_tasks: set[asyncio.Task[None]] = set()


# -----------------------------------------------------------------------------
# Liveness probe
# -----------------------------------------------------------------------------


def ping_command(address: str, count: int, timeout: int = PING_TIMEOUT_SECONDS) -> list[str]:
    """Build the platform ping invocation for ``count`` echo requests."""
    system = platform.system()
    if system == "Windows":
        return ["ping", "-n", str(count), "-w", str(timeout * 1000), address]
    if system in ("Darwin", "FreeBSD", "OpenBSD", "NetBSD"):
        # BSD -t is the overall deadline, not a per-reply wait.
        return ["ping", "-c", str(count), "-t", str(timeout * count), address]
    return ["ping", "-c", str(count), "-W", str(timeout), address]


async def probe(address: str, min_reply: int = 1, timeout: int = PING_TIMEOUT_SECONDS) -> bool:
    """Return True when ``address`` answers at least one of ``min_reply`` pings.

    Raises OSError when the ping binary cannot be started and TimeoutError
    when ping itself does not exit in time.
    """
    proc = await asyncio.create_subprocess_exec(
        *ping_command(address, min_reply, timeout),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        returncode = await asyncio.wait_for(proc.wait(), timeout=timeout * min_reply + 2)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise TimeoutError(f"ping {address} timed out")
    return returncode == 0


# -----------------------------------------------------------------------------
# Hardware address lookup
# -----------------------------------------------------------------------------


def normalize_mac(raw: str) -> str:
    """Return ``raw`` as lower-case, zero-padded, colon separated octets."""
    octets = re.split(r"[:-]", raw.strip())
    return ":".join(o.zfill(2) for o in octets).lower()


def parse_mac(text: str) -> str | None:
    """Extract the first complete MAC address from neighbour-table output."""
    for match in _MAC_RE.finditer(text):
        mac = normalize_mac(match.group(1))
        if mac != INCOMPLETE_MAC:
            return mac
    return None


def _read_proc_arp(ip: str) -> str | None:
    try:
        lines = PROC_NET_ARP.read_text().splitlines()
    except OSError:
        return None
    for line in lines[1:]:
        parts = line.split()
        # IP address, HW type, Flags, HW address, Mask, Device
        if len(parts) >= 4 and parts[0] == ip:
            return parse_mac(parts[3])
    return None


async def _capture(*cmd: str) -> str:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=LOOKUP_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return ""
    return stdout.decode("utf-8", errors="replace")


async def _to_ip(address: str) -> str:
    try:
        return str(ipaddress.ip_address(address))
    except ValueError:
        pass
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(address, None, family=socket.AF_INET)
    return infos[0][4][0]


async def resolve_mac(address: str) -> str | None:
    """Look up ``address`` in the local ARP/neighbour cache.

    Returns None when there is no complete entry. IP literals (v4 or v6) are
    looked up as given; hostnames are resolved to IPv4 first and a name that
    does not resolve raises socket.gaierror.
    """
    ip = await _to_ip(address)
    system = platform.system()

    if system == "Linux":
        mac = _read_proc_arp(ip)
        if mac:
            return mac
        commands = [("ip", "neigh", "show", ip)]
    elif system == "Windows":
        commands = [("arp", "-a", ip)]
    else:
        commands = [("arp", "-n", ip)]

    for cmd in commands:
        try:
            output = await _capture(*cmd)
        except FileNotFoundError:
            logger.debug("%s not available for neighbour lookup", cmd[0])
            continue
        mac = parse_mac(output)
        if mac:
            return mac
    return None


# -----------------------------------------------------------------------------
# Wake-on-LAN
# -----------------------------------------------------------------------------


async def send_wake(mac: str, broadcast: str = "255.255.255.255", port: int = WOL_PORT) -> None:
    """Send a magic packet to ``mac``. Raises on socket errors."""
    await asyncio.to_thread(send_magic_packet, mac, ip_address=broadcast, port=port)


def _log_wake_result(mac: str, task: asyncio.Task[None]) -> None:
    _wake_tasks.discard(task)
    if task.cancelled():
        logger.debug("Wake for %s cancelled", mac)
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Failed to wake device %s: %s", mac, exc)
    else:
        logger.debug("Magic packet sent to %s", mac)


def wake_detached(
    mac: str, broadcast: str = "255.255.255.255", port: int = WOL_PORT
) -> asyncio.Task[None]:
    """Schedule a wake without waiting for it; the outcome is only logged."""
    task = asyncio.get_running_loop().create_task(send_wake(mac, broadcast, port))
    _wake_tasks.add(task)
    task.add_done_callback(functools.partial(_log_wake_result, mac))
    return task


async def wait_for_wakes(timeout: float = 5.0) -> None:
    """Give outstanding wake tasks a chance to finish before the loop closes."""
    if _wake_tasks:
        await asyncio.wait(set(_wake_tasks), timeout=timeout)
