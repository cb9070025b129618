"""Tests for the probe, neighbour-cache and Wake-on-LAN adapters."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nodewatch import network


def _run_async(coro) -> Any:
    """Helper to run async function in sync context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestMacParsing:
    """Tests for MAC extraction from neighbour-table output."""

    def test_ip_neigh_output(self):
        out = "10.0.0.5 dev eth0 lladdr AA:BB:CC:DD:EE:FF REACHABLE\n"
        assert network.parse_mac(out) == "aa:bb:cc:dd:ee:ff"

    def test_windows_arp_output(self):
        out = "  Internet Address      Physical Address      Type\n  10.0.0.5              aa-bb-cc-dd-ee-ff     dynamic\n"
        assert network.parse_mac(out) == "aa:bb:cc:dd:ee:ff"

    def test_bsd_arp_output_with_short_octets(self):
        out = "? (10.0.0.5) at a:b:c:d:e:f on en0 ifscope [ethernet]\n"
        assert network.parse_mac(out) == "0a:0b:0c:0d:0e:0f"

    def test_incomplete_entry_is_not_found(self):
        assert network.parse_mac("10.0.0.5 0x1 0x0 00:00:00:00:00:00 * eth0") is None

    def test_failed_entry_is_not_found(self):
        assert network.parse_mac("10.0.0.5 dev eth0 FAILED\n") is None

    def test_empty_output(self):
        assert network.parse_mac("") is None


class TestResolveMac:
    """Tests for resolve_mac on Linux."""

    def test_reads_proc_net_arp(self, tmp_path: Path):
        arp = tmp_path / "arp"
        arp.write_text(
            "IP address       HW type     Flags       HW address            Mask     Device\n"
            "10.0.0.4         0x1         0x2         11:22:33:44:55:66     *        eth0\n"
            "10.0.0.5         0x1         0x2         aa:bb:cc:dd:ee:ff     *        eth0\n"
        )
        with patch.object(network, "PROC_NET_ARP", arp), patch.object(network.platform, "system", return_value="Linux"):
            assert _run_async(network.resolve_mac("10.0.0.5")) == "aa:bb:cc:dd:ee:ff"

    def test_falls_back_to_ip_neigh(self, tmp_path: Path):
        capture = AsyncMock(return_value="10.0.0.5 dev eth0 lladdr aa:bb:cc:dd:ee:ff STALE\n")
        with (
            patch.object(network, "PROC_NET_ARP", tmp_path / "missing"),
            patch.object(network.platform, "system", return_value="Linux"),
            patch.object(network, "_capture", capture),
        ):
            assert _run_async(network.resolve_mac("10.0.0.5")) == "aa:bb:cc:dd:ee:ff"
        capture.assert_awaited_once_with("ip", "neigh", "show", "10.0.0.5")

    def test_missing_entry_returns_none(self, tmp_path: Path):
        capture = AsyncMock(return_value="")
        with (
            patch.object(network, "PROC_NET_ARP", tmp_path / "missing"),
            patch.object(network.platform, "system", return_value="Linux"),
            patch.object(network, "_capture", capture),
        ):
            assert _run_async(network.resolve_mac("10.0.0.5")) is None

    def test_missing_lookup_tool_returns_none(self, tmp_path: Path):
        capture = AsyncMock(side_effect=FileNotFoundError("ip"))
        with (
            patch.object(network, "PROC_NET_ARP", tmp_path / "missing"),
            patch.object(network.platform, "system", return_value="Linux"),
            patch.object(network, "_capture", capture),
        ):
            assert _run_async(network.resolve_mac("10.0.0.5")) is None

    def test_bsd_uses_arp(self):
        capture = AsyncMock(return_value="? (10.0.0.5) at aa:bb:cc:dd:ee:ff on en0\n")
        with patch.object(network.platform, "system", return_value="Darwin"), patch.object(network, "_capture", capture):
            assert _run_async(network.resolve_mac("10.0.0.5")) == "aa:bb:cc:dd:ee:ff"
        capture.assert_awaited_once_with("arp", "-n", "10.0.0.5")

    def test_ipv6_literal_is_looked_up_unchanged(self, tmp_path: Path):
        capture = AsyncMock(return_value="fe80::1 dev eth0 lladdr aa:bb:cc:dd:ee:ff REACHABLE\n")
        with (
            patch.object(network, "PROC_NET_ARP", tmp_path / "missing"),
            patch.object(network.platform, "system", return_value="Linux"),
            patch.object(network, "_capture", capture),
        ):
            assert _run_async(network.resolve_mac("fe80::1")) == "aa:bb:cc:dd:ee:ff"
        capture.assert_awaited_once_with("ip", "neigh", "show", "fe80::1")


class TestProbe:
    """Tests for the ping-based liveness probe."""

    @pytest.mark.parametrize(
        "system,expected",
        [
            ("Linux", ["ping", "-c", "3", "-W", "2", "10.0.0.5"]),
            ("Darwin", ["ping", "-c", "3", "-t", "6", "10.0.0.5"]),
            ("Windows", ["ping", "-n", "3", "-w", "2000", "10.0.0.5"]),
        ],
    )
    def test_ping_command_per_platform(self, system, expected):
        with patch.object(network.platform, "system", return_value=system):
            assert network.ping_command("10.0.0.5", 3, 2) == expected

    @pytest.mark.parametrize("returncode,alive", [(0, True), (1, False), (2, False)])
    def test_exit_status_decides_liveness(self, returncode, alive):
        proc = MagicMock()
        proc.wait = AsyncMock(return_value=returncode)
        spawn = AsyncMock(return_value=proc)
        with patch.object(network.asyncio, "create_subprocess_exec", spawn):
            assert _run_async(network.probe("10.0.0.5", 1)) is alive

    def test_missing_ping_binary_raises(self):
        spawn = AsyncMock(side_effect=FileNotFoundError("ping"))
        with patch.object(network.asyncio, "create_subprocess_exec", spawn):
            with pytest.raises(FileNotFoundError):
                _run_async(network.probe("10.0.0.5", 1))


class TestWake:
    """Tests for Wake-on-LAN sending."""

    def test_send_wake_uses_wakeonlan(self):
        with patch.object(network, "send_magic_packet") as magic:
            _run_async(network.send_wake("aa:bb:cc:dd:ee:ff", broadcast="10.0.0.255", port=7))
        magic.assert_called_once_with("aa:bb:cc:dd:ee:ff", ip_address="10.0.0.255", port=7)

    def test_detached_wake_failure_is_logged(self, caplog):
        async def _go():
            task = network.wake_detached("aa:bb:cc:dd:ee:ff")
            await asyncio.wait({task})
            await asyncio.sleep(0)  # let the done callback run
            return task

        with patch.object(network, "send_magic_packet", side_effect=OSError("no route")):
            with caplog.at_level(logging.WARNING, logger="nodewatch.network"):
                task = _run_async(_go())

        assert isinstance(task.exception(), OSError)
        assert "Failed to wake device aa:bb:cc:dd:ee:ff" in caplog.text
        assert task not in network._wake_tasks
