from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable

from nodewatch.hub_client import CoordinatorClient, CoordinatorError
from nodewatch.models import HeartbeatRecord, MonitoredAddress, utc_now_iso
from nodewatch.network import probe, resolve_mac, wake_detached

logger = logging.getLogger(__name__)

Prober = Callable[[str, int], Awaitable[bool]]
Resolver = Callable[[str], Awaitable["str | None"]]
Waker = Callable[[str], Any]


class HeartbeatCycle:
    """Probe every address the coordinator hands out and report back in one batch.

    Addresses are handled one after another. An address whose probe or lookup
    raises is left out of the report entirely. Wakes are scheduled and
    forgotten; the next cycle's probe shows whether they worked.
    """

    def __init__(
        self,
        client: CoordinatorClient,
        *,
        ping_count: int = 1,
        wol_broadcast: str = "255.255.255.255",
        prober: Prober = probe,
        resolver: Resolver = resolve_mac,
        waker: Waker | None = None,
    ) -> None:
        self.client = client
        self.ping_count = ping_count
        self.prober = prober
        self.resolver = resolver
        self.waker = waker or functools.partial(wake_detached, broadcast=wol_broadcast)

    def _wake(self, address: MonitoredAddress, mac: str | None) -> None:
        if not mac:
            logger.warning("Cannot wake %s: no hardware address in neighbour cache", address.value)
            return
        logger.info("Attempting to wake device: %s", mac)
        try:
            self.waker(mac)
        except Exception as e:
            logger.warning("Failed to wake device %s: %s", mac, e)

    async def check_address(self, address: MonitoredAddress) -> HeartbeatRecord:
        alive = await self.prober(address.value, self.ping_count)
        mac = await self.resolver(address.value)
        logger.info("Host %s (%s) is %s", address.value, mac, "online" if alive else "offline")

        if not alive and address.wol:
            self._wake(address, mac)

        return HeartbeatRecord(address_id=address.address_id, alive=alive, mac=mac)

    async def run(self) -> list[HeartbeatRecord]:
        started = utc_now_iso()
        logger.info("Report started on %s", started)

        try:
            addresses = await self.client.get_addresses()
        except CoordinatorError as e:
            logger.error("Failed to fetch monitored addresses: %s", e)
            return []

        report: list[HeartbeatRecord] = []
        for address in addresses:
            try:
                report.append(await self.check_address(address))
            except Exception as e:
                logger.warning("Host %s is unavailable: %s", address.value, e)

        logger.info("Sending report back (%d of %d addresses)", len(report), len(addresses))
        try:
            await self.client.submit_heartbeat(started, report)
        except CoordinatorError as e:
            logger.error("Failed to submit heartbeat report: %s", e)
        else:
            logger.info("Report finished")
        return report
