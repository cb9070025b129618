"""REST client for the coordinator."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from nodewatch.models import Command, CommandReply, HeartbeatRecord, MonitoredAddress

logger = logging.getLogger(__name__)

HEARTBEAT_PATH = "/node/heartbeat"
RETRIEVE_COMMANDS_PATH = "/node/retrieve-commands"
COMMAND_REPLY_PATH = "/node/command-reply"


class CoordinatorError(RuntimeError):
    pass


class CoordinatorClient:
    """Thin async wrapper around the four coordinator endpoints.

    Every request carries the node token in ``X-Token``. Any transport error,
    non-2xx status or malformed list body is raised as CoordinatorError; the
    cycles decide what is fatal for them.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Accept": "application/json", "X-Token": api_key},
            transport=transport,
        )

    async def __aenter__(self) -> "CoordinatorClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Any = None) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CoordinatorError(
                f"{method} {path} failed: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise CoordinatorError(f"{method} {path} failed: {e!r}") from e
        return response

    async def _get_list(self, path: str) -> list[dict[str, Any]]:
        response = await self._request("GET", path)
        try:
            data = response.json()
        except ValueError as e:
            raise CoordinatorError(f"GET {path} returned invalid JSON") from e
        if not isinstance(data, list):
            raise CoordinatorError(f"GET {path} returned {type(data).__name__}, expected a list")
        return [item for item in data if isinstance(item, dict)]

    async def get_addresses(self) -> list[MonitoredAddress]:
        return [MonitoredAddress.from_dict(item) for item in await self._get_list(HEARTBEAT_PATH)]

    async def submit_heartbeat(self, timestamp: str, report: list[HeartbeatRecord]) -> None:
        await self._request(
            "POST",
            HEARTBEAT_PATH,
            json={"timestamp": timestamp, "report": [r.to_dict() for r in report]},
        )
        logger.debug("Submitted heartbeat batch with %d records", len(report))

    async def fetch_commands(self) -> list[Command]:
        return [Command.from_dict(item) for item in await self._get_list(RETRIEVE_COMMANDS_PATH)]

    async def send_reply(self, reply: CommandReply) -> None:
        await self._request("POST", COMMAND_REPLY_PATH, json=reply.to_dict())
