from __future__ import annotations

import logging

from nodewatch.hub_client import CoordinatorClient, CoordinatorError
from nodewatch.models import Command, CommandReply
from nodewatch.shell import BoundedShellExecutor

logger = logging.getLogger(__name__)

# Exact, case-sensitive match after trimming.
STOP_KEYWORDS = frozenset({"stop", "exit"})


def is_stop_command(value: str) -> bool:
    return value.strip() in STOP_KEYWORDS


class CommandCycle:
    """Poll the coordinator for shell commands and run them one at a time.

    Owns the two pieces of process-wide state: ``running`` keeps a firing from
    starting while the previous batch is still in flight, and ``stopped`` is
    set for good once a stop keyword arrives. Both are checked and set without
    an intervening await, which makes them safe on a single event loop.
    """

    def __init__(self, client: CoordinatorClient, executor: BoundedShellExecutor) -> None:
        self.client = client
        self.executor = executor
        self._stopped = False
        self._running = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def running(self) -> bool:
        return self._running

    async def _execute(self, command: Command) -> list[str]:
        logger.info("Executing command %s: %s", command.command_id, command.value)
        try:
            replies = await self.executor.run(
                command.value,
                on_line=lambda line: logger.debug("[%s] %s", command.command_id, line),
            )
        except Exception as e:
            logger.exception("Command %s failed to execute", command.command_id)
            replies = [f"Failed to execute command: {e}"]
        logger.info("Command %s finished with %d output lines", command.command_id, len(replies))
        return replies

    async def _reply(self, reply: CommandReply) -> bool:
        try:
            await self.client.send_reply(reply)
        except CoordinatorError as e:
            logger.error("Failed to send reply for command %s: %s", reply.command_id, e)
            return False
        return True

    async def run(self) -> list[CommandReply]:
        """Run one firing. Returns the replies that were delivered."""
        if self._stopped or self._running:
            return []
        self._running = True
        try:
            return await self._run_batch()
        finally:
            self._running = False

    async def _run_batch(self) -> list[CommandReply]:
        try:
            commands = await self.client.fetch_commands()
        except CoordinatorError as e:
            logger.error("Failed to retrieve commands: %s", e)
            return []

        if commands:
            logger.info("Retrieved %d command(s)", len(commands))

        delivered: list[CommandReply] = []
        for command in commands:
            if is_stop_command(command.value):
                logger.warning(
                    "Stop command %s received; command polling disabled until restart",
                    command.command_id,
                )
                self._stopped = True
                break

            reply = CommandReply(command_id=command.command_id, replies=await self._execute(command))
            if await self._reply(reply):
                delivered.append(reply)
        return delivered
