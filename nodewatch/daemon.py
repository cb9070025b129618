#!/usr/bin/env python3
"""nodewatch daemon.

Runs two independent timers against the coordinator: the heartbeat cycle
(first run immediately at startup) and the command cycle. Each tick starts its
cycle as a new task without waiting for the previous one; only the command
cycle refuses to overlap with itself.

Usage:
    nodewatch --api-base https://coordinator.example.com/api --api-key TOKEN

Or:
    python -m nodewatch --config-file /etc/nodewatch.yaml
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Any, Awaitable, Callable

import click
from dotenv import load_dotenv

from nodewatch import __version__
from nodewatch.commands import CommandCycle
from nodewatch.config import (
    DEFAULT_COMMAND_INTERVAL,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_MAX_OUTPUT_LINES,
    DEFAULT_PING_COUNT,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_WOL_BROADCAST,
    ConfigError,
    NodeConfig,
    build_config,
    load_config_file,
)
from nodewatch.heartbeat import HeartbeatCycle
from nodewatch.hub_client import CoordinatorClient
from nodewatch.logging_utils import configure_logging
from nodewatch.network import wait_for_wakes
from nodewatch.shell import BoundedShellExecutor

logger = logging.getLogger("nodewatch")


class NodeDaemon:
    """Fixed-interval scheduler for the heartbeat and command cycles."""

    def __init__(
        self,
        heartbeat: HeartbeatCycle,
        commands: CommandCycle | None,
        *,
        heartbeat_interval: float,
        command_interval: float,
    ) -> None:
        self.heartbeat = heartbeat
        self.commands = commands
        self.heartbeat_interval = heartbeat_interval
        self.command_interval = command_interval
        self._tasks: set[asyncio.Task[Any]] = set()
        self._stop_event = asyncio.Event()

    def _spawn(self, name: str, factory: Callable[[], Awaitable[Any]]) -> None:
        task = asyncio.get_running_loop().create_task(factory(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s cycle crashed", task.get_name(), exc_info=exc)

    async def _every(
        self,
        interval: float,
        name: str,
        factory: Callable[[], Awaitable[Any]],
        immediate: bool = False,
    ) -> None:
        loop = asyncio.get_running_loop()
        if immediate:
            self._spawn(name, factory)
        next_at = loop.time() + interval
        while not self._stop_event.is_set():
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            if self._stop_event.is_set():
                break
            self._spawn(name, factory)
            next_at += interval
            now = loop.time()
            if next_at <= now:
                # ticks missed while the loop was blocked are dropped, not replayed
                next_at += ((now - next_at) // interval + 1) * interval

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        timers = [
            asyncio.create_task(
                self._every(self.heartbeat_interval, "heartbeat", self.heartbeat.run, immediate=True)
            )
        ]
        if self.commands is not None:
            timers.append(asyncio.create_task(self._every(self.command_interval, "commands", self.commands.run)))

        try:
            await self._stop_event.wait()
        finally:
            for t in timers:
                t.cancel()
            in_flight = list(self._tasks)
            for t in in_flight:
                t.cancel()
            await asyncio.gather(*timers, *in_flight, return_exceptions=True)
            await wait_for_wakes()


def build_daemon(config: NodeConfig, client: CoordinatorClient, *, enable_commands: bool = True) -> NodeDaemon:
    heartbeat = HeartbeatCycle(client, ping_count=config.ping_count, wol_broadcast=config.wol_broadcast)
    commands = None
    if enable_commands:
        executor = BoundedShellExecutor(max_lines=config.max_output_lines, timeout=config.command_timeout)
        commands = CommandCycle(client, executor)
    return NodeDaemon(
        heartbeat,
        commands,
        heartbeat_interval=config.heartbeat_interval,
        command_interval=config.command_interval,
    )


async def _serve(config: NodeConfig, *, once: bool, enable_commands: bool) -> None:
    async with CoordinatorClient(config.api_base, config.api_key, timeout=config.request_timeout) as client:
        daemon = build_daemon(config, client, enable_commands=enable_commands)

        if once:
            await daemon.heartbeat.run()
            await wait_for_wakes()
            return

        loop = asyncio.get_running_loop()

        def shutdown_handler(sig: signal.Signals) -> None:
            logger.info("Received signal %s, shutting down...", sig.name)
            daemon.stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, shutdown_handler, sig)
            except NotImplementedError:
                # Windows event loops have no signal handler support.
                pass

        await daemon.run()


@click.command()
@click.option("--api-base", envvar="NODE_API_BASE", default=None, help="Base URL of the coordinator REST API")
@click.option("--api-key", envvar="NODE_API_KEY", default=None, help="Node token sent as X-Token")
@click.option(
    "--heartbeat-interval",
    envvar="NODE_HEARTBEAT_INTERVAL",
    type=float,
    default=DEFAULT_HEARTBEAT_INTERVAL,
    show_default=True,
    help="Seconds between heartbeat reports",
)
@click.option(
    "--command-interval",
    envvar="NODE_COMMAND_INTERVAL",
    type=float,
    default=DEFAULT_COMMAND_INTERVAL,
    show_default=True,
    help="Seconds between command polls",
)
@click.option(
    "--max-output-lines",
    envvar="NODE_MAX_OUTPUT_LINES",
    type=int,
    default=DEFAULT_MAX_OUTPUT_LINES,
    show_default=True,
    help="Stop a command once it has printed this many lines (0 = unlimited)",
)
@click.option(
    "--command-timeout",
    envvar="NODE_COMMAND_TIMEOUT",
    type=float,
    default=DEFAULT_COMMAND_TIMEOUT,
    show_default=True,
    help="Kill a command after this many seconds",
)
@click.option(
    "--request-timeout",
    envvar="NODE_REQUEST_TIMEOUT",
    type=float,
    default=DEFAULT_REQUEST_TIMEOUT,
    show_default=True,
    help="HTTP timeout for coordinator requests",
)
@click.option(
    "--ping-count",
    envvar="NODE_PING_COUNT",
    type=int,
    default=DEFAULT_PING_COUNT,
    show_default=True,
    help="Echo requests sent per address",
)
@click.option(
    "--wol-broadcast",
    envvar="NODE_WOL_BROADCAST",
    default=DEFAULT_WOL_BROADCAST,
    show_default=True,
    help="Broadcast address for Wake-on-LAN packets",
)
@click.option(
    "--config-file",
    envvar="NODE_CONFIG_FILE",
    default=None,
    type=click.Path(exists=False, dir_okay=False),
    help="Path to YAML configuration file (overrides options)",
)
@click.option("--once", is_flag=True, help="Run a single heartbeat cycle and exit")
@click.option("--no-commands", is_flag=True, help="Do not poll for remote commands")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="nodewatch")
def main(config_file: str | None, once: bool, no_commands: bool, debug: bool, **options: Any) -> None:
    """nodewatch node agent.

    Reports reachability of coordinator-assigned addresses, wakes offline
    devices, and executes remote commands with bounded output and runtime.
    """
    configure_logging(1 if debug else 0)

    try:
        overrides = load_config_file(config_file) if config_file else {}
        config = build_config(options, overrides)
    except ConfigError as e:
        raise click.UsageError(str(e)) from e

    logger.info("Starting nodewatch %s", __version__)
    logger.info("Coordinator: %s", config.api_base)
    logger.info(
        "Heartbeat every %ss, command poll every %ss%s",
        config.heartbeat_interval,
        config.command_interval,
        " (disabled)" if no_commands else "",
    )

    try:
        asyncio.run(_serve(config, once=once, enable_commands=not no_commands))
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("nodewatch stopped")


def run() -> None:
    """Console entry point: load ``.env`` before click reads the environment."""
    load_dotenv(os.getenv("ENV_FILE", ".env"))
    main()


if __name__ == "__main__":
    run()
