"""nodewatch node agent.

A lightweight daemon that runs on a monitored host and talks to a coordinator
over REST. It reports the reachability of the addresses the coordinator asks
about, wakes offline devices via Wake-on-LAN, and executes remote shell
commands with bounded output and runtime.

Usage:
    nodewatch --api-base https://coordinator.example.com/api --api-key TOKEN
"""

__version__ = "0.1.0"
