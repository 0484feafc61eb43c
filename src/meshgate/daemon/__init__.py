# src/meshgate/daemon/__init__.py
"""
meshgate: overlay daemon integration

  - commands: argv for the daemon and the join CLI, run_join()
  - control: local control API client (status, whois) and readiness polling
  - supervisor: child-process supervision with a bounded restart budget

The overlay protocol itself lives entirely in the daemon; nothing here parses
its state or speaks its wire format.
"""

from __future__ import annotations

__all__ = [
    "commands",
    "control",
    "supervisor",
]
