"""
anvil-keeper - Durable state snapshots for a long-running Anvil node.

This package keeps a snapshot of an Anvil node's state on disk (or in S3)
in step with the blocks it produces, so a restarted node resumes from its
latest state instead of from genesis.

Architecture:
    ┌─────────────┐  newHeads  ┌──────────────┐  request  ┌──────────────┐
    │ Anvil node  │───────────▶│ Coordinator  │──────────▶│   Worker     │
    │ (JSON-RPC)  │            │ + Scheduler  │◀──────────│ dump + write │
    └─────────────┘            └──────────────┘ completed └──────┬───────┘
           ▲                                                     │
           │ anvil_loadState (startup)                           ▼
           │                                             ┌──────────────┐
           └─────────────────────────────────────────────│ Snapshot slot│
                                                         │ (file / S3)  │
                                                         └──────────────┘

Invariants:
    - At most one capture is in flight
    - Blocks arriving during a capture are coalesced into one follow-up capture
    - Shutdown always persists a capture of the latest block seen
    - A stored snapshot the node rejects is fatal; a missing one is not

How to change safely:
    - Put scheduling decisions in snapshot/scheduler.py and test the table
    - Never interpret snapshot bytes; they belong to the node

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
