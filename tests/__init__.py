"""
anvil-keeper test suite.

This package contains:
- unit/: Unit tests (scheduler, worker, recovery, stores, config)
- integration/: Coordinator runs with the in-memory node, the Anvil client
  against a local WebSocket node, and S3 (opt-in)
"""
