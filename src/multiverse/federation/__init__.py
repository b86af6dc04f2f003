"""
Federation membership and its upkeep.

- **endpoint_registry.py**: lock-guarded registry of endpoints, sinks and guilds.
- **federated_guild.py**: per-guild counters, refresh and sequential sends.
- **state_store.py**: backends for the shared federation state document
  (memory, SQLite, pinned Discord attachment).
- **state_manager.py**: pull/apply/jitter/push convergence of that document.
- **reconciler.py**: periodic discovery, sink acquisition and convergence.

Key Features:
- Rooms join by channel name (or topic) and bot permissions
- Each room reports a broken sink once
- Several instances converge on one store without coordination
"""
