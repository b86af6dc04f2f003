"""
Message relaying.

- **broadcast_engine.py**: concurrent fan-out of one message to every eligible
  endpoint with per-endpoint failure isolation.
- **history_ledger.py**: bounded FIFO of broadcast records used for duplicate
  suppression and moderation lookups.
- **payload_builder.py**: username labels, reply quotes, attachment splitting
  and the final per-send limits.
"""
