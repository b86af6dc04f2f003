"""
Service layer.

- **multiverse_service.py**: owns the registry, ledger, filters, engine and
  reconciler, runs the inbound pipeline and exposes the moderation and
  federation admin operations used by the cogs.
"""
