"""
Delivery transports.

- **base.py**: the ``SinkTransport`` capability interface used by the core.
- **discord_transport.py**: py-cord implementation backed by channel webhooks.
"""
