"""
Utility helpers for the Multiverse relay.

- **logger.py**: Centralized logging with coloured console output printed
  through prompt_toolkit, a per-session rotating log file, and silenced
  Discord/aiohttp internals.

- **text_utils.py**: Stateless text helpers used while building relayed
  messages (truncation, mention counting and neutralisation, markdown escapes).
"""
