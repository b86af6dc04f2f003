"""
Multiverse - federated chat relay for Discord

Every text channel whose name contains ``multiverse`` (configurable) in any
guild the bot has joined becomes part of one federation. Messages posted in
one of them are relayed into all the others through webhooks, so each copy
carries the original author's name and avatar.

Core Components:

- **Relay**: Concurrent fan-out with per-room failure isolation, bounded
  history of broadcasts for duplicate suppression and moderation
- **Safety**: Mention-flood auto-ban, scam detection and per-user rate limits
- **Federation**: Endpoint registry, periodic room/webhook discovery and
  convergence of shared membership state between several bot instances
- **Moderation**: Delete-by-reply and info-by-reply, federation-wide
  blacklist/whitelist, name overrides and user tags

"""
