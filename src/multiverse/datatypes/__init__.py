"""
Plain data structures shared by the relay.

- **discord_datatypes.py**: typed snowflake wrappers (UserID, GuildID, ChannelID,
  MessageID, SinkID).
- **relay_datatypes.py**: rooms, sinks, endpoints, payloads, message references,
  broadcast records and filter verdicts.
- **federation_datatypes.py**: the shared federation state document and the
  queued changes applied to it during convergence.
"""
