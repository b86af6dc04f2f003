"""
Gates applied to inbound messages before any fan-out.

- **safety_filter.py**: mention-flood auto-ban and scam rejection, plus the
  temporary block list of auto-banned senders.
- **scam_detector.py**: default pattern matcher for scam phrasing and lookalike
  link hosts.
- **rate_limiter.py**: per-sender minimum interval with an atomic
  check-and-update.
"""
