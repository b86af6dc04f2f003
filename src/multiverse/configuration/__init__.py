"""
Configuration management for the Multiverse relay.

- **app_configuration.py**: YAML loader for ``config/app_config.yml`` guarded by
  an fcntl shared lock. Falls back to an empty mapping on missing or malformed
  files.

- **relay_settings.py**: Typed accessors for the ``multiverse:`` section (room
  name pattern, limits, reconcile timings, state store backend) with the
  defaults the relay runs with when nothing is configured.
"""
