"""
SQLite persistence for the relay.

- **db_connection.py**: the process-wide aiosqlite connection with WAL pragmas
  and serialised write transactions (``db_connection`` singleton).
- **db_schema.py**: table creation for ``federation_state`` and ``auto_bans``.
"""
