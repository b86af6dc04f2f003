from typing import Any, Dict, List

DEFAULT_SYSTEM_AVATAR = "https://drive.google.com/uc?export=download&id=197qxkXH2_b0nZyO6XzMC8VeYTuYwcai9"


class RelaySettings:
    """Typed accessors for the ``multiverse:`` section of ``app_config.yml``.

    Every property falls back to the documented default when the key is
    missing or has the wrong type, so a partial config file is always usable.
    """

    def __init__(self, data: Dict[str, Any] | None = None) -> None:
        self.data: Dict[str, Any] = data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def as_dict(self) -> Dict[str, Any]:
        return self.data

    def _number(self, key: str, default: float) -> float:
        try:
            return float(self.data.get(key, default))
        except (TypeError, ValueError):
            return default

    def _int(self, key: str, default: int) -> int:
        try:
            return int(self.data.get(key, default))
        except (TypeError, ValueError):
            return default

    # Membership
    @property
    def channel_name(self) -> str:
        return str(self.data.get("channel_name") or "multiverse")

    @property
    def match_topic(self) -> bool:
        return bool(self.data.get("match_topic", False))

    @property
    def require_whitelist(self) -> bool:
        return bool(self.data.get("require_whitelist", False))

    @property
    def superusers(self) -> List[int]:
        value = self.data.get("superusers", [])
        if not isinstance(value, list):
            return []
        ids = []
        for item in value:
            try:
                ids.append(int(item))
            except (TypeError, ValueError):
                continue
        return ids

    # Sinks and system identity
    @property
    def webhook_name(self) -> str:
        return str(self.data.get("webhook_name") or "MultiverseWebhook")

    @property
    def system_name(self) -> str:
        return str(self.data.get("system_name") or "Multiverse")

    @property
    def system_avatar(self) -> str:
        return str(self.data.get("system_avatar") or DEFAULT_SYSTEM_AVATAR)

    # Limits
    @property
    def rate_limit_ms(self) -> int:
        return self._int("rate_limit_ms", 2000)

    @property
    def history_capacity(self) -> int:
        return max(1, self._int("history_capacity", 1000))

    @property
    def max_file_size(self) -> int:
        return self._int("max_file_size", 3 * 1024 * 1024 - 1024)

    @property
    def content_limit(self) -> int:
        return self._int("content_limit", 1999)

    @property
    def username_limit(self) -> int:
        return self._int("username_limit", 75)

    @property
    def mention_threshold(self) -> int:
        return self._int("mention_threshold", 7)

    @property
    def scam_patterns(self) -> List[str]:
        value = self.data.get("scam_patterns", [])
        return [str(p) for p in value] if isinstance(value, list) else []

    @property
    def persist_auto_bans(self) -> bool:
        return bool(self.data.get("persist_auto_bans", False))

    # Reconciliation
    @property
    def reconcile_interval(self) -> float:
        return self._number("reconcile_interval_seconds", 45.0)

    @property
    def reconcile_initial_delay(self) -> float:
        return self._number("reconcile_initial_delay_seconds", 5.0)

    @property
    def convergence_jitter(self) -> float:
        return self._number("convergence_jitter_seconds", 2.0)

    @property
    def guild_refresh_ttl(self) -> float:
        return self._number("guild_refresh_ttl_seconds", 1800.0)

    @property
    def announce_on_start(self) -> bool:
        return bool(self.data.get("announce_on_start", True))

    @property
    def announce_delay(self) -> float:
        return self._number("announce_delay_seconds", 10.0)

    # Federation state store
    @property
    def state_store(self) -> Dict[str, Any]:
        value = self.data.get("state_store", {})
        return value if isinstance(value, dict) else {}

    @property
    def state_backend(self) -> str:
        return str(self.state_store.get("backend") or "memory").lower()

    @property
    def state_channel_id(self) -> int | None:
        value = self.state_store.get("channel_id")
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def database_path(self) -> str:
        return str(self.state_store.get("database_path") or "./data/multiverse.db")
