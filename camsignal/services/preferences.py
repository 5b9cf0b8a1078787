"""
Preferences Service - Unified persistence for all configuration
Stores transport endpoints, heartbeat, ICE, session and hub settings
"""

import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from camsignal.services.heartbeat_supervisor import HeartbeatConfig
from camsignal.services.session_orchestrator import DEFAULT_ICE_SERVERS, SessionConfig
from camsignal.services.session_state import IcePolicy
from camsignal.services.stats_differencer import QualityThresholds

logger = logging.getLogger(__name__)


@dataclass
class RelayConfig:
    """Relay broker client configuration."""

    enabled: bool = True
    url: str = "ws://localhost:8000/ws/relay"
    client_type: str = "viewer"
    connect_timeout_s: float = 10.0


@dataclass
class IceConfig:
    default_policy: IcePolicy = IcePolicy.TRICKLE
    gathering_timeout_s: float = 5.0
    servers: List[Dict[str, Any]] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))


@dataclass
class PushConfig:
    """Push ingest configuration."""

    enabled: bool = True
    answer_timeout_ms: int = 10000
    auto_accept: bool = True


@dataclass
class PullConfig:
    """Pull (HTTP offer/answer) configuration."""

    enabled: bool = False
    endpoint_template: str = ""
    strip_candidates: bool = False
    request_timeout_s: float = 10.0
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class ManagedCloudConfig:
    """Hosted signaling channel configuration."""

    enabled: bool = False
    discovery_url: str = ""
    region: str = ""
    channel_template: str = "{target_id}"
    role: str = "VIEWER"
    client_id: str = ""
    ping_interval_s: float = 5.0
    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""


@dataclass
class HubConfig:
    """Embedded relay broker configuration."""

    enabled: bool = True
    connection_timeout_s: float = 60.0
    sweep_interval_s: float = 10.0
    ice_servers: List[Dict[str, Any]] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))


class PreferencesService:
    """
    Unified preferences and configuration persistence.
    Single source of truth for all configuration.
    """

    PREFERENCES_FILE = "preferences.json"

    def __init__(self, config_path: str = None):
        self._lock = threading.RLock()  # re-entrant: setters call _save under the lock
        self._preferences: Dict[str, Any] = self._default_preferences()
        self._config_path = config_path if config_path else self._get_config_path()
        self._load()

    def _get_config_path(self) -> str:
        """Get path to preferences file (CAMSIGNAL_PREFERENCES overrides)."""
        env_path = os.environ.get("CAMSIGNAL_PREFERENCES")
        if env_path:
            return env_path
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        return os.path.join(base_dir, "..", self.PREFERENCES_FILE)

    def _default_preferences(self) -> Dict[str, Any]:
        """Return default preferences structure."""
        return {
            "relay": {
                "enabled": True,
                "url": "ws://localhost:8000/ws/relay",
                "client_type": "viewer",
                "connect_timeout_s": 10.0,
            },
            "heartbeat": {
                "interval_s": 25.0,
                "ack_timeout_s": 5.0,
                "max_missed_acks": 2,
                "backoff_base_ms": 1000,
                "backoff_cap_ms": 30000,
                "max_reconnect_attempts": 10,
            },
            "ice": {
                "default_policy": "trickle",
                "gathering_timeout_s": 5.0,
                "servers": list(DEFAULT_ICE_SERVERS),
            },
            "push": {"enabled": True, "answer_timeout_ms": 10000, "auto_accept": True},
            "pull": {
                "enabled": False,
                "endpoint_template": "",  # e.g. https://media.example/whep/{target_id}
                "strip_candidates": False,
                "request_timeout_s": 10.0,
                "headers": {},
            },
            "managed_cloud": {
                "enabled": False,
                "discovery_url": "",
                "region": "",
                "channel_template": "{target_id}",
                "role": "VIEWER",
                "client_id": "",
                "ping_interval_s": 5.0,
                "access_key_id": "",
                "secret_access_key": "",
                "session_token": "",
            },
            "session": {
                "degraded_window_s": 10.0,
                "manual_teardown_grace_s": 2.0,
                "offer_wait_timeout_s": 30.0,
            },
            "stats": {
                "interval_s": 1.0,
                "thresholds": {
                    "packet_loss_warning": 1.0,
                    "packet_loss_error": 2.0,
                    "freeze_warning": 1.0,
                    "freeze_error": 3.0,
                    "pli_warning": 1.0,
                    "pli_error": 3.0,
                    "nack_warning": 1.0,
                    "nack_error": 5.0,
                },
            },
            "hub": {
                "enabled": True,
                "connection_timeout_s": 60.0,
                "sweep_interval_s": 10.0,
                "ice_servers": list(DEFAULT_ICE_SERVERS),
            },
            "ui": {"language": "en"},
        }

    def _load(self):
        """Load preferences from file."""
        try:
            if os.path.exists(self._config_path):
                with open(self._config_path, "r") as f:
                    loaded = json.load(f)

                # Merge with defaults (to add any new fields)
                defaults = self._default_preferences()
                self._deep_merge(defaults, loaded)
                self._preferences = defaults

                logger.info(f"Loaded preferences from {self._config_path}")
            else:
                logger.info("First run detected - creating preferences file")
                self._preferences = self._default_preferences()
                self._save()
        except Exception as e:
            logger.warning(f"Failed to load preferences: {e}")
            self._preferences = self._default_preferences()

    def _deep_merge(self, base: dict, override: dict):
        """Deep merge override into base (modifies base in place)."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _save(self):
        """Save preferences to file with synchronization."""
        try:
            with self._lock:
                with open(self._config_path, "w") as f:
                    json.dump(self._preferences, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
        except Exception as e:
            logger.warning(f"Failed to save preferences: {e}")

    def _section(self, name: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._preferences.get(name, {}))

    # ==================== Transports ====================

    def get_relay_config(self) -> RelayConfig:
        cfg = self._section("relay")
        return RelayConfig(
            enabled=cfg.get("enabled", True),
            url=cfg.get("url", RelayConfig.url),
            client_type=cfg.get("client_type", "viewer"),
            connect_timeout_s=float(cfg.get("connect_timeout_s", 10.0)),
        )

    def get_push_config(self) -> PushConfig:
        cfg = self._section("push")
        return PushConfig(
            enabled=cfg.get("enabled", True),
            answer_timeout_ms=int(cfg.get("answer_timeout_ms", 10000)),
            auto_accept=cfg.get("auto_accept", True),
        )

    def get_pull_config(self) -> PullConfig:
        cfg = self._section("pull")
        return PullConfig(
            enabled=cfg.get("enabled", False),
            endpoint_template=cfg.get("endpoint_template", ""),
            strip_candidates=cfg.get("strip_candidates", False),
            request_timeout_s=float(cfg.get("request_timeout_s", 10.0)),
            headers=dict(cfg.get("headers") or {}),
        )

    def get_managed_cloud_config(self) -> ManagedCloudConfig:
        cfg = self._section("managed_cloud")
        return ManagedCloudConfig(
            enabled=cfg.get("enabled", False),
            discovery_url=cfg.get("discovery_url", ""),
            region=cfg.get("region", ""),
            channel_template=cfg.get("channel_template", "{target_id}"),
            role=cfg.get("role", "VIEWER"),
            client_id=cfg.get("client_id", ""),
            ping_interval_s=float(cfg.get("ping_interval_s", 5.0)),
            access_key_id=cfg.get("access_key_id", ""),
            secret_access_key=cfg.get("secret_access_key", ""),
            session_token=cfg.get("session_token", ""),
        )

    def set_transport_config(self, transport: str, config: Dict[str, Any]):
        """Update one transport section (relay, push, pull, managed_cloud)."""
        if transport not in ("relay", "push", "pull", "managed_cloud"):
            raise ValueError(f"Unknown transport section: {transport}")
        with self._lock:
            self._preferences.setdefault(transport, {}).update(config)
            self._save()
        logger.info(f"{transport} preferences saved")

    # ==================== Heartbeat / ICE / Session ====================

    def get_heartbeat_config(self) -> HeartbeatConfig:
        cfg = self._section("heartbeat")
        defaults = HeartbeatConfig()
        return HeartbeatConfig(
            interval_s=float(cfg.get("interval_s", defaults.interval_s)),
            ack_timeout_s=float(cfg.get("ack_timeout_s", defaults.ack_timeout_s)),
            max_missed_acks=int(cfg.get("max_missed_acks", defaults.max_missed_acks)),
            backoff_base_ms=int(cfg.get("backoff_base_ms", defaults.backoff_base_ms)),
            backoff_cap_ms=int(cfg.get("backoff_cap_ms", defaults.backoff_cap_ms)),
            max_reconnect_attempts=int(cfg.get("max_reconnect_attempts", defaults.max_reconnect_attempts)),
        )

    def get_ice_config(self) -> IceConfig:
        cfg = self._section("ice")
        policy = cfg.get("default_policy", "trickle")
        try:
            default_policy = IcePolicy(policy)
        except ValueError:
            logger.warning(f"Unknown ICE policy '{policy}' in preferences, using trickle")
            default_policy = IcePolicy.TRICKLE
        return IceConfig(
            default_policy=default_policy,
            gathering_timeout_s=float(cfg.get("gathering_timeout_s", 5.0)),
            servers=list(cfg.get("servers") or DEFAULT_ICE_SERVERS),
        )

    def get_quality_thresholds(self) -> QualityThresholds:
        thresholds = self._section("stats").get("thresholds") or {}
        known = {k: float(v) for k, v in thresholds.items() if k in QualityThresholds.__dataclass_fields__}
        return QualityThresholds(**known)

    def get_session_config(self) -> SessionConfig:
        """Everything the orchestrator needs, assembled from several sections."""
        session = self._section("session")
        stats = self._section("stats")
        ice = self.get_ice_config()
        return SessionConfig(
            degraded_window_s=float(session.get("degraded_window_s", 10.0)),
            manual_teardown_grace_s=float(session.get("manual_teardown_grace_s", 2.0)),
            offer_wait_timeout_s=float(session.get("offer_wait_timeout_s", 30.0)),
            stats_interval_s=float(stats.get("interval_s", 1.0)),
            default_ice_policy=ice.default_policy,
            gathering_timeout_s=ice.gathering_timeout_s,
            ice_servers=ice.servers,
            quality_thresholds=self.get_quality_thresholds(),
        )

    # ==================== Hub ====================

    def get_hub_config(self) -> HubConfig:
        cfg = self._section("hub")
        return HubConfig(
            enabled=cfg.get("enabled", True),
            connection_timeout_s=float(cfg.get("connection_timeout_s", 60.0)),
            sweep_interval_s=float(cfg.get("sweep_interval_s", 10.0)),
            ice_servers=list(cfg.get("ice_servers") or DEFAULT_ICE_SERVERS),
        )

    # ==================== UI ====================

    def get_ui_preferences(self) -> Dict[str, Any]:
        return self._section("ui")

    def set_ui_preference(self, key: str, value: Any):
        with self._lock:
            self._preferences.setdefault("ui", {})[key] = value
            self._save()

    # ==================== General ====================

    def get_all_preferences(self) -> Dict[str, Any]:
        """Get all preferences (for debugging/export)."""
        with self._lock:
            return self._preferences.copy()

    def reset_preferences(self) -> bool:
        """Reset all preferences to defaults and save."""
        try:
            with self._lock:
                backup_path = self._config_path + ".backup"
                if os.path.exists(self._config_path):
                    shutil.copy2(self._config_path, backup_path)
                    logger.info(f"Backed up preferences to {backup_path}")

                self._preferences = self._default_preferences()
                self._save()
                logger.info("Preferences reset to defaults")
                return True
        except Exception as e:
            logger.warning(f"Failed to reset preferences: {e}")
            return False


# Singleton instance
_preferences_service: Optional[PreferencesService] = None


def get_preferences() -> PreferencesService:
    """Get the singleton preferences service instance."""
    global _preferences_service
    if _preferences_service is None:
        _preferences_service = PreferencesService()
    return _preferences_service
