#!/usr/bin/env python3
"""
Centralized configuration for blesim.

Provides dataclass-based configuration with defaults and validation.
Supports environment variable overrides for deployment flexibility.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .logging_setup import get_logger

logger = get_logger(__name__)

# ── Protocol constants (fixed by the command protocol) ───────────────

PROTOCOL_VERSION = "1.0.0"             # reported by GET_INFO
HEARTBEAT_INTERVAL = 10.0              # below typical 20-30s supervision timeouts
STREAM_INTERVAL = 1.0                  # default START_STREAM period
MIN_SEND_INTERVAL = 0.05               # debounce for manual sends via the API
MESSAGE_LOG_SIZE = 50                  # entries kept by the session monitor

TRANSPORT_MODES = ("bluez", "loopback")
IDENTIFIER_MODES = ("fixed", "random")

_TRUE_STRINGS = ("true", "yes", "on", "1")
_FALSE_STRINGS = ("false", "no", "off", "0")


def _parse_bool(value: Any, key: str) -> bool:
    """JSON booleans as-is; strings like "false" or "on" parsed explicitly."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"{key} must be a boolean, got {value!r}")


@dataclass
class PeripheralConfig:
    """Simulated peripheral configuration."""

    local_name: str = "blesim"             # advertised local name
    device_name: str = "blesim Debug"      # name in device-info / GET_INFO
    transport: str = "bluez"               # "bluez" | "loopback"
    adapter: str = "hci0"                  # BlueZ adapter (bluez transport only)
    identifier_mode: str = "fixed"         # "fixed" | "random"
    auto_advertise: bool = True            # start advertising on power-on
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    stream_interval: float = STREAM_INTERVAL


@dataclass
class StorageConfig:
    """Persisted identifier store configuration."""

    identifier_path: str = "/var/lib/blesim/identifiers.json"


@dataclass
class ApiConfig:
    """HTTP control API configuration."""

    host: str = "127.0.0.1"
    port: int = 8090
    api_key: str = ""                      # empty → unauthenticated
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class Config:
    """Main blesim configuration."""

    peripheral: PeripheralConfig = field(default_factory=PeripheralConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    # Raw config for diagnostics
    _raw: dict = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Reject values the peripheral cannot run with."""
        if self.peripheral.transport not in TRANSPORT_MODES:
            raise ValueError(
                f"Unknown transport '{self.peripheral.transport}', "
                f"expected one of {', '.join(TRANSPORT_MODES)}"
            )
        if self.peripheral.identifier_mode not in IDENTIFIER_MODES:
            raise ValueError(
                f"Unknown identifier mode '{self.peripheral.identifier_mode}', "
                f"expected one of {', '.join(IDENTIFIER_MODES)}"
            )
        if self.peripheral.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.peripheral.stream_interval <= 0:
            raise ValueError("stream_interval must be positive")

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        """
        Load configuration from file.

        Args:
            path: Path to config file. If None, uses environment-based default.

        Returns:
            Config instance with loaded values.
        """
        if path is None:
            path = cls._get_default_path()

        path = Path(path)

        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", path)
            return cls._from_dict({})

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        logger.info("Loaded config from %s", path)
        return cls._from_dict(data)

    @staticmethod
    def _get_default_path() -> Path:
        """Get default config path based on environment."""
        if os.getenv("BLESIM_ENV") == "dev":
            logger.debug("DEV environment detected")
            return Path("/etc/blesim/config.dev.json")
        return Path("/etc/blesim/config.json")

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary (JSON data), applying env overrides."""
        defaults = PeripheralConfig()

        peripheral = PeripheralConfig(
            local_name=data.get("LOCAL_NAME", defaults.local_name),
            device_name=data.get("DEVICE_NAME", defaults.device_name),
            transport=os.getenv("BLESIM_TRANSPORT", data.get("TRANSPORT", defaults.transport)),
            adapter=os.getenv("BLESIM_ADAPTER", data.get("ADAPTER", defaults.adapter)),
            identifier_mode=os.getenv(
                "BLESIM_ID_MODE", data.get("IDENTIFIER_MODE", defaults.identifier_mode)
            ),
            auto_advertise=_parse_bool(
                data.get("AUTO_ADVERTISE", defaults.auto_advertise), "AUTO_ADVERTISE"
            ),
            heartbeat_interval=float(data.get("HEARTBEAT_INTERVAL", HEARTBEAT_INTERVAL)),
            stream_interval=float(data.get("STREAM_INTERVAL", STREAM_INTERVAL)),
        )

        storage = StorageConfig(
            identifier_path=data.get("IDENTIFIER_PATH", StorageConfig.identifier_path),
        )

        cors = data.get("CORS_ORIGINS", "*")
        api = ApiConfig(
            host=data.get("API_HOST", ApiConfig.host),
            port=int(os.getenv("BLESIM_PORT", data.get("API_PORT", ApiConfig.port))),
            api_key=os.getenv("BLESIM_API_KEY", data.get("API_KEY", "")),
            cors_origins=cors.split(",") if isinstance(cors, str) else list(cors),
        )

        return cls(peripheral=peripheral, storage=storage, api=api, _raw=data)

    def to_dict(self) -> dict[str, Any]:
        """Export config to dictionary for saving."""
        return {
            "LOCAL_NAME": self.peripheral.local_name,
            "DEVICE_NAME": self.peripheral.device_name,
            "TRANSPORT": self.peripheral.transport,
            "ADAPTER": self.peripheral.adapter,
            "IDENTIFIER_MODE": self.peripheral.identifier_mode,
            "AUTO_ADVERTISE": self.peripheral.auto_advertise,
            "HEARTBEAT_INTERVAL": self.peripheral.heartbeat_interval,
            "STREAM_INTERVAL": self.peripheral.stream_interval,
            "IDENTIFIER_PATH": self.storage.identifier_path,
            "API_HOST": self.api.host,
            "API_PORT": self.api.port,
            "API_KEY": self.api.api_key,
            "CORS_ORIGINS": ",".join(self.api.cors_origins),
        }

    def save(self, path: str | Path) -> None:
        """Save config to file."""
        path = Path(path)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info("Saved config to %s", path)
