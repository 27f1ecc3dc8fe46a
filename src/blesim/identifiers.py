"""
Identifier Registry

Produces the service and characteristic UUIDs that the simulated
peripheral advertises. Two schemes are supported:

- fixed: well-known UUIDs shared by every installation, so a Web Bluetooth
  client can filter for the service without prior pairing.
- random: one uuid4 per role, generated on first use and persisted in a
  key-value store so it stays stable across restarts.

The registry never mutates its values on its own; `reset()` is only
meaningful while advertising is stopped (see PeripheralSession.reset_identifiers).
"""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path

from .logging_setup import get_logger

logger = get_logger(__name__)


class IdentifierMode(Enum):
    """UUID generation strategies"""
    FIXED = "fixed"
    RANDOM = "random"


# Nordic UART Service compatible base, one suffix per role
FIXED_IDENTIFIERS = {
    "service": "6E400001-B5A3-F393-E0A9-E50E24DCCA9E",
    "read": "6E400002-B5A3-F393-E0A9-E50E24DCCA9E",
    "write": "6E400003-B5A3-F393-E0A9-E50E24DCCA9E",
    "notify": "6E400004-B5A3-F393-E0A9-E50E24DCCA9E",
    "readWrite": "6E400005-B5A3-F393-E0A9-E50E24DCCA9E",
    "deviceInfo": "6E400006-B5A3-F393-E0A9-E50E24DCCA9E",
}

# Roles included in the JSON export (device info is an implementation detail)
EXPORT_ROLES = ("service", "read", "write", "notify", "readWrite")

STORE_KEY_PREFIX = "blesim.uuid."


@dataclass(frozen=True)
class IdentifierSet:
    """The UUIDs of one installation, keyed by semantic role."""
    service: str
    read: str
    write: str
    notify: str
    readWrite: str
    deviceInfo: str

    def as_dict(self) -> dict[str, str]:
        return asdict(self)

    @property
    def characteristics(self) -> tuple[str, ...]:
        return (self.read, self.write, self.notify, self.readWrite, self.deviceInfo)


class KeyValueStore(ABC):
    """Persistence boundary used by the registry."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass


class MemoryStore(KeyValueStore):
    """Process-local store (tests, throwaway simulator runs)"""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileStore(KeyValueStore):
    """Flat JSON document on disk, rewritten on every set."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._data = self._load()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Identifier store %s unreadable, starting empty: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Identifier store %s is not an object, starting empty", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write a temp file, then atomically rename over the store
        tmp_path = self.path.parent / f".{self.path.name}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        tmp_path.replace(self.path)


class IdentifierRegistry:
    """
    Context object owning the identifier set of this installation.

    Constructed once at process start with an injected store; values are
    generated lazily on the first `get_identifiers()` call.
    """

    def __init__(self, store: KeyValueStore, mode: IdentifierMode = IdentifierMode.FIXED):
        self.store = store
        self.mode = IdentifierMode(mode)
        self._identifiers: IdentifierSet | None = None

    def get_identifiers(self) -> IdentifierSet:
        if self._identifiers is None:
            self._identifiers = self._load_or_generate()
        return self._identifiers

    def _load_or_generate(self) -> IdentifierSet:
        if self.mode == IdentifierMode.FIXED:
            return IdentifierSet(**FIXED_IDENTIFIERS)

        values = {}
        generated = []
        for role in FIXED_IDENTIFIERS:
            key = STORE_KEY_PREFIX + role
            value = self.store.get(key)
            if not value:
                value = str(uuid.uuid4()).upper()
                self.store.set(key, value)
                generated.append(role)
            values[role] = value

        if generated:
            logger.info("Generated identifiers for: %s", ", ".join(generated))
        return IdentifierSet(**values)

    def reset(self) -> IdentifierSet:
        """Regenerate all identifiers, invalidating previous values."""
        if self.mode == IdentifierMode.FIXED:
            logger.info("Fixed identifiers in use, reset keeps the well-known values")
            self._identifiers = IdentifierSet(**FIXED_IDENTIFIERS)
            return self._identifiers

        values = {}
        for role in FIXED_IDENTIFIERS:
            value = str(uuid.uuid4()).upper()
            self.store.set(STORE_KEY_PREFIX + role, value)
            values[role] = value

        self._identifiers = IdentifierSet(**values)
        logger.info("Identifiers regenerated, service is now %s", self._identifiers.service)
        return self._identifiers

    def export_as_json(self) -> str:
        """Deterministic JSON mapping of role → UUID"""
        identifiers = self.get_identifiers().as_dict()
        return json.dumps(
            {role: identifiers[role] for role in EXPORT_ROLES},
            indent=2,
            sort_keys=True,
        )
