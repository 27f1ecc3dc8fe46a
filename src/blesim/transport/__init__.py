"""Transport sub-package: radio backends for the simulated peripheral."""

from .base import (
    AdvertisingError,
    BlesimError,
    CharacteristicProperty,
    CharacteristicSpec,
    PowerState,
    TransportBase,
    TransportDelegate,
    TransportError,
    TransportMode,
    UnknownCharacteristicError,
    UpdateResult,
    create_transport,
)

__all__ = [
    "AdvertisingError",
    "BlesimError",
    "CharacteristicProperty",
    "CharacteristicSpec",
    "PowerState",
    "TransportBase",
    "TransportDelegate",
    "TransportError",
    "TransportMode",
    "UnknownCharacteristicError",
    "UpdateResult",
    "create_transport",
]
