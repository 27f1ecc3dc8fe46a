#!/usr/bin/env python3
"""
BlueZ Transport - D-Bus GATT server

Exports the simulated service to BlueZ as a GATT application and registers
an LE advertisement for it:

- /org/blesim                      ObjectManager (GetManagedObjects)
- /org/blesim/service0             org.bluez.GattService1
- /org/blesim/service0/charN       org.bluez.GattCharacteristic1
- /org/blesim/advertisement0       org.bluez.LEAdvertisement1

BlueZ identifies the central in ReadValue/WriteValue through the "device"
option (the device object path, used as peer id). StartNotify/StopNotify
carry no such option and BlueZ multiplexes notifications over every
subscribed link, so subscriptions are attributed to SHARED_CENTRAL.
Disconnects are observed through the Connected property of each device
that has interacted with the service.
"""

import asyncio
from collections.abc import Iterable

from dbus_next import Variant
from dbus_next.aio import MessageBus
from dbus_next.constants import BusType, PropertyAccess
from dbus_next.errors import DBusError, InterfaceNotFoundError
from dbus_next.service import ServiceInterface, dbus_property, method

from ..logging_setup import get_logger
from .base import (
    AdvertisingError,
    CharacteristicSpec,
    PowerState,
    TransportBase,
    TransportError,
    TransportMode,
    UnknownCharacteristicError,
    UpdateResult,
)

logger = get_logger(__name__)

# DBus constants
BLUEZ_SERVICE_NAME = "org.bluez"
ADAPTER_INTERFACE = "org.bluez.Adapter1"
DEVICE_INTERFACE = "org.bluez.Device1"
GATT_MANAGER_INTERFACE = "org.bluez.GattManager1"
GATT_SERVICE_INTERFACE = "org.bluez.GattService1"
GATT_CHARACTERISTIC_INTERFACE = "org.bluez.GattCharacteristic1"
LE_ADVERTISING_MANAGER_INTERFACE = "org.bluez.LEAdvertisingManager1"
LE_ADVERTISEMENT_INTERFACE = "org.bluez.LEAdvertisement1"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"

APP_PATH = "/org/blesim"
SERVICE_PATH = f"{APP_PATH}/service0"
ADVERTISEMENT_PATH = f"{APP_PATH}/advertisement0"

SHARED_CENTRAL = "bluez-central"

BLUEZ_ERROR_FAILED = "org.bluez.Error.Failed"
BLUEZ_ERROR_NOT_SUPPORTED = "org.bluez.Error.NotSupported"
DBUS_ACCESS_DENIED = "org.freedesktop.DBus.Error.AccessDenied"


def _peer_from_options(options: dict) -> str:
    device = options.get("device")
    if isinstance(device, Variant):
        return device.value
    return SHARED_CENTRAL


class GattService(ServiceInterface):
    def __init__(self, uuid: str) -> None:
        super().__init__(GATT_SERVICE_INTERFACE)
        self._uuid = uuid

    @dbus_property(access=PropertyAccess.READ)
    def UUID(self) -> 's':  # noqa: F821
        return self._uuid

    @dbus_property(access=PropertyAccess.READ)
    def Primary(self) -> 'b':  # noqa: F821
        return True

    def managed_properties(self) -> dict[str, Variant]:
        return {"UUID": Variant("s", self._uuid), "Primary": Variant("b", True)}


class GattCharacteristic(ServiceInterface):
    def __init__(self, transport: "BlueZTransport", spec: CharacteristicSpec, path: str) -> None:
        super().__init__(GATT_CHARACTERISTIC_INTERFACE)
        self.transport = transport
        self.spec = spec
        self.path = path
        self.value = spec.initial_value
        self.notifying = False

    @dbus_property(access=PropertyAccess.READ)
    def UUID(self) -> 's':  # noqa: F821
        return self.spec.uuid

    @dbus_property(access=PropertyAccess.READ)
    def Service(self) -> 'o':  # noqa: F821
        return SERVICE_PATH

    @dbus_property(access=PropertyAccess.READ)
    def Flags(self) -> 'as':  # noqa: F821
        return self.spec.flags

    @dbus_property(access=PropertyAccess.READ)
    def Value(self) -> 'ay':  # noqa: F821
        return self.value

    @dbus_property(access=PropertyAccess.READ)
    def Notifying(self) -> 'b':  # noqa: F821
        return self.notifying

    @method()
    async def ReadValue(self, options: 'a{sv}') -> 'ay':  # noqa: F821
        return await self.read_value(options)

    async def read_value(self, options: dict) -> bytes:
        """Ask the delegate on the first chunk; long-read continuations reuse that value."""
        offset = options.get("offset")
        offset = offset.value if isinstance(offset, Variant) else 0
        if offset:
            return self.value[offset:]

        peer_id = _peer_from_options(options)
        await self.transport.watch_device(peer_id)
        try:
            self.value = await self.transport.delegate.on_read_request(peer_id, self.spec.uuid)
        except UnknownCharacteristicError:
            raise DBusError(BLUEZ_ERROR_NOT_SUPPORTED, f"{self.spec.uuid} is not readable")
        except Exception as e:
            logger.error("Read of %s failed: %s", self.spec.uuid, e, exc_info=True)
            raise DBusError(BLUEZ_ERROR_FAILED, str(e))
        return self.value

    @method()
    async def WriteValue(self, value: 'ay', options: 'a{sv}'):  # noqa: F821
        peer_id = _peer_from_options(options)
        await self.transport.watch_device(peer_id)
        try:
            await self.transport.delegate.on_write_request(peer_id, self.spec.uuid, bytes(value))
        except UnknownCharacteristicError:
            raise DBusError(BLUEZ_ERROR_NOT_SUPPORTED, f"{self.spec.uuid} is not writable")
        except Exception as e:
            logger.error("Write to %s failed: %s", self.spec.uuid, e, exc_info=True)
            raise DBusError(BLUEZ_ERROR_FAILED, str(e))

    @method()
    async def StartNotify(self):
        if self.notifying:
            return
        self.notifying = True
        await self.transport.delegate.on_subscribe(SHARED_CENTRAL, self.spec.uuid, None)

    @method()
    async def StopNotify(self):
        if not self.notifying:
            return
        self.notifying = False
        await self.transport.delegate.on_unsubscribe(SHARED_CENTRAL, self.spec.uuid)

    def notify(self, value: bytes) -> bool:
        self.value = value
        if not self.notifying:
            return False
        self.emit_properties_changed({"Value": value})
        return True

    def managed_properties(self) -> dict[str, Variant]:
        return {
            "UUID": Variant("s", self.spec.uuid),
            "Service": Variant("o", SERVICE_PATH),
            "Flags": Variant("as", self.spec.flags),
        }


class Advertisement(ServiceInterface):
    def __init__(self, service_uuid: str, local_name: str) -> None:
        super().__init__(LE_ADVERTISEMENT_INTERFACE)
        self._service_uuid = service_uuid
        self._local_name = local_name

    @dbus_property(access=PropertyAccess.READ)
    def Type(self) -> 's':  # noqa: F821
        return "peripheral"

    @dbus_property(access=PropertyAccess.READ)
    def ServiceUUIDs(self) -> 'as':  # noqa: F821
        return [self._service_uuid]

    @dbus_property(access=PropertyAccess.READ)
    def LocalName(self) -> 's':  # noqa: F821
        return self._local_name

    @method()
    def Release(self) -> None:
        logger.info("Advertisement released by BlueZ")


class GattApplication(ServiceInterface):
    """ObjectManager root BlueZ walks to discover the GATT hierarchy."""

    def __init__(self, service: GattService, characteristics: list[GattCharacteristic]) -> None:
        super().__init__(OBJECT_MANAGER_INTERFACE)
        self.service = service
        self.characteristics = characteristics

    @method()
    def GetManagedObjects(self) -> 'a{oa{sa{sv}}}':  # noqa: F821
        objects = {SERVICE_PATH: {GATT_SERVICE_INTERFACE: self.service.managed_properties()}}
        for char in self.characteristics:
            objects[char.path] = {GATT_CHARACTERISTIC_INTERFACE: char.managed_properties()}
        return objects


class BlueZTransport(TransportBase):
    """GATT server on a local BlueZ adapter."""

    mode = TransportMode.BLUEZ

    def __init__(self, adapter: str = "hci0") -> None:
        super().__init__()
        self.adapter = adapter
        self.adapter_path = f"/org/bluez/{adapter}"
        self.bus: MessageBus | None = None
        self._adapter_obj = None
        self._application: GattApplication | None = None
        self._advertisement: Advertisement | None = None
        self._characteristics: dict[str, GattCharacteristic] = {}
        self._watched_devices: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        try:
            self.bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        except (OSError, DBusError) as e:
            logger.error("Cannot reach the system bus: %s", e)
            await self._set_power_state(PowerState.UNSUPPORTED)
            return

        try:
            introspection = await self.bus.introspect(BLUEZ_SERVICE_NAME, self.adapter_path)
            self._adapter_obj = self.bus.get_proxy_object(
                BLUEZ_SERVICE_NAME, self.adapter_path, introspection
            )
            adapter_iface = self._adapter_obj.get_interface(ADAPTER_INTERFACE)
            powered = await adapter_iface.get_powered()
        except DBusError as e:
            state = PowerState.UNAUTHORIZED if e.type == DBUS_ACCESS_DENIED else PowerState.UNSUPPORTED
            logger.error("Adapter %s unavailable: %s", self.adapter, e)
            await self._set_power_state(state)
            return
        except InterfaceNotFoundError as e:
            logger.error("Adapter %s has no %s: %s", self.adapter, ADAPTER_INTERFACE, e)
            await self._set_power_state(PowerState.UNSUPPORTED)
            return

        props = self._adapter_obj.get_interface(PROPERTIES_INTERFACE)
        props.on_properties_changed(self._on_adapter_properties_changed)

        await self._set_power_state(PowerState.POWERED_ON if powered else PowerState.POWERED_OFF)

    async def stop(self) -> None:
        if self._advertising:
            await self.stop_advertising()
        for task in list(self._tasks):
            task.cancel()
        if self.bus:
            self.bus.disconnect()
            self.bus = None
        logger.info("BlueZ transport stopped")

    def _on_adapter_properties_changed(self, interface_name, changed, invalidated) -> None:
        if interface_name != ADAPTER_INTERFACE or "Powered" not in changed:
            return
        state = PowerState.POWERED_ON if changed["Powered"].value else PowerState.POWERED_OFF
        self._spawn(self._set_power_state(state))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def start_advertising(
        self,
        service_uuid: str,
        characteristics: Iterable[CharacteristicSpec],
        local_name: str,
    ) -> None:
        if self.bus is None or self._adapter_obj is None:
            raise AdvertisingError("BlueZ adapter not available")

        service = GattService(service_uuid)
        chars = [
            GattCharacteristic(self, spec, f"{SERVICE_PATH}/char{i}")
            for i, spec in enumerate(characteristics)
        ]
        self._application = GattApplication(service, chars)
        self._advertisement = Advertisement(service_uuid, local_name)
        self._characteristics = {c.spec.uuid.upper(): c for c in chars}

        self.bus.export(APP_PATH, self._application)
        self.bus.export(SERVICE_PATH, service)
        for char in chars:
            self.bus.export(char.path, char)
        self.bus.export(ADVERTISEMENT_PATH, self._advertisement)

        try:
            gatt_manager = self._adapter_obj.get_interface(GATT_MANAGER_INTERFACE)
            await gatt_manager.call_register_application(APP_PATH, {})
            adv_manager = self._adapter_obj.get_interface(LE_ADVERTISING_MANAGER_INTERFACE)
            await adv_manager.call_register_advertisement(ADVERTISEMENT_PATH, {})
        except (DBusError, InterfaceNotFoundError) as e:
            self._unexport()
            raise AdvertisingError(f"BlueZ rejected the service: {e}") from e

        self._advertising = True
        logger.info("📡 BlueZ advertising %s as '%s'", service_uuid, local_name)

    async def stop_advertising(self) -> None:
        if self._adapter_obj is not None:
            try:
                adv_manager = self._adapter_obj.get_interface(LE_ADVERTISING_MANAGER_INTERFACE)
                await adv_manager.call_unregister_advertisement(ADVERTISEMENT_PATH)
                gatt_manager = self._adapter_obj.get_interface(GATT_MANAGER_INTERFACE)
                await gatt_manager.call_unregister_application(APP_PATH)
            except (DBusError, InterfaceNotFoundError) as e:
                logger.warning("BlueZ unregister failed: %s", e)
        self._unexport()
        self._advertising = False

    def _unexport(self) -> None:
        if self.bus is None:
            return
        for path in [ADVERTISEMENT_PATH, *[c.path for c in self._characteristics.values()],
                     SERVICE_PATH, APP_PATH]:
            self.bus.unexport(path)
        self._characteristics = {}
        self._application = None
        self._advertisement = None

    def update_value(
        self,
        characteristic: str,
        value: bytes,
        peers: Iterable[str] | None = None,
    ) -> UpdateResult:
        char = self._characteristics.get(characteristic.upper())
        if char is None:
            raise TransportError(f"characteristic {characteristic} not exported")
        if peers is not None:
            logger.debug("BlueZ notifies every subscribed link, peer filter ignored")
        return UpdateResult.DELIVERED if char.notify(value) else UpdateResult.FAILED

    async def watch_device(self, device_path: str) -> None:
        """Follow Device1.Connected of a central so its disconnect is reported."""
        if device_path == SHARED_CENTRAL or device_path in self._watched_devices or self.bus is None:
            return
        self._watched_devices.add(device_path)
        try:
            introspection = await self.bus.introspect(BLUEZ_SERVICE_NAME, device_path)
            device_obj = self.bus.get_proxy_object(BLUEZ_SERVICE_NAME, device_path, introspection)
            props = device_obj.get_interface(PROPERTIES_INTERFACE)
        except (DBusError, InterfaceNotFoundError) as e:
            logger.debug("Cannot watch %s: %s", device_path, e)
            return

        def on_changed(interface_name, changed, invalidated):
            if interface_name != DEVICE_INTERFACE or "Connected" not in changed:
                return
            if not changed["Connected"].value:
                self._watched_devices.discard(device_path)
                props.off_properties_changed(on_changed)
                self._spawn(self.delegate.on_disconnect(device_path))

        props.on_properties_changed(on_changed)
