"""Stable public API for building tooling on top of bluezctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from pathlib import Path

from bluezctl.core.config_loader import LoadedConfig, load_config
from bluezctl.core.device_match import best_device_for_hint
from bluezctl.core.errors import (
    AdapterBusyError,
    AdapterNotFoundError,
    AmbiguousDeviceError,
    BluezctlError,
    ConfigLoadError,
    ConfigValidationError,
    DaemonError,
    InvalidAddressError,
    InvalidFlagError,
    InvalidUuidError,
    NoBluetoothAdaptersError,
    NotConnectedError,
    NotFoundError,
    NotReadyError,
    OperationNotSupportedError,
    OperationTimeoutError,
    TransportError,
    UuidNotFoundError,
)
from bluezctl.core.event_stream import EventSubscription
from bluezctl.core.events import (
    AdapterAdded,
    AdapterRemoved,
    AdapterUpdated,
    BluetoothEvent,
    CharacteristicRemoved,
    CharacteristicValueChanged,
    DeviceConnected,
    DeviceDisconnected,
    DeviceDiscovered,
    DeviceRemoved,
    DeviceUpdated,
    ServicesResolved,
    StreamOverflowed,
)
from bluezctl.core.model import (
    AdapterId,
    AdapterInfo,
    CharacteristicFlags,
    CharacteristicId,
    CharacteristicInfo,
    DescriptorId,
    DescriptorInfo,
    DeviceId,
    DeviceInfo,
    DiscoveryFilter,
    MacAddress,
    ScanTransport,
    ServiceId,
    ServiceInfo,
    SessionConfig,
    normalize_uuid,
)
from bluezctl.core.session import BluetoothSession
from bluezctl.transports.base import BusConnection

LOGGER = logging.getLogger(__name__)

__all__ = [
    "BluezctlError",
    "NotFoundError",
    "AdapterNotFoundError",
    "UuidNotFoundError",
    "AmbiguousDeviceError",
    "NotReadyError",
    "NotConnectedError",
    "OperationNotSupportedError",
    "OperationTimeoutError",
    "NoBluetoothAdaptersError",
    "InvalidAddressError",
    "InvalidUuidError",
    "InvalidFlagError",
    "ConfigLoadError",
    "ConfigValidationError",
    "DaemonError",
    "AdapterBusyError",
    "TransportError",
    "AdapterAdded",
    "AdapterUpdated",
    "AdapterRemoved",
    "DeviceDiscovered",
    "DeviceUpdated",
    "DeviceConnected",
    "DeviceDisconnected",
    "ServicesResolved",
    "DeviceRemoved",
    "CharacteristicValueChanged",
    "CharacteristicRemoved",
    "StreamOverflowed",
    "BluetoothEvent",
    "EventSubscription",
    "AdapterId",
    "DeviceId",
    "ServiceId",
    "CharacteristicId",
    "DescriptorId",
    "AdapterInfo",
    "DeviceInfo",
    "ServiceInfo",
    "CharacteristicInfo",
    "DescriptorInfo",
    "CharacteristicFlags",
    "DiscoveryFilter",
    "ScanTransport",
    "MacAddress",
    "SessionConfig",
    "BusConnection",
    "BluetoothSession",
    "Client",
]


def _parse_address(text: str) -> MacAddress | None:
    try:
        return MacAddress.parse(text)
    except InvalidAddressError:
        return None


class Client:
    """Hint-based convenience layer over a `BluetoothSession`.

    Devices are addressed by a MAC address or a name/address fragment, and
    GATT attributes by service and characteristic UUID, which is what scripts
    and the command line usually have at hand. The underlying session stays
    reachable through `Client.session` for identifier-based work.
    """

    def __init__(self, session: BluetoothSession, *, load_warnings: tuple[str, ...] = ()) -> None:
        self._session = session
        self._load_warnings = load_warnings

    @classmethod
    async def open(
        cls,
        *,
        config_path: str | Path | None = None,
        bus: BusConnection | None = None,
    ) -> Client:
        loaded: LoadedConfig = load_config(config_path)
        session = await BluetoothSession.open(bus=bus, config=loaded.config)
        return cls(session, load_warnings=loaded.warnings)

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def session(self) -> BluetoothSession:
        return self._session

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._load_warnings

    async def close(self) -> None:
        await self._session.close()

    async def list_adapters(self) -> list[AdapterInfo]:
        return await self._session.get_adapters()

    async def resolve_adapter(self, name: str | None = None) -> AdapterInfo:
        """Pick an adapter by interface name or address, falling back to the configured one."""
        adapters = await self._session.get_adapters()
        if not adapters:
            raise NoBluetoothAdaptersError("No Bluetooth adapters found.")
        wanted = name or self._session.config.adapter
        for adapter in adapters:
            if adapter.name == wanted or (adapter.address or "").upper() == wanted.upper():
                return adapter
        if name is None:
            return adapters[0]
        raise AdapterNotFoundError(f"No adapter named '{name}'")

    async def list_devices(self, adapter: str | None = None) -> list[DeviceInfo]:
        adapter_id = (await self.resolve_adapter(adapter)).id if adapter else None
        return await self._session.get_devices(adapter_id)

    async def scan(
        self,
        duration_s: float,
        *,
        adapter: str | None = None,
        service_uuids: Iterable[str] = (),
    ) -> list[DeviceInfo]:
        adapter_id = (await self.resolve_adapter(adapter)).id if adapter else None
        uuids = tuple(service_uuids)
        discovery_filter = DiscoveryFilter(service_uuids=uuids) if uuids else None
        await self._session.start_discovery(adapter_id, discovery_filter)
        try:
            await asyncio.sleep(duration_s)
        finally:
            await self._session.stop_discovery(adapter_id)
        devices = await self._session.get_devices(adapter_id)
        if uuids:
            wanted = {normalize_uuid(u) for u in uuids}
            devices = [d for d in devices if wanted & set(d.service_uuids)]
        return devices

    async def resolve_device(self, hint: str) -> DeviceInfo:
        return best_device_for_hint(hint, await self._session.get_devices())

    async def connect(self, hint: str, *, timeout: float | None = None) -> DeviceInfo:
        """Connect to the device matching ``hint`` and wait for its services."""
        try:
            device = await self.resolve_device(hint)
        except NotFoundError:
            address = _parse_address(hint)
            if address is None:
                raise
            adapter = await self.resolve_adapter()
            device_id = await self._session.connect_by_address(adapter.id, address, timeout=timeout)
            return await self._session.get_device_info(device_id)
        await self._session.connect(device.id, timeout=timeout)
        return await self._session.get_device_info(device.id)

    async def disconnect(self, hint: str) -> None:
        device = await self.resolve_device(hint)
        await self._session.disconnect(device.id)

    async def gatt_database(
        self,
        hint: str,
    ) -> list[tuple[ServiceInfo, list[CharacteristicInfo]]]:
        device = await self.connect(hint)
        database = []
        for service in await self._session.get_services(device.id):
            database.append((service, await self._session.get_characteristics(service.id)))
        return database

    async def _characteristic(self, hint: str, service_uuid: str, characteristic_uuid: str) -> CharacteristicInfo:
        device = await self.connect(hint)
        return await self._session.get_service_characteristic_by_uuid(
            device.id, service_uuid, characteristic_uuid
        )

    async def read(self, hint: str, service_uuid: str, characteristic_uuid: str) -> bytes:
        characteristic = await self._characteristic(hint, service_uuid, characteristic_uuid)
        return await self._session.read_characteristic_value(characteristic.id)

    async def write(
        self,
        hint: str,
        service_uuid: str,
        characteristic_uuid: str,
        value: bytes,
        *,
        with_response: bool = True,
    ) -> None:
        characteristic = await self._characteristic(hint, service_uuid, characteristic_uuid)
        await self._session.write_characteristic_value(
            characteristic.id, value, with_response=with_response
        )

    async def notifications(
        self,
        hint: str,
        service_uuid: str,
        characteristic_uuid: str,
    ) -> AsyncIterator[BluetoothEvent]:
        """Yield value changes (and overflow markers) until the stream ends.

        The notification subscription is released when the iterator is closed.
        """
        characteristic = await self._characteristic(hint, service_uuid, characteristic_uuid)
        subscription = self._session.characteristic_events(characteristic.id)
        try:
            await self._session.start_notify(characteristic.id)
            try:
                async for event in subscription:
                    if isinstance(event, (CharacteristicValueChanged, StreamOverflowed)):
                        yield event
                    elif isinstance(event, CharacteristicRemoved):
                        raise NotConnectedError("Characteristic went away while watching it")
                if subscription.error is not None:
                    raise subscription.error
            finally:
                await self._stop_quietly(characteristic.id)
        finally:
            subscription.close()

    async def _stop_quietly(self, characteristic_id: CharacteristicId) -> None:
        try:
            await self._session.stop_notify(characteristic_id)
        except (NotFoundError, NotConnectedError, TransportError) as exc:
            LOGGER.debug("Notification subscription already gone: %s", exc)
