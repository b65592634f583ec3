"""In-memory model of the daemon's adapter/device/GATT object graph.

The cache consumes raw topology events strictly in delivery order and keeps a
parent/child consistent entity graph: a service, characteristic or descriptor
is only ever visible while its whole ancestor chain is present.
GATT objects announced before their parent are parked and replayed once the
parent shows up, unless they sit in the parking area longer than the staleness
window. Devices are tracked even before their adapter is known.

Every mutation is a plain synchronous method, so a reader running on the same
event loop never observes a half-applied event.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from bluezctl.core import interfaces
from bluezctl.core.errors import (
    AdapterNotFoundError,
    InvalidAddressError,
    InvalidUuidError,
    NotFoundError,
    NotReadyError,
)
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
    EntityKind,
    MacAddress,
    ObjectId,
    ServiceId,
    ServiceInfo,
    normalize_uuid,
)
from bluezctl.core.registry import IdentifierRegistry
from bluezctl.transports.base import ObjectAdded, ObjectRemoved, PropertiesChanged, TopologyEvent

LOGGER = logging.getLogger(__name__)

# Most specific first; the second element names the property pointing at the parent.
_CLASSIFICATION: tuple[tuple[str, EntityKind, str | None], ...] = (
    (interfaces.GATT_DESCRIPTOR_INTERFACE, EntityKind.DESCRIPTOR, "Characteristic"),
    (interfaces.GATT_CHARACTERISTIC_INTERFACE, EntityKind.CHARACTERISTIC, "Service"),
    (interfaces.GATT_SERVICE_INTERFACE, EntityKind.SERVICE, "Device"),
    (interfaces.DEVICE_INTERFACE, EntityKind.DEVICE, "Adapter"),
    (interfaces.ADAPTER_INTERFACE, EntityKind.ADAPTER, None),
)
INTERFACE_BY_KIND = {kind: interface for interface, kind, _ in _CLASSIFICATION}
_PARENT_PROPERTY = {kind: prop for _, kind, prop in _CLASSIFICATION}
_CONNECTION_PROPERTIES = frozenset({"Connected", "ServicesResolved"})


@dataclass
class _Entry:
    path: str
    kind: EntityKind
    id: Any
    parent: str | None
    props: dict[str, Any]
    children: set[str] = field(default_factory=set)


@dataclass
class _Parked:
    received: float
    interfaces: dict[str, dict[str, Any]]


def _classify(announced: Mapping[str, Mapping[str, Any]]) -> tuple[EntityKind, str] | None:
    for interface, kind, _ in _CLASSIFICATION:
        if interface in announced:
            return kind, interface
    return None


def _lenient_uuid(value: Any) -> str:
    try:
        return normalize_uuid(str(value))
    except InvalidUuidError:
        return str(value).lower()


def _as_bytes(value: Any) -> bytes | None:
    if value is None:
        return None
    return bytes(value)


class TopologyCache:
    def __init__(
        self,
        registry: IdentifierRegistry | None = None,
        *,
        listener: Callable[[BluetoothEvent], None] | None = None,
        staleness_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry or IdentifierRegistry()
        self._listener = listener
        self._staleness_s = staleness_s
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        # parent path -> child path -> parked announcement (insertion ordered)
        self._parked: dict[str, dict[str, _Parked]] = {}

    def apply(self, event: TopologyEvent) -> None:
        if isinstance(event, ObjectAdded):
            self.apply_object_added(event.path, event.interfaces)
        elif isinstance(event, ObjectRemoved):
            self.apply_object_removed(event.path, event.interfaces)
        elif isinstance(event, PropertiesChanged):
            self.apply_properties_changed(
                event.path, event.interface, event.changed, event.invalidated
            )
        else:
            raise TypeError(f"Unsupported topology event {event!r}")

    def apply_object_added(self, path: str, announced: Mapping[str, Mapping[str, Any]]) -> None:
        self._prune_parked()
        classified = _classify(announced)
        if classified is None:
            LOGGER.debug("Ignoring %s: no tracked interface in %s", path, sorted(announced))
            return
        kind, interface = classified
        props = dict(announced[interface])
        parent = self._parent_path(kind, path, props)

        # Devices may precede their adapter; GATT objects must not outlive their owner.
        if parent is not None and parent not in self._entries and kind is not EntityKind.DEVICE:
            self._park(parent, path, announced)
            return

        entry = self._entries.get(path)
        if entry is not None and entry.kind is kind:
            previous = dict(entry.props)
            entry.props.update(props)
            # Value changes are only reported from PropertiesChanged.
            self._after_update(entry, previous, set(props) - {"Value"})
        else:
            if entry is not None:
                self._remove(path)
            entry = _Entry(
                path=path,
                kind=kind,
                id=self.registry.register(path, kind),
                parent=parent,
                props=props,
            )
            self._entries[path] = entry
            if parent is not None and parent in self._entries:
                self._entries[parent].children.add(path)
            if kind is EntityKind.ADAPTER:
                entry.children.update(
                    other.path
                    for other in self._entries.values()
                    if other.kind is EntityKind.DEVICE and other.parent == path
                )
            self._after_insert(entry)

        self._replay_parked(path)

    def apply_object_removed(self, path: str, removed_interfaces: tuple[str, ...] = ()) -> None:
        self._unpark(path)
        entry = self._entries.get(path)
        if entry is None:
            LOGGER.debug("Ignoring removal of unknown object %s", path)
            return
        if removed_interfaces and INTERFACE_BY_KIND[entry.kind] not in removed_interfaces:
            # Only auxiliary interfaces went away; the entity itself persists.
            return
        self._remove(path)

    def apply_property_changed(self, path: str, interface: str, name: str, value: Any) -> None:
        self.apply_properties_changed(path, interface, {name: value})

    def apply_properties_changed(
        self,
        path: str,
        interface: str,
        changed: Mapping[str, Any],
        invalidated: tuple[str, ...] = (),
    ) -> None:
        entry = self._entries.get(path)
        if entry is None:
            if self._merge_parked(path, interface, changed):
                return
            LOGGER.debug("Ignoring property change for unknown object %s", path)
            return
        if interface != INTERFACE_BY_KIND[entry.kind]:
            return
        previous = dict(entry.props)
        entry.props.update(changed)
        for name in invalidated:
            entry.props.pop(name, None)
        self._after_update(entry, previous, set(changed) | set(invalidated))

    def record_value(self, object_id: CharacteristicId | DescriptorId, value: bytes) -> None:
        """Store a value obtained by an explicit read, without emitting an event."""
        entry = self._entry(object_id)
        entry.props["Value"] = bytes(value)

    def adapters(self) -> list[AdapterInfo]:
        return [self._adapter_info(e) for e in self._iter_kind(EntityKind.ADAPTER)]

    def adapter(self, adapter_id: AdapterId) -> AdapterInfo:
        try:
            return self._adapter_info(self._entry(adapter_id, EntityKind.ADAPTER))
        except NotFoundError as exc:
            raise AdapterNotFoundError(f"Unknown adapter {adapter_id}") from exc

    def devices(self, adapter_id: AdapterId | None = None) -> list[DeviceInfo]:
        adapter_path = None
        if adapter_id is not None:
            try:
                adapter_path = self._entry(adapter_id, EntityKind.ADAPTER).path
            except NotFoundError as exc:
                raise AdapterNotFoundError(f"Unknown adapter {adapter_id}") from exc
        return [
            self._device_info(e)
            for e in self._iter_kind(EntityKind.DEVICE)
            if adapter_path is None or e.parent == adapter_path
        ]

    def device(self, device_id: DeviceId) -> DeviceInfo:
        return self._device_info(self._entry(device_id, EntityKind.DEVICE))

    def find_device(self, address: MacAddress, adapter_id: AdapterId | None = None) -> DeviceInfo | None:
        for device in self.devices(adapter_id):
            if device.mac_address == address:
                return device
        return None

    def services(self, device_id: DeviceId) -> list[ServiceInfo]:
        device = self._entry(device_id, EntityKind.DEVICE)
        self._require_ready(device)
        return [self._service_info(self._entries[p]) for p in sorted(device.children)]

    def service(self, service_id: ServiceId) -> ServiceInfo:
        return self._service_info(self._gatt_entry(service_id, EntityKind.SERVICE))

    def characteristics(self, service_id: ServiceId) -> list[CharacteristicInfo]:
        service = self._gatt_entry(service_id, EntityKind.SERVICE)
        return [self._characteristic_info(self._entries[p]) for p in sorted(service.children)]

    def characteristic(self, characteristic_id: CharacteristicId) -> CharacteristicInfo:
        return self._characteristic_info(self._gatt_entry(characteristic_id, EntityKind.CHARACTERISTIC))

    def descriptors(self, characteristic_id: CharacteristicId) -> list[DescriptorInfo]:
        characteristic = self._gatt_entry(characteristic_id, EntityKind.CHARACTERISTIC)
        return [self._descriptor_info(self._entries[p]) for p in sorted(characteristic.children)]

    def descriptor(self, descriptor_id: DescriptorId) -> DescriptorInfo:
        return self._descriptor_info(self._gatt_entry(descriptor_id, EntityKind.DESCRIPTOR))

    def path_of(self, object_id: ObjectId) -> str:
        return self._entry(object_id).path

    def device_of(self, object_id: ObjectId) -> DeviceId:
        """Return the device owning a service, characteristic or descriptor."""
        entry = self._entry(object_id)
        device = self._owning_device(entry)
        if device is None:
            raise NotFoundError(f"{object_id} is not owned by a device")
        return device.id

    def adapter_of(self, device_id: DeviceId) -> AdapterId:
        entry = self._entry(device_id, EntityKind.DEVICE)
        if entry.parent is None or entry.parent not in self._entries:
            raise AdapterNotFoundError(f"No adapter known for {device_id}")
        return self._entries[entry.parent].id

    def is_ready(self, device_id: DeviceId) -> bool:
        entry = self._entry(device_id, EntityKind.DEVICE)
        return bool(entry.props.get("Connected")) and bool(entry.props.get("ServicesResolved"))

    def is_connected(self, device_id: DeviceId) -> bool:
        return bool(self._entry(device_id, EntityKind.DEVICE).props.get("Connected"))

    @property
    def parked_count(self) -> int:
        return sum(len(children) for children in self._parked.values())

    def _emit(self, event: BluetoothEvent) -> None:
        LOGGER.debug("Event %s", event)
        if self._listener is not None:
            self._listener(event)

    def _parent_path(self, kind: EntityKind, path: str, props: Mapping[str, Any]) -> str | None:
        prop = _PARENT_PROPERTY[kind]
        if prop is None:
            return None
        parent = props.get(prop)
        if isinstance(parent, str) and parent:
            return parent
        return path.rsplit("/", 1)[0] or None

    def _iter_kind(self, kind: EntityKind) -> Iterator[_Entry]:
        for path in sorted(self._entries):
            entry = self._entries[path]
            if entry.kind is kind:
                yield entry

    def _entry(self, object_id: ObjectId, expected: EntityKind | None = None) -> _Entry:
        path = self.registry.resolve(object_id)
        entry = self._entries.get(path)
        if entry is None or entry.id != object_id:
            raise NotFoundError(f"Unknown or invalidated identifier {object_id}")
        if expected is not None and entry.kind is not expected:
            if expected is EntityKind.ADAPTER:
                raise AdapterNotFoundError(f"{object_id} is not an adapter")
            raise NotFoundError(f"{object_id} is not a {expected.name.lower()}")
        return entry

    def _owning_device(self, entry: _Entry) -> _Entry | None:
        current: _Entry | None = entry
        while current is not None and current.kind is not EntityKind.DEVICE:
            current = self._entries.get(current.parent) if current.parent else None
        return current

    def _gatt_entry(self, object_id: ObjectId, expected: EntityKind) -> _Entry:
        entry = self._entry(object_id, expected)
        device = self._owning_device(entry)
        if device is None:
            raise NotFoundError(f"{object_id} is not owned by a device")
        self._require_ready(device)
        return entry

    def _require_ready(self, device: _Entry) -> None:
        if not device.props.get("Connected"):
            raise NotReadyError(f"Device {device.id} is not connected")
        if not device.props.get("ServicesResolved"):
            raise NotReadyError(f"GATT services of device {device.id} are not resolved yet")

    def _after_insert(self, entry: _Entry) -> None:
        if entry.kind is EntityKind.ADAPTER:
            self._emit(AdapterAdded(self._adapter_info(entry)))
        elif entry.kind is EntityKind.DEVICE:
            self._emit(DeviceDiscovered(self._device_info(entry)))

    def _after_update(self, entry: _Entry, previous: Mapping[str, Any], keys: set[str]) -> None:
        if entry.kind is EntityKind.ADAPTER:
            self._emit(AdapterUpdated(self._adapter_info(entry), frozenset(keys)))
        elif entry.kind is EntityKind.DEVICE:
            self._after_device_update(entry, previous, keys)
        elif entry.kind is EntityKind.CHARACTERISTIC and "Value" in keys:
            value = _as_bytes(entry.props.get("Value"))
            if value is not None:
                device = self._owning_device(entry)
                self._emit(
                    CharacteristicValueChanged(
                        device_id=device.id,
                        characteristic_id=entry.id,
                        value=value,
                    )
                )

    def _after_device_update(self, entry: _Entry, previous: Mapping[str, Any], keys: set[str]) -> None:
        was_connected = bool(previous.get("Connected"))
        was_resolved = bool(previous.get("ServicesResolved"))
        connected = bool(entry.props.get("Connected"))
        resolved = bool(entry.props.get("ServicesResolved"))
        device_id: DeviceId = entry.id

        others = keys - _CONNECTION_PROPERTIES
        if others:
            self._emit(DeviceUpdated(self._device_info(entry), frozenset(others)))

        if connected and not was_connected:
            self._emit(DeviceConnected(device_id))
        elif was_connected and not connected:
            entry.props["ServicesResolved"] = False
            for child in sorted(entry.children):
                self._remove(child)
            self._emit(DeviceDisconnected(device_id))
            return

        if connected and resolved and not was_resolved:
            self._emit(ServicesResolved(device_id))

    def _remove(self, path: str) -> None:
        entry = self._entries.get(path)
        if entry is None:
            return
        device = self._owning_device(entry)
        for child in sorted(entry.children):
            self._remove(child)
        self._parked.pop(path, None)
        del self._entries[path]
        if entry.parent is not None and entry.parent in self._entries:
            self._entries[entry.parent].children.discard(path)
        self.registry.unregister(path)

        if entry.kind is EntityKind.CHARACTERISTIC and device is not None:
            self._emit(
                CharacteristicRemoved(
                    device_id=device.id,
                    characteristic_id=entry.id,
                )
            )
        elif entry.kind is EntityKind.DEVICE:
            self._emit(DeviceRemoved(entry.id))
        elif entry.kind is EntityKind.ADAPTER:
            self._emit(AdapterRemoved(entry.id))

    def _park(self, parent: str, path: str, announced: Mapping[str, Mapping[str, Any]]) -> None:
        children = self._parked.setdefault(parent, {})
        parked = children.get(path)
        if parked is None:
            children[path] = _Parked(
                received=self._clock(),
                interfaces={name: dict(props) for name, props in announced.items()},
            )
        else:
            for name, props in announced.items():
                parked.interfaces.setdefault(name, {}).update(props)
        LOGGER.debug("Parked %s until parent %s is announced", path, parent)

    def _unpark(self, path: str) -> None:
        for parent in list(self._parked):
            children = self._parked[parent]
            children.pop(path, None)
            if not children:
                del self._parked[parent]
        self._parked.pop(path, None)

    def _merge_parked(self, path: str, interface: str, changed: Mapping[str, Any]) -> bool:
        for children in self._parked.values():
            parked = children.get(path)
            if parked is not None and interface in parked.interfaces:
                parked.interfaces[interface].update(changed)
                return True
        return False

    def _replay_parked(self, parent: str) -> None:
        children = self._parked.pop(parent, None)
        if not children:
            return
        for path, parked in children.items():
            self.apply_object_added(path, parked.interfaces)

    def _prune_parked(self) -> None:
        if not self._parked:
            return
        deadline = self._clock() - self._staleness_s
        for parent in list(self._parked):
            children = self._parked[parent]
            for path in [p for p, parked in children.items() if parked.received < deadline]:
                del children[path]
                LOGGER.warning(
                    "Dropping %s: parent %s was not announced within %.1fs",
                    path,
                    parent,
                    self._staleness_s,
                )
            if not children:
                del self._parked[parent]

    def _adapter_info(self, entry: _Entry) -> AdapterInfo:
        props = entry.props
        return AdapterInfo(
            id=entry.id,
            name=entry.path.rsplit("/", 1)[-1],
            address=props.get("Address"),
            alias=props.get("Alias") or props.get("Name"),
            powered=bool(props.get("Powered", False)),
            discovering=bool(props.get("Discovering", False)),
        )

    def _device_info(self, entry: _Entry) -> DeviceInfo:
        props = entry.props
        adapter = self._entries.get(entry.parent) if entry.parent else None
        return DeviceInfo(
            id=entry.id,
            adapter_id=adapter.id if adapter is not None else None,
            mac_address=self._device_address(entry),
            address_type=props.get("AddressType"),
            name=props.get("Name"),
            alias=props.get("Alias"),
            appearance=props.get("Appearance"),
            rssi=props.get("RSSI"),
            tx_power=props.get("TxPower"),
            paired=bool(props.get("Paired", False)),
            trusted=bool(props.get("Trusted", False)),
            connected=bool(props.get("Connected", False)),
            services_resolved=bool(props.get("ServicesResolved", False)),
            service_uuids=tuple(_lenient_uuid(u) for u in props.get("UUIDs", ())),
            manufacturer_data={
                int(k): bytes(v) for k, v in dict(props.get("ManufacturerData") or {}).items()
            },
            service_data={
                _lenient_uuid(k): bytes(v) for k, v in dict(props.get("ServiceData") or {}).items()
            },
        )

    def _device_address(self, entry: _Entry) -> MacAddress:
        address = entry.props.get("Address")
        if isinstance(address, str):
            try:
                return MacAddress.parse(address)
            except InvalidAddressError:
                LOGGER.debug("Device %s reports malformed address %r", entry.path, address)
        tail = entry.path.rsplit("/", 1)[-1]
        try:
            return MacAddress.parse(tail.removeprefix("dev_").replace("_", ":"))
        except InvalidAddressError:
            return MacAddress(str(address or tail))

    def _service_info(self, entry: _Entry) -> ServiceInfo:
        return ServiceInfo(
            id=entry.id,
            device_id=self._entries[entry.parent].id,
            uuid=_lenient_uuid(entry.props.get("UUID", "")),
            primary=bool(entry.props.get("Primary", True)),
        )

    def _characteristic_info(self, entry: _Entry) -> CharacteristicInfo:
        return CharacteristicInfo(
            id=entry.id,
            service_id=self._entries[entry.parent].id,
            uuid=_lenient_uuid(entry.props.get("UUID", "")),
            flags=CharacteristicFlags.from_strings(entry.props.get("Flags", ()), strict=False),
            value=_as_bytes(entry.props.get("Value")),
            notifying=bool(entry.props.get("Notifying", False)),
        )

    def _descriptor_info(self, entry: _Entry) -> DescriptorInfo:
        return DescriptorInfo(
            id=entry.id,
            characteristic_id=self._entries[entry.parent].id,
            uuid=_lenient_uuid(entry.props.get("UUID", "")),
            value=_as_bytes(entry.props.get("Value")),
        )
