"""Typed high-level events derived from daemon topology changes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from bluezctl.core.model import (
    AdapterId,
    AdapterInfo,
    CharacteristicId,
    DeviceId,
    DeviceInfo,
    ObjectId,
)


@dataclass(frozen=True)
class AdapterAdded:
    adapter: AdapterInfo

    @property
    def adapter_id(self) -> AdapterId:
        return self.adapter.id


@dataclass(frozen=True)
class AdapterUpdated:
    adapter: AdapterInfo
    changed: frozenset[str]

    @property
    def adapter_id(self) -> AdapterId:
        return self.adapter.id


@dataclass(frozen=True)
class AdapterRemoved:
    adapter_id: AdapterId


@dataclass(frozen=True)
class DeviceDiscovered:
    device: DeviceInfo

    @property
    def device_id(self) -> DeviceId:
        return self.device.id


@dataclass(frozen=True)
class DeviceUpdated:
    device: DeviceInfo
    changed: frozenset[str]

    @property
    def device_id(self) -> DeviceId:
        return self.device.id


@dataclass(frozen=True)
class DeviceConnected:
    device_id: DeviceId


@dataclass(frozen=True)
class DeviceDisconnected:
    device_id: DeviceId


@dataclass(frozen=True)
class ServicesResolved:
    device_id: DeviceId


@dataclass(frozen=True)
class DeviceRemoved:
    device_id: DeviceId


@dataclass(frozen=True)
class CharacteristicValueChanged:
    device_id: DeviceId
    characteristic_id: CharacteristicId
    value: bytes


@dataclass(frozen=True)
class CharacteristicRemoved:
    device_id: DeviceId
    characteristic_id: CharacteristicId


@dataclass(frozen=True)
class StreamOverflowed:
    """Marker delivered in place of events a slow subscriber missed.

    The subscriber should re-read whatever state it tracks from the session.
    """

    missed: int


BluetoothEvent = Union[
    AdapterAdded,
    AdapterUpdated,
    AdapterRemoved,
    DeviceDiscovered,
    DeviceUpdated,
    DeviceConnected,
    DeviceDisconnected,
    ServicesResolved,
    DeviceRemoved,
    CharacteristicValueChanged,
    CharacteristicRemoved,
    StreamOverflowed,
]


def concerns(event: BluetoothEvent, object_id: ObjectId) -> bool:
    """Return True when ``event`` is about ``object_id`` or an object it owns."""
    for attr in ("characteristic_id", "device_id", "adapter_id"):
        if getattr(event, attr, None) == object_id:
            return True
    return False
