"""Core data models shared by the registry, cache, session and CLI."""

from __future__ import annotations

import enum
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, ClassVar

from bleak.uuids import normalize_uuid_16, normalize_uuid_32, normalize_uuid_str, uuidstr_to_str

from bluezctl.core.errors import InvalidAddressError, InvalidFlagError, InvalidUuidError

_MAC_RE = re.compile(r"^[0-9A-F]{2}(?::[0-9A-F]{2}){5}$", re.IGNORECASE)
LOGGER = logging.getLogger(__name__)


class EntityKind(enum.Enum):
    ADAPTER = "adapter"
    DEVICE = "device"
    SERVICE = "service"
    CHARACTERISTIC = "characteristic"
    DESCRIPTOR = "descriptor"


@dataclass(frozen=True)
class ObjectId:
    """Opaque identifier handed out by the identifier registry.

    Serials are never reused within a session, so two ids compare equal only
    when they name the same announcement of the same physical entity.
    """

    serial: int
    kind: ClassVar[EntityKind]

    def __str__(self) -> str:
        return f"{self.kind.value}#{self.serial}"


@dataclass(frozen=True)
class AdapterId(ObjectId):
    kind: ClassVar[EntityKind] = EntityKind.ADAPTER


@dataclass(frozen=True)
class DeviceId(ObjectId):
    kind: ClassVar[EntityKind] = EntityKind.DEVICE


@dataclass(frozen=True)
class ServiceId(ObjectId):
    kind: ClassVar[EntityKind] = EntityKind.SERVICE


@dataclass(frozen=True)
class CharacteristicId(ObjectId):
    kind: ClassVar[EntityKind] = EntityKind.CHARACTERISTIC


@dataclass(frozen=True)
class DescriptorId(ObjectId):
    kind: ClassVar[EntityKind] = EntityKind.DESCRIPTOR


ID_TYPES: dict[EntityKind, type[ObjectId]] = {
    EntityKind.ADAPTER: AdapterId,
    EntityKind.DEVICE: DeviceId,
    EntityKind.SERVICE: ServiceId,
    EntityKind.CHARACTERISTIC: CharacteristicId,
    EntityKind.DESCRIPTOR: DescriptorId,
}


@dataclass(frozen=True, order=True)
class MacAddress:
    value: str

    @classmethod
    def parse(cls, text: str) -> MacAddress:
        candidate = text.strip()
        if not _MAC_RE.match(candidate):
            raise InvalidAddressError(f"Invalid MAC address '{text}'")
        return cls(candidate.upper())

    def __str__(self) -> str:
        return self.value


def normalize_uuid(value: str) -> str:
    """Return the lower-case 128-bit form of a 16-, 32- or 128-bit UUID string."""
    try:
        return normalize_uuid_str(value.strip())
    except (ValueError, AttributeError) as exc:
        raise InvalidUuidError(f"Invalid UUID '{value}'") from exc


def uuid_from_u16(short: int) -> str:
    return normalize_uuid_16(short)


def uuid_from_u32(short: int) -> str:
    return normalize_uuid_32(short)


def describe_uuid(uuid: str) -> str:
    return uuidstr_to_str(uuid)


class CharacteristicFlags(enum.Flag):
    NONE = 0
    BROADCAST = enum.auto()
    READ = enum.auto()
    WRITE_WITHOUT_RESPONSE = enum.auto()
    WRITE = enum.auto()
    NOTIFY = enum.auto()
    INDICATE = enum.auto()
    AUTHENTICATED_SIGNED_WRITES = enum.auto()
    EXTENDED_PROPERTIES = enum.auto()
    RELIABLE_WRITE = enum.auto()
    WRITABLE_AUXILIARIES = enum.auto()
    ENCRYPT_READ = enum.auto()
    ENCRYPT_WRITE = enum.auto()
    ENCRYPT_AUTHENTICATED_READ = enum.auto()
    ENCRYPT_AUTHENTICATED_WRITE = enum.auto()
    SECURE_READ = enum.auto()
    SECURE_WRITE = enum.auto()
    AUTHORIZE = enum.auto()

    @classmethod
    def from_strings(cls, values: Iterable[str], *, strict: bool = True) -> CharacteristicFlags:
        flags = cls.NONE
        for value in values:
            member = cls.__members__.get(value.strip().upper().replace("-", "_"))
            if member is None or member is cls.NONE:
                if strict:
                    raise InvalidFlagError(f"Invalid characteristic flag '{value}'")
                LOGGER.debug("Ignoring unknown characteristic flag %r", value)
                continue
            flags |= member
        return flags

    def to_strings(self) -> tuple[str, ...]:
        return tuple(
            member.name.lower().replace("_", "-")
            for member in type(self)
            if member is not type(self).NONE and member in self
        )


class ScanTransport(enum.Enum):
    AUTO = "auto"
    BREDR = "bredr"
    LE = "le"


@dataclass(frozen=True)
class DiscoveryFilter:
    """Discovery filter parameters; unset fields keep the daemon defaults."""

    service_uuids: tuple[str, ...] = ()
    rssi_threshold: int | None = None
    pathloss_threshold: int | None = None
    transport: ScanTransport | None = None
    duplicate_data: bool | None = None
    discoverable: bool | None = None
    pattern: str | None = None

    def to_properties(self) -> dict[str, Any]:
        props: dict[str, Any] = {}
        if self.service_uuids:
            props["UUIDs"] = [normalize_uuid(u) for u in self.service_uuids]
        if self.rssi_threshold is not None:
            props["RSSI"] = self.rssi_threshold
        if self.pathloss_threshold is not None:
            props["Pathloss"] = self.pathloss_threshold
        if self.transport is not None:
            props["Transport"] = self.transport.value
        if self.duplicate_data is not None:
            props["DuplicateData"] = self.duplicate_data
        if self.discoverable is not None:
            props["Discoverable"] = self.discoverable
        if self.pattern is not None:
            props["Pattern"] = self.pattern
        return props


@dataclass(frozen=True)
class AdapterInfo:
    id: AdapterId
    name: str
    address: str | None = None
    alias: str | None = None
    powered: bool = False
    discovering: bool = False


@dataclass(frozen=True)
class DeviceInfo:
    id: DeviceId
    adapter_id: AdapterId | None
    mac_address: MacAddress
    address_type: str | None = None
    name: str | None = None
    alias: str | None = None
    appearance: int | None = None
    rssi: int | None = None
    tx_power: int | None = None
    paired: bool = False
    trusted: bool = False
    connected: bool = False
    services_resolved: bool = False
    service_uuids: tuple[str, ...] = ()
    manufacturer_data: dict[int, bytes] = field(default_factory=dict)
    service_data: dict[str, bytes] = field(default_factory=dict)


@dataclass(frozen=True)
class ServiceInfo:
    id: ServiceId
    device_id: DeviceId
    uuid: str
    primary: bool = True


@dataclass(frozen=True)
class CharacteristicInfo:
    id: CharacteristicId
    service_id: ServiceId
    uuid: str
    flags: CharacteristicFlags = CharacteristicFlags.NONE
    value: bytes | None = None
    notifying: bool = False


@dataclass(frozen=True)
class DescriptorInfo:
    id: DescriptorId
    characteristic_id: CharacteristicId
    uuid: str
    value: bytes | None = None


@dataclass(frozen=True)
class SessionConfig:
    adapter: str = "hci0"
    bus: str = "system"
    call_timeout_s: float = 30.0
    connect_timeout_s: float = 30.0
    event_backlog: int = 256
    orphan_staleness_s: float = 5.0
