from __future__ import annotations

import pytest

from bluezctl.core.errors import (
    AdapterBusyError,
    DaemonError,
    InvalidAddressError,
    InvalidFlagError,
    InvalidUuidError,
    NotConnectedError,
    NotFoundError,
    OperationNotSupportedError,
    OperationTimeoutError,
    map_daemon_error,
)
from bluezctl.core.events import CharacteristicValueChanged, DeviceConnected, concerns
from bluezctl.core.model import (
    AdapterId,
    CharacteristicFlags,
    CharacteristicId,
    DeviceId,
    DiscoveryFilter,
    MacAddress,
    ScanTransport,
    normalize_uuid,
    uuid_from_u16,
    uuid_from_u32,
)


def test_mac_address_parse_normalizes_case() -> None:
    assert MacAddress.parse(" aa:bb:cc:dd:ee:0f ") == MacAddress("AA:BB:CC:DD:EE:0F")


@pytest.mark.parametrize("text", ["", "AA:BB:CC:DD:EE", "AA-BB-CC-DD-EE-FF", "GG:BB:CC:DD:EE:FF"])
def test_mac_address_parse_rejects_malformed(text: str) -> None:
    with pytest.raises(InvalidAddressError):
        MacAddress.parse(text)


def test_uuid_helpers() -> None:
    assert normalize_uuid("180F") == "0000180f-0000-1000-8000-00805f9b34fb"
    assert uuid_from_u16(0x2A19) == "00002a19-0000-1000-8000-00805f9b34fb"
    assert uuid_from_u32(0x12345678) == "12345678-0000-1000-8000-00805f9b34fb"
    with pytest.raises(InvalidUuidError):
        normalize_uuid("not-a-uuid")


def test_characteristic_flags_from_strings() -> None:
    flags = CharacteristicFlags.from_strings(["read", "write-without-response", "encrypt-authenticated-read"])
    assert CharacteristicFlags.READ in flags
    assert CharacteristicFlags.WRITE_WITHOUT_RESPONSE in flags
    assert CharacteristicFlags.WRITE not in flags
    assert set(flags.to_strings()) == {"read", "write-without-response", "encrypt-authenticated-read"}


def test_characteristic_flags_reject_unknown_when_strict() -> None:
    with pytest.raises(InvalidFlagError):
        CharacteristicFlags.from_strings(["read", "teleport"])
    assert CharacteristicFlags.from_strings(["teleport"], strict=False) == CharacteristicFlags.NONE


def test_discovery_filter_omits_unset_fields() -> None:
    assert DiscoveryFilter().to_properties() == {}
    props = DiscoveryFilter(
        service_uuids=("180d",),
        rssi_threshold=-70,
        transport=ScanTransport.LE,
        duplicate_data=False,
    ).to_properties()
    assert props == {
        "UUIDs": ["0000180d-0000-1000-8000-00805f9b34fb"],
        "RSSI": -70,
        "Transport": "le",
        "DuplicateData": False,
    }


def test_identifiers_of_different_kinds_differ() -> None:
    assert AdapterId(1) != DeviceId(1)
    assert str(DeviceId(4)) == "device#4"


def test_concerns_matches_owner_and_target() -> None:
    event = CharacteristicValueChanged(
        device_id=DeviceId(2),
        characteristic_id=CharacteristicId(9),
        value=b"",
    )
    assert concerns(event, DeviceId(2))
    assert concerns(event, CharacteristicId(9))
    assert not concerns(event, CharacteristicId(10))
    assert not concerns(DeviceConnected(DeviceId(3)), DeviceId(2))


@pytest.mark.parametrize(
    ("name", "message", "expected"),
    [
        ("org.bluez.Error.NotConnected", "", NotConnectedError),
        ("org.bluez.Error.Failed", "Not connected", NotConnectedError),
        ("org.bluez.Error.NotSupported", "", OperationNotSupportedError),
        ("org.freedesktop.DBus.Error.NoReply", "", OperationTimeoutError),
        ("org.freedesktop.DBus.Error.UnknownObject", "", NotFoundError),
        ("org.bluez.Error.InProgress", "", AdapterBusyError),
        ("org.bluez.Error.NotPermitted", "Read not permitted", DaemonError),
    ],
)
def test_map_daemon_error(name: str, message: str, expected: type) -> None:
    error = map_daemon_error(name, message)
    assert type(error) is expected


def test_unmapped_daemon_error_keeps_name_and_message() -> None:
    error = map_daemon_error("org.bluez.Error.NotPermitted", "Read not permitted")
    assert error.name == "org.bluez.Error.NotPermitted"
    assert error.message == "Read not permitted"
