from __future__ import annotations

import pytest

from bluezctl.core.device_match import best_device_for_hint, match_score
from bluezctl.core.errors import AmbiguousDeviceError, NotFoundError
from bluezctl.core.model import AdapterId, DeviceId, DeviceInfo, MacAddress


def _device(serial: int, mac: str, name: str | None) -> DeviceInfo:
    return DeviceInfo(
        id=DeviceId(serial),
        adapter_id=AdapterId(1),
        mac_address=MacAddress.parse(mac),
        name=name,
        alias=name,
    )


def test_match_score_prefers_exact_address() -> None:
    device = _device(1, "88:92:CC:00:11:22", "Heart Strap")
    assert match_score(device, "88:92:cc:00:11:22") == 3
    assert match_score(device, "00:11:22") == 2
    assert match_score(device, "heart") == 1
    assert match_score(device, "scale") == 0


def test_best_device_prefers_address_over_name() -> None:
    by_name = _device(1, "AA:BB:CC:00:00:01", "CC 00 sensor")
    by_address = _device(2, "11:22:CC:00:33:44", "Other")

    picked = best_device_for_hint("CC:00:33", [by_name, by_address])
    assert picked.id == DeviceId(2)


def test_no_match_raises_not_found() -> None:
    with pytest.raises(NotFoundError):
        best_device_for_hint("scale", [_device(1, "00:00:00:00:00:01", "Thermo")])


def test_equal_matches_are_ambiguous() -> None:
    devices = [
        _device(1, "00:00:00:00:00:01", "Thermo Kitchen"),
        _device(2, "00:00:00:00:00:02", "Thermo Garage"),
    ]
    with pytest.raises(AmbiguousDeviceError, match="several devices"):
        best_device_for_hint("thermo", devices)


def test_unnamed_device_matches_by_address_only() -> None:
    device = _device(1, "00:00:00:00:00:01", None)
    assert best_device_for_hint("00:00:00:00:00:01", [device]) is device
