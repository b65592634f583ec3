"""Resolve a user-supplied device hint against known devices."""

from __future__ import annotations

from collections.abc import Iterable

from bluezctl.core.errors import AmbiguousDeviceError, NotFoundError
from bluezctl.core.model import DeviceInfo


def _address_score(device: DeviceInfo, hint: str) -> int:
    address = str(device.mac_address).upper()
    wanted = hint.strip().upper().replace("-", ":").replace("_", ":")
    if address == wanted:
        return 3
    if wanted and wanted in address:
        return 2
    return 0


def _name_contains_match(device: DeviceInfo, hint: str) -> bool:
    lowered = hint.strip().lower()
    if not lowered:
        return False
    return any(lowered in label.lower() for label in (device.name, device.alias) if label)


def match_score(device: DeviceInfo, hint: str) -> int:
    score = _address_score(device, hint)
    if score:
        return score
    if _name_contains_match(device, hint):
        return 1
    return 0


def best_device_for_hint(hint: str, devices: Iterable[DeviceInfo]) -> DeviceInfo:
    best: list[DeviceInfo] = []
    best_score = 0
    for device in devices:
        score = match_score(device, hint)
        if score > best_score:
            best = [device]
            best_score = score
        elif score and score == best_score:
            best.append(device)
    if not best:
        raise NotFoundError(f"No known device matches '{hint}'")
    if len(best) > 1:
        candidates = ", ".join(f"{d.mac_address} ({d.name or d.alias or '?'})" for d in best)
        raise AmbiguousDeviceError(f"'{hint}' matches several devices: {candidates}")
    return best[0]
