"""In-memory stand-ins for the daemon connection used across tests."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

from bluezctl.core import interfaces
from bluezctl.core.errors import TransportError
from bluezctl.core.model import SessionConfig
from bluezctl.core.session import BluetoothSession

ADAPTER_PATH = "/org/bluez/hci0"
DEVICE_ADDRESS = "AA:BB:CC:DD:EE:FF"
DEVICE_PATH = f"{ADAPTER_PATH}/dev_AA_BB_CC_DD_EE_FF"
SERVICE_PATH = f"{DEVICE_PATH}/service0010"
CHAR_PATH = f"{SERVICE_PATH}/char0011"
DESC_PATH = f"{CHAR_PATH}/desc0013"

BATTERY_SERVICE = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL = "00002a19-0000-1000-8000-00805f9b34fb"
CCCD = "00002902-0000-1000-8000-00805f9b34fb"


def adapter_ifaces(*, powered: bool = True) -> dict[str, dict[str, Any]]:
    return {
        interfaces.ADAPTER_INTERFACE: {
            "Address": "00:11:22:33:44:55",
            "Alias": "workstation",
            "Powered": powered,
            "Discovering": False,
        },
        "org.bluez.LEAdvertisingManager1": {},
    }


def device_ifaces(
    *,
    connected: bool = False,
    resolved: bool = False,
    name: str = "Thermo",
    address: str = DEVICE_ADDRESS,
) -> dict[str, dict[str, Any]]:
    return {
        interfaces.DEVICE_INTERFACE: {
            "Address": address,
            "AddressType": "public",
            "Name": name,
            "Alias": name,
            "Adapter": ADAPTER_PATH,
            "Connected": connected,
            "ServicesResolved": resolved,
            "Paired": False,
            "Trusted": False,
            "UUIDs": [BATTERY_SERVICE],
            "RSSI": -60,
            "ManufacturerData": {76: b"\x02\x15"},
        },
        interfaces.PROPERTIES_INTERFACE: {},
    }


def service_ifaces(*, uuid: str = BATTERY_SERVICE) -> dict[str, dict[str, Any]]:
    return {
        interfaces.GATT_SERVICE_INTERFACE: {
            "UUID": uuid,
            "Device": DEVICE_PATH,
            "Primary": True,
        }
    }


def characteristic_ifaces(
    *,
    uuid: str = BATTERY_LEVEL,
    flags: tuple[str, ...] = ("read", "write", "write-without-response", "notify"),
) -> dict[str, dict[str, Any]]:
    return {
        interfaces.GATT_CHARACTERISTIC_INTERFACE: {
            "UUID": uuid,
            "Service": SERVICE_PATH,
            "Flags": list(flags),
            "Notifying": False,
        }
    }


def descriptor_ifaces() -> dict[str, dict[str, Any]]:
    return {
        interfaces.GATT_DESCRIPTOR_INTERFACE: {
            "UUID": CCCD,
            "Characteristic": CHAR_PATH,
        }
    }


def connected_objects(**char_kwargs: Any) -> dict[str, dict[str, dict[str, Any]]]:
    return {
        ADAPTER_PATH: adapter_ifaces(),
        DEVICE_PATH: device_ifaces(connected=True, resolved=True),
        SERVICE_PATH: service_ifaces(),
        CHAR_PATH: characteristic_ifaces(**char_kwargs),
        DESC_PATH: descriptor_ifaces(),
    }


class FakeTopologyStream:
    def __init__(self) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue()

    def __aiter__(self) -> FakeTopologyStream:
        return self

    async def __anext__(self) -> Any:
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


Handler = Callable[[str, list[Any]], Any]


class FakeBus:
    """Scriptable `BusConnection`.

    Handlers registered with `on` receive ``(path, args)`` and may return a
    value, an awaitable, or raise. Unhandled methods reply with ``None``.
    """

    def __init__(self, objects: dict[str, dict[str, dict[str, Any]]] | None = None) -> None:
        self.objects = objects if objects is not None else {ADAPTER_PATH: adapter_ifaces()}
        self.calls: list[tuple[str, str, str, list[Any]]] = []
        self.handlers: dict[tuple[str, str], Handler] = {}
        self.stream: FakeTopologyStream | None = None
        self.closed = False

    def subscribe_topology(self) -> FakeTopologyStream:
        self.stream = FakeTopologyStream()
        return self.stream

    def on(self, interface: str, method: str, handler: Handler) -> None:
        self.handlers[(interface, method)] = handler

    async def call(self, path: str, interface: str, method: str, args: Any = ()) -> Any:
        self.calls.append((path, interface, method, list(args)))
        if (interface, method) == (interfaces.OBJECT_MANAGER_INTERFACE, "GetManagedObjects"):
            return {p: {i: dict(props) for i, props in ifaces.items()} for p, ifaces in self.objects.items()}
        handler = self.handlers.get((interface, method))
        if handler is None:
            return None
        result = handler(path, list(args))
        if inspect.isawaitable(result):
            result = await result
        return result

    def calls_to(self, method: str) -> list[tuple[str, str, str, list[Any]]]:
        return [call for call in self.calls if call[2] == method]

    def push(self, event: Any) -> None:
        assert self.stream is not None, "session has not subscribed yet"
        self.stream.queue.put_nowait(event)

    def lose_connection(self, reason: str = "bus went away") -> None:
        self.push(TransportError(reason))

    async def close(self) -> None:
        self.closed = True


async def flush() -> None:
    """Let the session's topology task drain everything queued so far."""
    for _ in range(5):
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)


async def open_session(bus: FakeBus, **config: Any) -> BluetoothSession:
    return await BluetoothSession.open(bus=bus, config=SessionConfig(**config))
