"""D-Bus transport to the BlueZ daemon built on dbus-fast."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from dbus_fast import BusType, Message, MessageType, Variant, unpack_variants
from dbus_fast.aio import MessageBus
from dbus_fast.errors import AuthError

from bluezctl.core import interfaces
from bluezctl.core.errors import DaemonError, TransportError
from bluezctl.transports.base import ObjectAdded, ObjectRemoved, PropertiesChanged, TopologyEvent

LOGGER = logging.getLogger(__name__)

_DBUS_SERVICE = "org.freedesktop.DBus"
_DBUS_PATH = "/org/freedesktop/DBus"

_MATCH_RULES = (
    f"type='signal',sender='{interfaces.BLUEZ_SERVICE}',"
    f"interface='{interfaces.OBJECT_MANAGER_INTERFACE}',member='InterfacesAdded'",
    f"type='signal',sender='{interfaces.BLUEZ_SERVICE}',"
    f"interface='{interfaces.OBJECT_MANAGER_INTERFACE}',member='InterfacesRemoved'",
    f"type='signal',sender='{interfaces.BLUEZ_SERVICE}',"
    f"interface='{interfaces.PROPERTIES_INTERFACE}',member='PropertiesChanged',"
    f"path_namespace='{interfaces.BLUEZ_ROOT_PATH}'",
)

# Input signature for every daemon method the session invokes.
SIGNATURES: dict[tuple[str, str], str] = {
    (interfaces.OBJECT_MANAGER_INTERFACE, "GetManagedObjects"): "",
    (interfaces.PROPERTIES_INTERFACE, "Get"): "ss",
    (interfaces.PROPERTIES_INTERFACE, "GetAll"): "s",
    (interfaces.PROPERTIES_INTERFACE, "Set"): "ssv",
    (interfaces.ADAPTER_INTERFACE, "StartDiscovery"): "",
    (interfaces.ADAPTER_INTERFACE, "StopDiscovery"): "",
    (interfaces.ADAPTER_INTERFACE, "SetDiscoveryFilter"): "a{sv}",
    (interfaces.ADAPTER_INTERFACE, "RemoveDevice"): "o",
    (interfaces.ADAPTER_INTERFACE, "ConnectDevice"): "a{sv}",
    (interfaces.DEVICE_INTERFACE, "Connect"): "",
    (interfaces.DEVICE_INTERFACE, "Disconnect"): "",
    (interfaces.GATT_CHARACTERISTIC_INTERFACE, "ReadValue"): "a{sv}",
    (interfaces.GATT_CHARACTERISTIC_INTERFACE, "WriteValue"): "aya{sv}",
    (interfaces.GATT_CHARACTERISTIC_INTERFACE, "StartNotify"): "",
    (interfaces.GATT_CHARACTERISTIC_INTERFACE, "StopNotify"): "",
    (interfaces.GATT_DESCRIPTOR_INTERFACE, "ReadValue"): "a{sv}",
    (interfaces.GATT_DESCRIPTOR_INTERFACE, "WriteValue"): "aya{sv}",
}

# Variant signatures for dictionary entries and properties the session writes.
VARIANT_SIGNATURES: dict[str, str] = {
    "UUIDs": "as",
    "RSSI": "n",
    "Pathloss": "q",
    "Transport": "s",
    "DuplicateData": "b",
    "Discoverable": "b",
    "Pattern": "s",
    "Address": "s",
    "AddressType": "s",
    "type": "s",
    "offset": "q",
    "Powered": "b",
    "Pairable": "b",
    "Alias": "s",
    "Trusted": "b",
    "Blocked": "b",
}


def _guess_signature(value: Any) -> str:
    if isinstance(value, bool):
        return "b"
    if isinstance(value, int):
        return "i"
    if isinstance(value, float):
        return "d"
    if isinstance(value, str):
        return "s"
    if isinstance(value, (bytes, bytearray)):
        return "ay"
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return "as"
    raise TransportError(f"Cannot marshal {value!r} into a D-Bus variant")


def to_variant(key: str, value: Any) -> Variant:
    if isinstance(value, Variant):
        return value
    signature = VARIANT_SIGNATURES.get(key) or _guess_signature(value)
    if signature == "as":
        value = list(value)
    elif signature == "ay":
        value = bytes(value)
    return Variant(signature, value)


def marshal_args(interface: str, method: str, args: Sequence[Any]) -> tuple[str, list[Any]]:
    """Convert plain Python arguments into a dbus-fast message body."""
    try:
        signature = SIGNATURES[(interface, method)]
    except KeyError as exc:
        raise TransportError(f"No signature known for {interface}.{method}") from exc
    body: list[Any] = []
    for position, arg in enumerate(args):
        if isinstance(arg, Mapping):
            body.append({str(key): to_variant(str(key), value) for key, value in arg.items()})
        elif signature.endswith("v") and position == len(args) - 1:
            key = args[position - 1] if position else ""
            body.append(to_variant(str(key), arg))
        elif isinstance(arg, (bytes, bytearray)):
            body.append(bytes(arg))
        else:
            body.append(arg)
    return signature, body


def translate_signal(message: Message) -> TopologyEvent | None:
    """Map an ObjectManager or Properties signal to a raw topology event."""
    if message.message_type != MessageType.SIGNAL:
        return None
    if message.interface == interfaces.OBJECT_MANAGER_INTERFACE:
        if message.member == "InterfacesAdded":
            path, announced = message.body
            if not path.startswith(interfaces.BLUEZ_ROOT_PATH):
                return None
            return ObjectAdded(path=path, interfaces=unpack_variants(announced))
        if message.member == "InterfacesRemoved":
            path, removed = message.body
            if not path.startswith(interfaces.BLUEZ_ROOT_PATH):
                return None
            return ObjectRemoved(path=path, interfaces=tuple(removed))
    elif message.interface == interfaces.PROPERTIES_INTERFACE and message.member == "PropertiesChanged":
        if not (message.path or "").startswith(interfaces.BLUEZ_ROOT_PATH):
            return None
        interface, changed, invalidated = message.body
        return PropertiesChanged(
            path=message.path,
            interface=interface,
            changed=unpack_variants(changed),
            invalidated=tuple(invalidated),
        )
    return None


class TopologyStream:
    """Ordered queue of topology events fed by the bus message handler."""

    def __init__(self, owner: BlueZDBusConnection) -> None:
        self._owner = owner
        self._queue: asyncio.Queue[TopologyEvent | TransportError | None] = asyncio.Queue()

    def __aiter__(self) -> TopologyStream:
        return self

    async def __anext__(self) -> TopologyEvent:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, TransportError):
            raise item
        return item

    def feed(self, item: TopologyEvent | TransportError | None) -> None:
        self._queue.put_nowait(item)

    async def aclose(self) -> None:
        self._owner._detach(self)
        self.feed(None)


class BlueZDBusConnection:
    """`BusConnection` implementation talking to org.bluez over D-Bus."""

    def __init__(self, bus: MessageBus) -> None:
        self._bus = bus
        self._streams: list[TopologyStream] = []
        self._closing = False
        self._bus.add_message_handler(self._on_message)
        self._watchdog = asyncio.ensure_future(self._watch_disconnect())

    @classmethod
    async def connect(cls, bus_type: str = "system") -> BlueZDBusConnection:
        kind = BusType.SESSION if bus_type == "session" else BusType.SYSTEM
        try:
            bus = await MessageBus(bus_type=kind).connect()
        except (OSError, EOFError, AuthError) as exc:
            raise TransportError(f"Could not connect to the {bus_type} bus: {exc}") from exc
        connection = cls(bus)
        try:
            for rule in _MATCH_RULES:
                await connection._dbus_call(
                    Message(
                        destination=_DBUS_SERVICE,
                        path=_DBUS_PATH,
                        interface=_DBUS_SERVICE,
                        member="AddMatch",
                        signature="s",
                        body=[rule],
                    )
                )
        except BaseException:
            await connection.close()
            raise
        LOGGER.debug("Connected to the %s bus", bus_type)
        return connection

    def subscribe_topology(self) -> TopologyStream:
        stream = TopologyStream(self)
        if not self._bus.connected:
            stream.feed(TransportError("D-Bus connection is closed"))
        else:
            self._streams.append(stream)
        return stream

    async def call(
        self,
        path: str,
        interface: str,
        method: str,
        args: Sequence[Any] = (),
    ) -> Any:
        signature, body = marshal_args(interface, method, args)
        reply = await self._dbus_call(
            Message(
                destination=interfaces.BLUEZ_SERVICE,
                path=path,
                interface=interface,
                member=method,
                signature=signature,
                body=body,
            )
        )
        if not reply.body:
            return None
        if len(reply.body) == 1:
            return unpack_variants(reply.body[0])
        return unpack_variants(list(reply.body))

    async def close(self) -> None:
        self._closing = True
        for stream in list(self._streams):
            stream.feed(None)
        self._streams.clear()
        if self._bus.connected:
            self._bus.remove_message_handler(self._on_message)
            self._bus.disconnect()
        self._watchdog.cancel()

    async def _dbus_call(self, message: Message) -> Message:
        if not self._bus.connected:
            raise TransportError("D-Bus connection is closed")
        try:
            reply = await self._bus.call(message)
        except (OSError, EOFError) as exc:
            raise TransportError(f"D-Bus call {message.interface}.{message.member} failed: {exc}") from exc
        if reply is None:
            raise TransportError(f"No reply to {message.interface}.{message.member}")
        if reply.message_type == MessageType.ERROR:
            text = reply.body[0] if reply.body else ""
            raise DaemonError(reply.error_name or "", str(text))
        return reply

    def _on_message(self, message: Message) -> None:
        event = translate_signal(message)
        if event is None:
            return
        LOGGER.debug("Signal %s", event)
        for stream in self._streams:
            stream.feed(event)

    def _detach(self, stream: TopologyStream) -> None:
        if stream in self._streams:
            self._streams.remove(stream)

    async def _watch_disconnect(self) -> None:
        reason = "D-Bus connection lost"
        try:
            await self._bus.wait_for_disconnect()
        except Exception as exc:
            reason = f"D-Bus connection lost: {exc}"
        if self._closing:
            return
        LOGGER.error(reason)
        streams, self._streams = self._streams, []
        for stream in streams:
            stream.feed(TransportError(reason))
