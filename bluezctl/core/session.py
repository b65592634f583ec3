"""Session layer used by the public API, the CLI and third-party tooling."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Hashable, Sequence
from typing import Any

from bluezctl.core import interfaces
from bluezctl.core.errors import (
    AdapterNotFoundError,
    BluezctlError,
    DaemonError,
    NoBluetoothAdaptersError,
    NotConnectedError,
    NotFoundError,
    OperationNotSupportedError,
    OperationTimeoutError,
    TransportError,
    UuidNotFoundError,
    map_daemon_error,
)
from bluezctl.core.event_stream import EventMultiplexer, EventSubscription
from bluezctl.core.events import (
    BluetoothEvent,
    CharacteristicRemoved,
    DeviceDisconnected,
    DeviceDiscovered,
    DeviceRemoved,
    ServicesResolved,
    concerns,
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
    ServiceId,
    ServiceInfo,
    SessionConfig,
    normalize_uuid,
)
from bluezctl.core.topology import TopologyCache
from bluezctl.transports.base import BusConnection, TopologyEvent

_READ_FLAGS = (
    CharacteristicFlags.READ
    | CharacteristicFlags.ENCRYPT_READ
    | CharacteristicFlags.ENCRYPT_AUTHENTICATED_READ
    | CharacteristicFlags.SECURE_READ
)
_WRITE_FLAGS = (
    CharacteristicFlags.WRITE
    | CharacteristicFlags.ENCRYPT_WRITE
    | CharacteristicFlags.ENCRYPT_AUTHENTICATED_WRITE
    | CharacteristicFlags.SECURE_WRITE
    | CharacteristicFlags.RELIABLE_WRITE
    | CharacteristicFlags.AUTHENTICATED_SIGNED_WRITES
)
_NOTIFY_FLAGS = CharacteristicFlags.NOTIFY | CharacteristicFlags.INDICATE

LOGGER = logging.getLogger(__name__)


class _Watchers:
    """Futures waiting for an outcome concerning some key.

    Outcomes are delivered as future results; an exception instance as the
    result means the waiter must raise it.
    """

    def __init__(self) -> None:
        self._futures: dict[Hashable, set[asyncio.Future[Any]]] = {}

    def watch(self, key: Hashable) -> asyncio.Future[Any]:
        future = asyncio.get_running_loop().create_future()
        self._futures.setdefault(key, set()).add(future)
        return future

    def discard(self, key: Hashable, future: asyncio.Future[Any]) -> None:
        futures = self._futures.get(key)
        if futures is None:
            return
        futures.discard(future)
        if not futures:
            del self._futures[key]

    def settle(self, key: Hashable, outcome: Any) -> None:
        for future in self._futures.pop(key, ()):
            if not future.done():
                future.set_result(outcome)

    def settle_all(self, outcome: Any) -> None:
        for key in list(self._futures):
            self.settle(key, outcome)


class BluetoothSession:
    """Owned connection to the Bluetooth daemon.

    Opening a session subscribes to topology changes, bulk-loads the daemon's
    current object graph and starts a background task that keeps the topology
    cache current. All public operations are coroutines; the ones that talk to
    the daemon accept a ``timeout`` in seconds and raise
    `OperationTimeoutError` when it expires.
    """

    def __init__(self, bus: BusConnection, config: SessionConfig | None = None) -> None:
        self.config = config or SessionConfig()
        self._bus = bus
        self._events = EventMultiplexer(backlog=self.config.event_backlog)
        self._cache = TopologyCache(
            listener=self._dispatch,
            staleness_s=self.config.orphan_staleness_s,
        )
        self._resolved = _Watchers()
        self._dropped = _Watchers()
        self._discovered = _Watchers()
        self._notify_counts: dict[CharacteristicId, int] = {}
        self._notify_locks: dict[CharacteristicId, asyncio.Lock] = {}
        self._fatal: asyncio.Future[Any] | None = None
        self._failure: TransportError | None = None
        self._pump: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    async def open(
        cls,
        bus: BusConnection | None = None,
        config: SessionConfig | None = None,
    ) -> BluetoothSession:
        config = config or SessionConfig()
        if bus is None:
            from bluezctl.transports.bluez_dbus import BlueZDBusConnection

            bus = await BlueZDBusConnection.connect(bus_type=config.bus)
        session = cls(bus, config)
        try:
            await session.start()
        except BaseException:
            await session.close()
            raise
        return session

    async def __aenter__(self) -> BluetoothSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def cache(self) -> TopologyCache:
        return self._cache

    async def start(self) -> None:
        if self._pump is not None:
            return
        if self._closed:
            raise TransportError("Session is closed")
        self._fatal = asyncio.get_running_loop().create_future()
        # Subscribe before the bulk load so no change slips in between.
        stream = self._bus.subscribe_topology()
        objects = await self._request(
            "/",
            interfaces.OBJECT_MANAGER_INTERFACE,
            "GetManagedObjects",
        )
        for path in sorted(objects or {}):
            self._cache.apply_object_added(path, objects[path])
        self._pump = asyncio.create_task(self._run_pump(stream), name="bluezctl-topology")
        LOGGER.info("Bluetooth session opened with %d known objects", len(self._cache.registry))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pump is not None:
            self._pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump
        closed = TransportError("Session is closed")
        if self._fatal is not None and not self._fatal.done():
            self._fatal.set_result(closed)
        self._settle_all(closed)
        self._events.close()
        await self._bus.close()
        LOGGER.info("Bluetooth session closed")

    async def _run_pump(self, stream: Any) -> None:
        try:
            async for event in stream:
                self._apply(event)
        except TransportError as exc:
            self._fail(exc)
        except Exception as exc:
            LOGGER.exception("Topology task crashed")
            self._fail(TransportError(f"Topology task crashed: {exc}"))
        else:
            self._fail(TransportError("Topology stream ended"))

    def _apply(self, event: TopologyEvent) -> None:
        self._cache.apply(event)

    def _fail(self, exc: TransportError) -> None:
        if self._failure is not None:
            return
        self._failure = exc
        LOGGER.error("Lost connection to the Bluetooth daemon: %s", exc)
        if self._fatal is not None and not self._fatal.done():
            self._fatal.set_result(exc)
        self._settle_all(exc)
        self._events.close(exc)

    def _settle_all(self, outcome: BluezctlError) -> None:
        self._resolved.settle_all(outcome)
        self._dropped.settle_all(outcome)
        self._discovered.settle_all(outcome)

    def _dispatch(self, event: BluetoothEvent) -> None:
        if isinstance(event, ServicesResolved):
            self._resolved.settle(event.device_id, None)
        elif isinstance(event, (DeviceDisconnected, DeviceRemoved)):
            lost = NotConnectedError(f"Device {event.device_id} disconnected")
            self._resolved.settle(event.device_id, lost)
            self._dropped.settle(event.device_id, lost)
        elif isinstance(event, CharacteristicRemoved):
            # The daemon-side subscription died with the characteristic.
            self._notify_counts.pop(event.characteristic_id, None)
            self._notify_locks.pop(event.characteristic_id, None)
        elif isinstance(event, DeviceDiscovered):
            self._discovered.settle(event.device.mac_address, event.device.id)
        self._events.publish(event)

    def _ensure_usable(self) -> None:
        if self._failure is not None:
            raise TransportError(f"Session unusable: {self._failure}") from self._failure
        if self._closed:
            raise TransportError("Session is closed")

    async def _request(
        self,
        path: str,
        interface: str,
        method: str,
        args: Sequence[Any] = (),
        *,
        timeout: float | None = None,
        device_id: DeviceId | None = None,
    ) -> Any:
        """Issue a daemon call and wait for its reply.

        The wait is abandoned when the deadline passes, when the session loses
        its transport, or, if ``device_id`` is given, when that device drops.
        """
        self._ensure_usable()
        timeout = self.config.call_timeout_s if timeout is None else timeout
        call = asyncio.ensure_future(self._bus.call(path, interface, method, list(args)))
        guards: list[asyncio.Future[Any]] = []
        if self._fatal is not None:
            guards.append(self._fatal)
        dropped = self._dropped.watch(device_id) if device_id is not None else None
        if dropped is not None:
            guards.append(dropped)
        try:
            done, _ = await asyncio.wait(
                [call, *guards],
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            if dropped is not None:
                self._dropped.discard(device_id, dropped)

        if call in done:
            try:
                return call.result()
            except DaemonError as exc:
                raise map_daemon_error(exc.name, exc.message) from exc
        call.cancel()
        for guard in guards:
            if guard in done:
                raise guard.result()
        raise OperationTimeoutError(
            f"{interface}.{method} on {path} did not complete within {timeout:.1f}s"
        )

    async def _wait(self, future: asyncio.Future[Any], timeout: float, what: str) -> Any:
        guards = [future]
        if self._fatal is not None:
            guards.append(self._fatal)
        done, _ = await asyncio.wait(guards, timeout=max(timeout, 0.0), return_when=asyncio.FIRST_COMPLETED)
        if not done:
            raise OperationTimeoutError(f"Timed out waiting for {what}")
        outcome = future.result() if future in done else self._fatal.result()  # type: ignore[union-attr]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def get_adapters(self) -> list[AdapterInfo]:
        return self._cache.adapters()

    async def get_adapter_info(self, adapter_id: AdapterId) -> AdapterInfo:
        return self._cache.adapter(adapter_id)

    def _adapter_path(self, adapter_id: AdapterId) -> str:
        if not isinstance(adapter_id, AdapterId):
            raise AdapterNotFoundError(f"{adapter_id} is not an adapter identifier")
        self._cache.adapter(adapter_id)
        return self._cache.path_of(adapter_id)

    def _discovery_targets(self, adapter_id: AdapterId | None) -> list[AdapterId]:
        if adapter_id is not None:
            return [adapter_id]
        adapters = [adapter.id for adapter in self._cache.adapters()]
        if not adapters:
            raise NoBluetoothAdaptersError("No Bluetooth adapters found.")
        return adapters

    async def set_powered(self, adapter_id: AdapterId, powered: bool, *, timeout: float | None = None) -> None:
        await self._request(
            self._adapter_path(adapter_id),
            interfaces.PROPERTIES_INTERFACE,
            "Set",
            [interfaces.ADAPTER_INTERFACE, "Powered", powered],
            timeout=timeout,
        )

    async def start_discovery(
        self,
        adapter_id: AdapterId | None = None,
        discovery_filter: DiscoveryFilter | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        """Start scanning on one adapter, or power on and scan on all of them.

        The daemon merges discovery filters from all of its clients, so events
        for devices outside ``discovery_filter`` may still arrive.
        """
        for target in self._discovery_targets(adapter_id):
            path = self._adapter_path(target)
            if adapter_id is None:
                await self.set_powered(target, True, timeout=timeout)
            if discovery_filter is not None:
                await self._request(
                    path,
                    interfaces.ADAPTER_INTERFACE,
                    "SetDiscoveryFilter",
                    [discovery_filter.to_properties()],
                    timeout=timeout,
                )
            await self._request(path, interfaces.ADAPTER_INTERFACE, "StartDiscovery", timeout=timeout)
            LOGGER.info("Discovery started on %s", path)

    async def stop_discovery(self, adapter_id: AdapterId | None = None, *, timeout: float | None = None) -> None:
        for target in self._discovery_targets(adapter_id):
            path = self._adapter_path(target)
            await self._request(path, interfaces.ADAPTER_INTERFACE, "StopDiscovery", timeout=timeout)
            LOGGER.info("Discovery stopped on %s", path)

    async def get_devices(self, adapter_id: AdapterId | None = None) -> list[DeviceInfo]:
        return self._cache.devices(adapter_id)

    async def get_device_info(self, device_id: DeviceId) -> DeviceInfo:
        return self._cache.device(device_id)

    async def find_device(self, address: MacAddress | str) -> DeviceInfo | None:
        mac = address if isinstance(address, MacAddress) else MacAddress.parse(address)
        return self._cache.find_device(mac)

    async def connect(self, device_id: DeviceId, *, timeout: float | None = None) -> None:
        """Connect and wait until the device's GATT database is resolved.

        On timeout the pending connection attempt is cancelled at the daemon.
        """
        timeout = self.config.connect_timeout_s if timeout is None else timeout
        path = self._cache.path_of(device_id)
        if self._cache.is_ready(device_id):
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        resolved = self._resolved.watch(device_id)
        try:
            if not self._cache.is_connected(device_id):
                await self._request(path, interfaces.DEVICE_INTERFACE, "Connect", timeout=timeout)
            if not self._cache.is_ready(device_id):
                await self._wait(resolved, deadline - loop.time(), f"services of {device_id}")
        except OperationTimeoutError:
            await self._cancel_connect(path)
            raise
        finally:
            self._resolved.discard(device_id, resolved)
        LOGGER.info("Connected to %s and resolved its services", path)

    async def _cancel_connect(self, path: str) -> None:
        LOGGER.warning("Connection attempt to %s timed out; cancelling", path)
        try:
            await asyncio.wait_for(
                self._bus.call(path, interfaces.DEVICE_INTERFACE, "Disconnect", []),
                self.config.call_timeout_s,
            )
        except (BluezctlError, asyncio.TimeoutError) as exc:
            LOGGER.warning("Could not cancel connection attempt to %s: %s", path, exc)

    async def connect_by_address(
        self,
        adapter_id: AdapterId,
        address: MacAddress | str,
        *,
        timeout: float | None = None,
    ) -> DeviceId:
        """Connect to a device by address, asking the adapter to create it if unknown."""
        mac = address if isinstance(address, MacAddress) else MacAddress.parse(address)
        timeout = self.config.connect_timeout_s if timeout is None else timeout
        known = self._cache.find_device(mac, adapter_id)
        if known is not None:
            await self.connect(known.id, timeout=timeout)
            return known.id

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        discovered = self._discovered.watch(mac)
        try:
            await self._request(
                self._adapter_path(adapter_id),
                interfaces.ADAPTER_INTERFACE,
                "ConnectDevice",
                [{"Address": str(mac)}],
                timeout=timeout,
            )
            known = self._cache.find_device(mac, adapter_id)
            if known is not None:
                device_id = known.id
            else:
                device_id = await self._wait(discovered, deadline - loop.time(), f"device {mac}")
        finally:
            self._discovered.discard(mac, discovered)
        await self.connect(device_id, timeout=max(deadline - loop.time(), 0.0))
        return device_id

    async def disconnect(self, device_id: DeviceId, *, timeout: float | None = None) -> None:
        path = self._cache.path_of(device_id)
        if not self._cache.is_connected(device_id):
            return
        try:
            await self._request(path, interfaces.DEVICE_INTERFACE, "Disconnect", timeout=timeout)
        except NotConnectedError:
            LOGGER.debug("%s was already disconnected", path)

    async def remove_device(self, device_id: DeviceId, *, timeout: float | None = None) -> None:
        path = self._cache.path_of(device_id)
        adapter_path = self._adapter_path(self._cache.adapter_of(device_id))
        await self._request(
            adapter_path,
            interfaces.ADAPTER_INTERFACE,
            "RemoveDevice",
            [path],
            timeout=timeout,
        )

    async def get_services(self, device_id: DeviceId) -> list[ServiceInfo]:
        return self._cache.services(device_id)

    async def get_characteristics(self, service_id: ServiceId) -> list[CharacteristicInfo]:
        return self._cache.characteristics(service_id)

    async def get_descriptors(self, characteristic_id: CharacteristicId) -> list[DescriptorInfo]:
        return self._cache.descriptors(characteristic_id)

    async def get_service_info(self, service_id: ServiceId) -> ServiceInfo:
        return self._cache.service(service_id)

    async def get_characteristic_info(self, characteristic_id: CharacteristicId) -> CharacteristicInfo:
        return self._cache.characteristic(characteristic_id)

    async def get_descriptor_info(self, descriptor_id: DescriptorId) -> DescriptorInfo:
        return self._cache.descriptor(descriptor_id)

    async def get_service_by_uuid(self, device_id: DeviceId, uuid: str) -> ServiceInfo:
        wanted = normalize_uuid(uuid)
        for service in self._cache.services(device_id):
            if service.uuid == wanted:
                return service
        raise UuidNotFoundError(f"Service UUID {wanted} not found on {device_id}")

    async def get_characteristic_by_uuid(self, service_id: ServiceId, uuid: str) -> CharacteristicInfo:
        wanted = normalize_uuid(uuid)
        for characteristic in self._cache.characteristics(service_id):
            if characteristic.uuid == wanted:
                return characteristic
        raise UuidNotFoundError(f"Characteristic UUID {wanted} not found in {service_id}")

    async def get_service_characteristic_by_uuid(
        self,
        device_id: DeviceId,
        service_uuid: str,
        characteristic_uuid: str,
    ) -> CharacteristicInfo:
        service = await self.get_service_by_uuid(device_id, service_uuid)
        return await self.get_characteristic_by_uuid(service.id, characteristic_uuid)

    async def read_characteristic_value(
        self,
        characteristic_id: CharacteristicId,
        *,
        timeout: float | None = None,
    ) -> bytes:
        info = self._cache.characteristic(characteristic_id)
        if not info.flags & _READ_FLAGS:
            raise OperationNotSupportedError(f"Characteristic {info.uuid} is not readable")
        value = await self._request(
            self._cache.path_of(characteristic_id),
            interfaces.GATT_CHARACTERISTIC_INTERFACE,
            "ReadValue",
            [{}],
            timeout=timeout,
            device_id=self._cache.device_of(characteristic_id),
        )
        data = bytes(value or b"")
        self._record(characteristic_id, data)
        return data

    async def write_characteristic_value(
        self,
        characteristic_id: CharacteristicId,
        value: bytes,
        *,
        with_response: bool = True,
        timeout: float | None = None,
    ) -> None:
        """Write ``value``; without a response this returns once the write is queued."""
        info = self._cache.characteristic(characteristic_id)
        if with_response and not info.flags & _WRITE_FLAGS:
            raise OperationNotSupportedError(f"Characteristic {info.uuid} does not accept writes")
        if not with_response and CharacteristicFlags.WRITE_WITHOUT_RESPONSE not in info.flags:
            raise OperationNotSupportedError(
                f"Characteristic {info.uuid} does not accept writes without response"
            )
        await self._request(
            self._cache.path_of(characteristic_id),
            interfaces.GATT_CHARACTERISTIC_INTERFACE,
            "WriteValue",
            [bytes(value), {"type": "request" if with_response else "command"}],
            timeout=timeout,
            device_id=self._cache.device_of(characteristic_id),
        )

    async def read_descriptor_value(self, descriptor_id: DescriptorId, *, timeout: float | None = None) -> bytes:
        self._cache.descriptor(descriptor_id)
        value = await self._request(
            self._cache.path_of(descriptor_id),
            interfaces.GATT_DESCRIPTOR_INTERFACE,
            "ReadValue",
            [{}],
            timeout=timeout,
            device_id=self._cache.device_of(descriptor_id),
        )
        data = bytes(value or b"")
        self._record(descriptor_id, data)
        return data

    async def write_descriptor_value(
        self,
        descriptor_id: DescriptorId,
        value: bytes,
        *,
        timeout: float | None = None,
    ) -> None:
        self._cache.descriptor(descriptor_id)
        await self._request(
            self._cache.path_of(descriptor_id),
            interfaces.GATT_DESCRIPTOR_INTERFACE,
            "WriteValue",
            [bytes(value), {}],
            timeout=timeout,
            device_id=self._cache.device_of(descriptor_id),
        )

    def _record(self, object_id: CharacteristicId | DescriptorId, value: bytes) -> None:
        try:
            self._cache.record_value(object_id, value)
        except NotFoundError:
            LOGGER.debug("%s vanished before its read value could be cached", object_id)

    async def start_notify(self, characteristic_id: CharacteristicId, *, timeout: float | None = None) -> None:
        """Add a notification subscriber; only the first one subscribes at the daemon."""
        info = self._cache.characteristic(characteristic_id)
        if not info.flags & _NOTIFY_FLAGS:
            raise OperationNotSupportedError(f"Characteristic {info.uuid} cannot notify or indicate")
        lock = self._notify_locks.setdefault(characteristic_id, asyncio.Lock())
        async with lock:
            count = self._notify_counts.get(characteristic_id, 0)
            if count == 0:
                path = self._cache.path_of(characteristic_id)
                try:
                    await self._request(
                        path,
                        interfaces.GATT_CHARACTERISTIC_INTERFACE,
                        "StartNotify",
                        timeout=timeout,
                        device_id=self._cache.device_of(characteristic_id),
                    )
                except (OperationTimeoutError, asyncio.CancelledError):
                    # The daemon may still complete the subscription nobody counts.
                    await self._cancel_notify(path)
                    raise
            self._notify_counts[characteristic_id] = count + 1

    async def _cancel_notify(self, path: str) -> None:
        LOGGER.warning("Subscribing to notifications on %s was abandoned; unsubscribing", path)
        try:
            await asyncio.wait_for(
                self._bus.call(path, interfaces.GATT_CHARACTERISTIC_INTERFACE, "StopNotify", []),
                self.config.call_timeout_s,
            )
        except (BluezctlError, asyncio.TimeoutError) as exc:
            LOGGER.warning("Could not unsubscribe from %s: %s", path, exc)

    async def stop_notify(self, characteristic_id: CharacteristicId, *, timeout: float | None = None) -> None:
        """Drop a notification subscriber; the last one unsubscribes at the daemon."""
        path = self._cache.path_of(characteristic_id)
        lock = self._notify_locks.get(characteristic_id)
        if lock is None:
            LOGGER.debug("stop_notify on %s without subscribers", path)
            return
        async with lock:
            count = self._notify_counts.get(characteristic_id, 0)
            if count == 0:
                return
            if count == 1:
                await self._request(
                    path,
                    interfaces.GATT_CHARACTERISTIC_INTERFACE,
                    "StopNotify",
                    timeout=timeout,
                    device_id=self._cache.device_of(characteristic_id),
                )
                del self._notify_counts[characteristic_id]
            else:
                self._notify_counts[characteristic_id] = count - 1

    def notify_subscribers(self, characteristic_id: CharacteristicId) -> int:
        return self._notify_counts.get(characteristic_id, 0)

    def events(self, *, backlog: int | None = None) -> EventSubscription:
        return self._events.subscribe(backlog=backlog)

    def device_events(self, device_id: DeviceId, *, backlog: int | None = None) -> EventSubscription:
        return self._events.subscribe(backlog=backlog, predicate=lambda e: concerns(e, device_id))

    def characteristic_events(
        self,
        characteristic_id: CharacteristicId,
        *,
        backlog: int | None = None,
    ) -> EventSubscription:
        return self._events.subscribe(
            backlog=backlog,
            predicate=lambda e: concerns(e, characteristic_id),
        )
