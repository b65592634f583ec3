"""IPC transport interfaces and raw topology events."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Union


@dataclass(frozen=True)
class ObjectAdded:
    path: str
    interfaces: Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class ObjectRemoved:
    path: str
    # Empty means the whole object went away.
    interfaces: tuple[str, ...] = ()


@dataclass(frozen=True)
class PropertiesChanged:
    path: str
    interface: str
    changed: Mapping[str, Any]
    invalidated: tuple[str, ...] = field(default=())


TopologyEvent = Union[ObjectAdded, ObjectRemoved, PropertiesChanged]


class BusConnection(Protocol):
    def subscribe_topology(self) -> AsyncIterator[TopologyEvent]:
        """Yield topology changes in delivery order.

        The iterator raises ``TransportError`` when the connection is lost.
        """

    async def call(
        self,
        path: str,
        interface: str,
        method: str,
        args: Sequence[Any] = (),
    ) -> Any:
        """Invoke a daemon method and return its unpacked reply body.

        Raises ``DaemonError`` for error replies and ``TransportError`` when
        the connection is unavailable.
        """

    async def close(self) -> None:
        """Drop subscriptions and close the connection."""
