"""Channel registry resolving a channel type to one delivery implementation.

Several implementations may serve the same channel type (for example SMTP and
console email). Each registration carries an explicit priority; resolution
picks the lowest priority value among channels that support the requested
type, breaking ties by registration order. The registry is populated
explicitly at startup and never raises on lookup.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass

from notification_router.types import Channel, ChannelType

__all__ = ["ChannelDescriptor", "ChannelRegistry"]

DEFAULT_CHANNEL_PRIORITY = 100


@dataclass(slots=True, frozen=True)
class ChannelDescriptor:
    """Registry view of one registered channel."""

    name: str
    channel_type: ChannelType
    priority: int
    order: int


@dataclass(slots=True)
class _RegistryEntry:
    channel: Channel
    descriptor: ChannelDescriptor


class ChannelRegistry:
    """Priority-ordered registry of delivery channels."""

    def __init__(self) -> None:
        self._entries: dict[str, _RegistryEntry] = {}
        self._order: itertools.count[int] = itertools.count()

    def register(self, channel: Channel, *, priority: int = DEFAULT_CHANNEL_PRIORITY) -> ChannelDescriptor:
        """Register a channel under its display name.

        Raises:
            ValueError: If a channel with the same display name is registered
        """
        name = channel.display_name
        if name in self._entries:
            msg = f"Channel {name!r} already registered"
            raise ValueError(msg)

        descriptor = ChannelDescriptor(
            name=name,
            channel_type=channel.channel_type,
            priority=priority,
            order=next(self._order),
        )
        self._entries[name] = _RegistryEntry(channel=channel, descriptor=descriptor)
        return descriptor

    def unregister(self, name: str) -> None:
        """Remove a channel if it exists."""
        _ = self._entries.pop(name, None)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def resolve(self, channel_type: ChannelType) -> Channel | None:
        """Return the preferred channel supporting ``channel_type``, or None."""
        candidates = [entry for entry in self._ordered() if entry.channel.supports(channel_type)]
        if not candidates:
            return None
        return candidates[0].channel

    def supports(self, channel_type: ChannelType) -> bool:
        return self.resolve(channel_type) is not None

    def list_all(self) -> tuple[ChannelDescriptor, ...]:
        """Return descriptors in resolution order."""
        return tuple(entry.descriptor for entry in self._ordered())

    def get(self, name: str) -> Channel | None:
        entry = self._entries.get(name)
        return entry.channel if entry is not None else None

    def _ordered(self) -> list[_RegistryEntry]:
        return sorted(
            self._entries.values(),
            key=lambda entry: (entry.descriptor.priority, entry.descriptor.order),
        )
