"""Readiness polling over channels: sockets and other file descriptors."""

from __future__ import annotations

import logging
import select
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntFlag

__all__ = ["EventType", "Channel", "FiredEvent", "Poller"]

logger = logging.getLogger(__name__)


class EventType(IntFlag):
    NONE = 0
    READ = 1 << 0
    WRITE = 1 << 1
    ERROR = 1 << 2


class Channel(ABC):
    """An event source driven by an event loop."""

    unique_id: int = 0

    def __init__(self) -> None:
        # Assigned by the event loop on registration; never repeats in a process.
        self.unique_id = 0
        logger.debug("New channel %#x", id(self))

    @abstractmethod
    def fileno(self) -> int:
        """The descriptor the channel is polled on."""

    @abstractmethod
    def handle_read(self) -> bool:
        """React to readability; return False to signal an error."""

    @abstractmethod
    def handle_write(self) -> bool:
        """React to writability; return False to signal an error."""

    @abstractmethod
    def handle_error(self) -> None:
        """React to an error on the descriptor."""


@dataclass
class FiredEvent:
    events: EventType
    channel: Channel


class Poller:
    """Level-triggered poller backed by epoll, or poll where epoll is missing."""

    def __init__(self) -> None:
        if hasattr(select, "epoll"):
            self._backend = select.epoll()
            self._epoll = True
            self._in, self._out = select.EPOLLIN, select.EPOLLOUT
            self._err = select.EPOLLERR | select.EPOLLHUP
        else:
            self._backend = select.poll()
            self._epoll = False
            self._in, self._out = select.POLLIN, select.POLLOUT
            self._err = select.POLLERR | select.POLLHUP | select.POLLNVAL
        self._channels: dict[int, Channel] = {}
        logger.debug("Created poller %r", self._backend)

    def __enter__(self) -> Poller:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _mask(self, events: int) -> int:
        mask = 0
        if events & EventType.READ:
            mask |= self._in
        if events & EventType.WRITE:
            mask |= self._out
        return mask

    def register(self, fd: int, events: int, channel: Channel) -> bool:
        """Watch ``fd`` for ``events``; an already watched fd is modified."""
        if fd < 0:
            return False
        if fd in self._channels:
            return self.modify(fd, events, channel)
        try:
            self._backend.register(fd, self._mask(events))
        except OSError:
            return False
        self._channels[fd] = channel
        return True

    def modify(self, fd: int, events: int, channel: Channel) -> bool:
        """Change the watched events; no events at all unregisters ``fd``."""
        if fd < 0:
            return False
        if events == 0:
            return self.unregister(fd, 0)
        if fd not in self._channels:
            return self.register(fd, events, channel)
        try:
            self._backend.modify(fd, self._mask(events))
        except OSError:
            return False
        self._channels[fd] = channel
        return True

    def unregister(self, fd: int, events: int) -> bool:
        """Stop watching ``fd``; the events argument is not consulted."""
        if fd < 0 or self._channels.pop(fd, None) is None:
            return False
        try:
            self._backend.unregister(fd)
        except (OSError, KeyError):
            return False
        return True

    def poll(self, max_events: int, timeout_ms: int) -> list[FiredEvent]:
        """Wait up to ``timeout_ms`` (forever if negative) for ready channels."""
        if max_events == 0:
            return []
        if self._epoll:
            timeout = timeout_ms / 1000 if timeout_ms >= 0 else -1
            raw = self._backend.poll(timeout, max_events)
        else:
            raw = self._backend.poll(timeout_ms if timeout_ms >= 0 else None)[:max_events]

        fired = []
        for fd, mask in raw:
            channel = self._channels.get(fd)
            if channel is None:
                continue
            events = EventType.NONE
            if mask & self._in:
                events |= EventType.READ
            if mask & self._out:
                events |= EventType.WRITE
            if mask & self._err:
                events |= EventType.ERROR
            fired.append(FiredEvent(events, channel))
        return fired

    def close(self) -> None:
        """Release the poller and forget all channels."""
        self._channels.clear()
        if self._epoll:
            logger.debug("Closing poller %r", self._backend)
            self._backend.close()