"""A self-pipe channel used to wake an event loop from another thread."""

from __future__ import annotations

import os

from .poller import Channel

__all__ = ["PipeChannel"]


class PipeChannel(Channel):
    """Readable end of a non-blocking pipe; each notify makes it readable."""

    def __init__(self) -> None:
        super().__init__()
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)

    def __enter__(self) -> PipeChannel:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def fileno(self) -> int:
        return self._read_fd

    def handle_read(self) -> bool:
        """Consume one wake-up byte; False if there was none."""
        try:
            data = os.read(self._read_fd, 1)
        except (BlockingIOError, InterruptedError):
            return False
        return len(data) == 1

    def handle_write(self) -> bool:
        raise RuntimeError("a pipe channel is never polled for writing")

    def handle_error(self) -> None:
        """Errors on the wake-up pipe need no handling."""

    def notify(self) -> bool:
        """Write one wake-up byte; False if the pipe is full or closed."""
        try:
            written = os.write(self._write_fd, b"\0")
        except (BlockingIOError, InterruptedError, OSError):
            return False
        return written == 1

    def close(self) -> None:
        """Close both ends of the pipe."""
        for fd in (self._read_fd, self._write_fd):
            if fd >= 0:
                os.close(fd)
        self._read_fd = self._write_fd = -1