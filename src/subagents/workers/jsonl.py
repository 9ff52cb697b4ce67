from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from loguru import logger


class DrainableSource(Protocol):
    def pause(self) -> None: ...

    def resume(self) -> None: ...


class LineSink(Protocol):
    def write(self, chunk: str) -> bool:
        """Queue ``chunk``; return False once the sink is above its high-water mark."""

    def once_drain(self, callback: Callable[[], None]) -> None: ...

    async def end(self) -> None: ...


class StreamGate:
    """Pausable source for a reader loop that awaits ``wait()`` before each read."""

    def __init__(self) -> None:
        self._open = asyncio.Event()
        self._open.set()

    @property
    def paused(self) -> bool:
        return not self._open.is_set()

    def pause(self) -> None:
        self._open.clear()

    def resume(self) -> None:
        self._open.set()

    async def wait(self) -> None:
        await self._open.wait()


class FileLineSink:
    """Append-only file sink with buffered writes flushed off the event loop.

    A write error disables the sink: pending data is dropped, later writes are
    accepted and discarded, and drain callbacks still fire so paused readers resume.
    """

    def __init__(self, path: Path, *, high_water_mark: int = 64 * 1024) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.high_water_mark = high_water_mark
        self.failed = False
        self._handle = path.open("a", encoding="utf-8")
        self._pending: list[str] = []
        self._pending_bytes = 0
        self._drain_callbacks: list[Callable[[], None]] = []
        self._flush_task: asyncio.Task[None] | None = None

    def write(self, chunk: str) -> bool:
        if self.failed:
            return True
        self._pending.append(chunk)
        self._pending_bytes += len(chunk)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                self._flush_now()
            except OSError as exc:
                self._fail(exc)
            return True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = loop.create_task(self._flush())
        return self._pending_bytes < self.high_water_mark

    def once_drain(self, callback: Callable[[], None]) -> None:
        self._drain_callbacks.append(callback)

    def _fail(self, exc: OSError) -> None:
        if not self.failed:
            logger.warning("Event log {} disabled after write error: {}", self.path, exc)
        self.failed = True
        self._pending.clear()
        self._pending_bytes = 0

    def _write_batch(self, batch: str) -> None:
        self._handle.write(batch)
        self._handle.flush()

    def _flush_now(self) -> None:
        if not self._pending:
            return
        batch = "".join(self._pending)
        self._pending.clear()
        self._write_batch(batch)
        self._pending_bytes -= len(batch)

    async def _flush(self) -> None:
        try:
            while self._pending and not self.failed:
                batch = "".join(self._pending)
                self._pending.clear()
                await asyncio.to_thread(self._write_batch, batch)
                self._pending_bytes -= len(batch)
        except OSError as exc:
            self._fail(exc)
        finally:
            callbacks, self._drain_callbacks = self._drain_callbacks, []
            for callback in callbacks:
                callback()

    async def end(self) -> None:
        if self._flush_task is not None:
            await self._flush_task
        try:
            if not self.failed:
                self._flush_now()
        except OSError as exc:
            self._fail(exc)
        finally:
            try:
                self._handle.close()
            except OSError as exc:
                self._fail(exc)


class JsonlWriter:
    def __init__(self, sink: LineSink, source: DrainableSource) -> None:
        self._sink = sink
        self._source = source
        self._backpressured = False
        self._closed = False

    def write_line(self, line: str) -> None:
        if self._closed or not line.strip():
            return
        try:
            accepted = self._sink.write(f"{line}\n")
        except (OSError, ValueError) as exc:
            logger.debug("Dropping event line after sink error: {}", exc)
            return
        if not accepted and not self._backpressured:
            self._backpressured = True
            self._source.pause()
            self._sink.once_drain(self._on_drain)

    def _on_drain(self) -> None:
        self._backpressured = False
        if not self._closed:
            self._source.resume()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._sink.end()


class NullJsonlWriter:
    def write_line(self, line: str) -> None:
        _ = line

    async def close(self) -> None:
        return None


def create_jsonl_writer(
    path: Path | str | None,
    source: DrainableSource,
    *,
    sink_factory: Callable[[Path], LineSink] | None = None,
) -> JsonlWriter | NullJsonlWriter:
    if not path:
        return NullJsonlWriter()
    factory = sink_factory or FileLineSink
    try:
        sink = factory(Path(path))
    except OSError as exc:
        logger.warning("Event log disabled, cannot open {}: {}", path, exc)
        return NullJsonlWriter()
    return JsonlWriter(sink, source)
