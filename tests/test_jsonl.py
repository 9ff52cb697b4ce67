import asyncio
import json
from collections.abc import Callable
from pathlib import Path

from subagents.workers.jsonl import (
    FileLineSink,
    JsonlWriter,
    NullJsonlWriter,
    StreamGate,
    create_jsonl_writer,
)


class FakeSink:
    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.chunks: list[str] = []
        self.drain_callbacks: list[Callable[[], None]] = []
        self.end_calls = 0

    def write(self, chunk: str) -> bool:
        self.chunks.append(chunk)
        return self.accept

    def once_drain(self, callback: Callable[[], None]) -> None:
        self.drain_callbacks.append(callback)

    async def end(self) -> None:
        self.end_calls += 1

    def drain(self) -> None:
        callbacks, self.drain_callbacks = self.drain_callbacks, []
        for callback in callbacks:
            callback()


class FakeSource:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def pause(self) -> None:
        self.calls.append("pause")

    def resume(self) -> None:
        self.calls.append("resume")


def test_writer_appends_newline_and_skips_blank_lines() -> None:
    sink = FakeSink()
    writer = JsonlWriter(sink, FakeSource())

    writer.write_line('{"type":"a"}')
    writer.write_line("   ")

    assert sink.chunks == ['{"type":"a"}\n']


def test_writer_pauses_source_until_drain() -> None:
    sink = FakeSink(accept=False)
    source = FakeSource()
    writer = JsonlWriter(sink, source)

    writer.write_line("one")
    writer.write_line("two")

    assert source.calls == ["pause"]
    assert len(sink.drain_callbacks) == 1

    sink.drain()

    assert source.calls == ["pause", "resume"]


def test_writer_close_is_idempotent_and_drops_later_lines() -> None:
    sink = FakeSink()
    writer = JsonlWriter(sink, FakeSource())

    asyncio.run(writer.close())
    asyncio.run(writer.close())
    writer.write_line("late")

    assert sink.end_calls == 1
    assert sink.chunks == []


def test_drain_after_close_does_not_resume() -> None:
    sink = FakeSink(accept=False)
    source = FakeSource()
    writer = JsonlWriter(sink, source)

    writer.write_line("one")
    asyncio.run(writer.close())
    sink.drain()

    assert source.calls == ["pause"]


def test_create_writer_without_path_is_null() -> None:
    writer = create_jsonl_writer(None, FakeSource())

    assert isinstance(writer, NullJsonlWriter)
    writer.write_line("ignored")
    asyncio.run(writer.close())


def test_create_writer_falls_back_when_sink_cannot_open(tmp_path: Path) -> None:
    def broken(path: Path) -> FileLineSink:
        raise OSError(f"cannot open {path}")

    writer = create_jsonl_writer(tmp_path / "events.jsonl", FakeSource(), sink_factory=broken)

    assert isinstance(writer, NullJsonlWriter)


def test_file_sink_persists_lines(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "events.jsonl"

    async def scenario() -> None:
        gate = StreamGate()
        writer = create_jsonl_writer(path, gate)
        for index in range(3):
            writer.write_line(json.dumps({"index": index}))
        await writer.close()
        assert not gate.paused

    asyncio.run(scenario())

    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["index"] for line in lines] == [0, 1, 2]


def test_stream_gate_blocks_until_resumed() -> None:
    async def scenario() -> list[str]:
        gate = StreamGate()
        order: list[str] = []
        gate.pause()

        async def reader() -> None:
            await gate.wait()
            order.append("read")

        task = asyncio.create_task(reader())
        await asyncio.sleep(0.01)
        order.append("resume")
        gate.resume()
        await task
        return order

    assert asyncio.run(scenario()) == ["resume", "read"]


class FailingFileSink(FileLineSink):
    def _write_batch(self, batch: str) -> None:
        raise OSError(28, "No space left on device")


def test_failed_flush_resumes_source_and_closes_cleanly(tmp_path: Path) -> None:
    sink = FailingFileSink(tmp_path / "events.jsonl", high_water_mark=256)

    async def scenario() -> StreamGate:
        gate = StreamGate()
        writer = JsonlWriter(sink, gate)
        for index in range(2000):
            writer.write_line(json.dumps({"index": index, "pad": "x" * 80}))
            if gate.paused:
                await asyncio.wait_for(gate.wait(), 5)
        await writer.close()
        return gate

    gate = asyncio.run(scenario())

    assert not gate.paused
    assert sink.failed
    assert sink.write("after failure\n") is True


def test_failed_sink_write_outside_event_loop(tmp_path: Path) -> None:
    sink = FailingFileSink(tmp_path / "events.jsonl")

    assert sink.write("line\n") is True
    assert sink.failed
    asyncio.run(sink.end())
