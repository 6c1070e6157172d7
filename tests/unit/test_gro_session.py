"""Tests for the gro process session: buffering, prompt detection and turn lifecycle."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import pytest

from gtui.services.gro_session import (
    GroSession,
    InvalidStateError,
    LineBuffer,
    PromptDetector,
    SessionState,
    build_command,
)
from gtui.services.message_store import MessageStore


class FakeStdin:
    def __init__(self) -> None:
        self.written = bytearray()
        self.closing = False
        self.error: Exception | None = None

    def write(self, data: bytes) -> None:
        if self.error is not None:
            raise self.error
        self.written.extend(data)

    def is_closing(self) -> bool:
        return self.closing

    async def drain(self) -> None:
        return None


class FakeProcess:
    def __init__(self) -> None:
        self.pid = 4242
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.terminated = False
        self._exited = asyncio.Event()

    def finish(self, returncode: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = returncode
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        self.finish(-15)

    def kill(self) -> None:
        self.finish(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class FakeSpawn:
    def __init__(self, error: OSError | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, ...]] = []
        self.procs: list[FakeProcess] = []

    async def __call__(self, *args: str, **kwargs: object) -> FakeProcess:
        self.calls.append(args)
        if self.error is not None:
            raise self.error
        proc = FakeProcess()
        self.procs.append(proc)
        return proc

    @property
    def proc(self) -> FakeProcess:
        return self.procs[-1]


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _event(**fields: object) -> bytes:
    return (json.dumps(fields) + "\n").encode("utf-8")


async def _started(spawn: FakeSpawn, **kwargs: object) -> tuple[GroSession, MessageStore]:
    store = MessageStore()
    session = GroSession(store, spawn=spawn, **kwargs)  # type: ignore[arg-type]
    session.start()
    await _until(lambda: bool(spawn.procs))
    return session, store


async def _ready(spawn: FakeSpawn) -> tuple[GroSession, MessageStore]:
    session, store = await _started(spawn)
    session.on_output_chunk("stderr", b"you > ")
    assert session.state is SessionState.READY
    return session, store


async def _busy(spawn: FakeSpawn, text: str = "hello") -> tuple[GroSession, MessageStore]:
    session, store = await _ready(spawn)
    session.submit(text)
    assert session.state is SessionState.BUSY
    return session, store


class TestBuildCommand:
    def test_defaults(self) -> None:
        assert build_command("gro") == ["gro", "-i", "--output-format", "stream-json", "--bash"]

    def test_model_and_provider(self) -> None:
        cmd = build_command("/usr/bin/gro", model="gpt-4o", provider="openai")
        assert cmd[0] == "/usr/bin/gro"
        assert cmd[-4:] == ["--model", "gpt-4o", "--provider", "openai"]


class TestLineBuffer:
    DATA = _event(type="token", token="Hel") + _event(type="token", token="lo wörld") + b"tail"

    def test_every_split_point_yields_same_lines(self) -> None:
        expected = LineBuffer().feed(self.DATA)
        for i in range(len(self.DATA) + 1):
            buf = LineBuffer()
            lines = buf.feed(self.DATA[:i]) + buf.feed(self.DATA[i:])
            assert lines == expected
            assert buf.flush() == "tail"

    def test_byte_at_a_time(self) -> None:
        buf = LineBuffer()
        lines: list[str] = []
        for i in range(len(self.DATA)):
            lines.extend(buf.feed(self.DATA[i : i + 1]))
        assert [json.loads(line)["token"] for line in lines] == ["Hel", "lo wörld"]

    def test_split_utf8_sequence(self) -> None:
        buf = LineBuffer()
        encoded = "é\n".encode()
        assert buf.feed(encoded[:1]) == []
        assert buf.feed(encoded[1:]) == ["é"]

    def test_flush_empty(self) -> None:
        buf = LineBuffer()
        assert buf.flush() is None
        buf.feed(b"abc")
        assert len(buf) == 3
        buf.clear()
        assert buf.flush() is None


class TestPromptDetector:
    def test_plain_marker(self) -> None:
        assert PromptDetector().feed(b"you > ") == 1

    def test_coloured_marker(self) -> None:
        assert PromptDetector().feed(b"\x1b[1;32myou > \x1b[0m") == 1

    def test_every_split_point_counts_once(self) -> None:
        data = "starting…\n\x1b[1;32myou > \x1b[0m".encode()
        for i in range(len(data) + 1):
            detector = PromptDetector()
            assert detector.feed(data[:i]) + detector.feed(data[i:]) == 1

    def test_marker_not_counted_twice(self) -> None:
        detector = PromptDetector()
        assert detector.feed(b"you > ") == 1
        assert detector.feed(b"more output") == 0

    def test_two_markers_in_one_chunk(self) -> None:
        assert PromptDetector().feed(b"you > \nyou > ") == 2

    def test_text_across_newline_does_not_match(self) -> None:
        assert PromptDetector().feed(b"you\n > ") == 0

    def test_custom_marker(self) -> None:
        detector = PromptDetector(marker="gro> ")
        assert detector.marker == "gro> "
        assert detector.feed(b"you > gro> ") == 1

    def test_empty_marker_rejected(self) -> None:
        with pytest.raises(ValueError):
            PromptDetector(marker="")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_spawns_with_interactive_arguments(self) -> None:
        spawn = FakeSpawn()
        session, _ = await _started(spawn, model="m1", provider="p1")
        assert session.state is SessionState.STARTING
        assert spawn.calls[0] == (
            "gro", "-i", "--output-format", "stream-json", "--bash", "--model", "m1", "--provider", "p1"
        )
        await session.aclose()

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_running(self) -> None:
        spawn = FakeSpawn()
        session, _ = await _ready(spawn)
        session.start()
        await asyncio.sleep(0.01)
        assert len(spawn.calls) == 1
        assert session.state is SessionState.READY
        await session.aclose()

    @pytest.mark.asyncio
    async def test_pending_prompt_written_on_first_marker(self) -> None:
        spawn = FakeSpawn()
        session, store = await _started(spawn)
        session.submit("hi there")
        assert session.pending_prompt == "hi there"
        assert session.busy
        assert [m.role.value for m in store.messages] == ["user", "assistant"]
        assert spawn.proc.stdin.written == b""

        spawn.proc.stderr.feed_data(b"\x1b[1myou > \x1b[0m")
        await _until(lambda: session.state is SessionState.BUSY)
        assert spawn.proc.stdin.written == b"hi there\n"
        assert session.pending_prompt is None
        await session.aclose()

    @pytest.mark.asyncio
    async def test_pending_prompt_last_write_wins(self) -> None:
        spawn = FakeSpawn()
        session, _ = await _started(spawn)
        session.submit("first")
        session.submit("second")
        session.on_output_chunk("stderr", b"you > ")
        assert spawn.proc.stdin.written == b"second\n"
        await session.aclose()

    @pytest.mark.asyncio
    async def test_full_turn_through_pipes(self) -> None:
        spawn = FakeSpawn()
        session, store = await _ready(spawn)
        session.submit("hello")
        proc = spawn.proc
        proc.stdout.feed_data(b'{"type":"token","token":"Hel"}\n{"type":"tok')
        proc.stdout.feed_data(b'en","token":"lo"}\n')
        await _until(lambda: store.messages[-1].content == "Hello")
        assert store.messages[-1].streaming

        proc.stderr.feed_data(b"\nyou > ")
        await _until(lambda: session.state is SessionState.READY)
        assert not store.messages[-1].streaming
        assert store.streaming_id is None

        proc.finish(0)
        await _until(lambda: session.state is SessionState.NOT_STARTED)
        assert session.last_exit_code == 0
        # nothing was streaming, so no notice
        assert store.messages[-1].content == "Hello"

    @pytest.mark.asyncio
    async def test_restart_after_exit(self) -> None:
        spawn = FakeSpawn()
        session, _ = await _ready(spawn)
        spawn.proc.finish(1)
        await _until(lambda: session.state is SessionState.NOT_STARTED)
        session.start()
        await _until(lambda: len(spawn.procs) == 2)
        assert session.state is SessionState.STARTING
        await session.aclose()

    @pytest.mark.asyncio
    async def test_on_change_called_for_transitions(self) -> None:
        changes: list[str] = []
        store = MessageStore()
        session: GroSession | None = None

        def record() -> None:
            assert session is not None
            changes.append(session.state.value)

        spawn = FakeSpawn()
        session = GroSession(store, spawn=spawn, on_change=record)
        session.start()
        await _until(lambda: bool(spawn.procs))
        session.on_output_chunk("stderr", b"you > ")
        assert changes == ["starting", "ready"]
        await session.aclose()


class TestStreaming:
    @pytest.mark.asyncio
    async def test_tokens_split_mid_json(self) -> None:
        session, store = await _busy(FakeSpawn())
        session.on_output_chunk("stdout", b'{"type":"token","token":"Hel"}\n{"type":"to')
        session.on_output_chunk("stdout", b'ken","token":"lo"}\n')
        assert store.messages[-1].content == "Hello"
        await session.aclose()

    @pytest.mark.asyncio
    async def test_utf8_split_across_chunks(self) -> None:
        session, store = await _busy(FakeSpawn())
        data = _event(type="token", token="café ☕")
        for i in range(len(data)):
            session.on_output_chunk("stdout", data[i : i + 1])
        assert store.messages[-1].content == "café ☕"
        await session.aclose()

    @pytest.mark.asyncio
    async def test_result_overwrites_tokens_and_keeps_reasoning(self) -> None:
        session, store = await _busy(FakeSpawn())
        for chunk in (
            _event(type="reasoning", token="think "),
            _event(type="token", token="draft"),
            _event(type="reasoning", token="harder"),
            _event(type="result", result="Final answer"),
        ):
            session.on_output_chunk("stdout", chunk)
        msg = store.messages[-1]
        assert msg.content == "Final answer"
        assert msg.reasoning == "think harder"
        assert not msg.streaming
        assert session.state is SessionState.READY
        await session.aclose()

    @pytest.mark.asyncio
    async def test_tool_calls_and_usage(self) -> None:
        session, store = await _busy(FakeSpawn())
        session.on_output_chunk("stdout", _event(type="tool_call", name="bash", snippet="ls -la"))
        session.on_output_chunk("stdout", _event(type="api_usage", input_tokens=10, output_tokens=2))
        session.on_output_chunk("stdout", _event(type="api_usage", input_tokens=25, output_tokens=7, input_kb=1.5))
        msg = store.messages[-1]
        assert [(c.name, c.snippet) for c in msg.tool_calls] == [("bash", "ls -la")]
        assert store.usage.input_tokens == 25
        assert store.usage.output_tokens == 7
        assert store.usage.input_kb == 1.5
        await session.aclose()

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_lines_ignored(self) -> None:
        session, store = await _busy(FakeSpawn())
        session.on_output_chunk("stdout", b"plain text from gro\n{broken json\n\n")
        session.on_output_chunk("stdout", _event(type="mystery", token="x"))
        session.on_output_chunk("stdout", _event(type="state-vector", state={"focus": 0.5}))
        session.on_output_chunk("stdout", _event(type="token", token="ok"))
        assert store.messages[-1].content == "ok"
        assert session.state is SessionState.BUSY
        await session.aclose()

    @pytest.mark.asyncio
    async def test_prompt_ends_turn_and_flushes_partial_line(self) -> None:
        session, store = await _busy(FakeSpawn())
        session.on_output_chunk("stdout", b'{"type":"token","token":"no newline"}')
        session.on_output_chunk("stderr", b"you > ")
        msg = store.messages[-1]
        assert msg.content == "no newline"
        assert not msg.streaming
        assert session.state is SessionState.READY
        await session.aclose()

    @pytest.mark.asyncio
    async def test_unknown_stream_rejected(self) -> None:
        session, _ = await _ready(FakeSpawn())
        with pytest.raises(ValueError):
            session.on_output_chunk("stdin", b"x")
        await session.aclose()


class TestSubmitGating:
    @pytest.mark.asyncio
    async def test_submit_before_start_rejected(self) -> None:
        store = MessageStore()
        session = GroSession(store, spawn=FakeSpawn())
        with pytest.raises(InvalidStateError):
            session.submit("hi")
        assert store.messages == ()

    @pytest.mark.asyncio
    async def test_submit_while_busy_rejected_without_side_effects(self) -> None:
        spawn = FakeSpawn()
        session, store = await _busy(spawn)
        before = len(store.messages)
        with pytest.raises(InvalidStateError):
            session.submit("again")
        assert len(store.messages) == before
        assert spawn.proc.stdin.written == b"hello\n"
        await session.aclose()

    @pytest.mark.asyncio
    async def test_next_turn_after_prompt(self) -> None:
        spawn = FakeSpawn()
        session, store = await _busy(spawn, "one")
        session.on_output_chunk("stderr", b"you > ")
        session.submit("two")
        assert spawn.proc.stdin.written == b"one\ntwo\n"
        assert store.user_message_count == 2
        await session.aclose()


class TestFailures:
    @pytest.mark.asyncio
    async def test_spawn_failure_seals_pending_turn(self) -> None:
        spawn = FakeSpawn(error=FileNotFoundError(2, "No such file or directory", "gro"))
        store = MessageStore()
        session = GroSession(store, spawn=spawn)
        session.start()
        session.submit("hi")
        await _until(lambda: session.state is SessionState.FAILED)
        assistant = store.messages[1]
        assert assistant.content.startswith("[Error: ")
        assert not assistant.streaming
        assert store.messages[-1].role.value == "system"
        assert "Could not start gro" in store.messages[-1].content
        assert session.pending_prompt is None
        assert not session.busy

    @pytest.mark.asyncio
    async def test_start_retries_after_failure(self) -> None:
        spawn = FakeSpawn(error=PermissionError(13, "Permission denied"))
        session = GroSession(MessageStore(), spawn=spawn)
        session.start()
        await _until(lambda: session.state is SessionState.FAILED)
        spawn.error = None
        session.start()
        await _until(lambda: bool(spawn.procs))
        assert session.state is SessionState.STARTING
        await session.aclose()

    @pytest.mark.asyncio
    async def test_process_exit_mid_turn_appends_notice(self) -> None:
        spawn = FakeSpawn()
        session, store = await _busy(spawn)
        session.on_output_chunk("stdout", _event(type="token", token="partial"))
        spawn.proc.finish(1)
        await _until(lambda: session.state is SessionState.NOT_STARTED)
        msg = store.messages[-1]
        assert msg.content == "partial\n\n[gro exited with code 1]"
        assert not msg.streaming
        assert session.last_exit_code == 1

    @pytest.mark.asyncio
    async def test_process_exit_with_empty_message(self) -> None:
        spawn = FakeSpawn()
        session, store = await _busy(spawn)
        session.on_process_exit(2)
        assert store.messages[-1].content == "[gro exited with code 2]"
        assert session.state is SessionState.NOT_STARTED
        await session.aclose()

    @pytest.mark.asyncio
    async def test_closed_stdin_is_a_write_failure(self) -> None:
        spawn = FakeSpawn()
        session, store = await _ready(spawn)
        spawn.proc.stdin.closing = True
        session.submit("hi")
        msg = store.messages[-1]
        assert msg.content.startswith("[Error: could not write to gro")
        assert not msg.streaming
        assert session.state is SessionState.NOT_STARTED
        assert spawn.proc.terminated

    @pytest.mark.asyncio
    async def test_broken_pipe_is_a_write_failure(self) -> None:
        spawn = FakeSpawn()
        session, store = await _ready(spawn)
        spawn.proc.stdin.error = BrokenPipeError("Broken pipe")
        session.submit("hi")
        assert "Broken pipe" in store.messages[-1].content
        assert session.state is SessionState.NOT_STARTED


class TestStopAndCancel:
    @pytest.mark.asyncio
    async def test_stop_seals_and_resets(self) -> None:
        spawn = FakeSpawn()
        session, store = await _busy(spawn)
        session.on_output_chunk("stdout", _event(type="token", token="some"))
        session.stop()
        assert store.messages[-1].content == "some\n\n[stopped]"
        assert session.state is SessionState.NOT_STARTED
        assert spawn.proc.terminated
        # late output from the stopped process goes nowhere
        session.on_output_chunk("stdout", _event(type="token", token="late"))
        assert store.messages[-1].content == "some\n\n[stopped]"

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_harmless(self) -> None:
        store = MessageStore()
        session = GroSession(store, spawn=FakeSpawn())
        session.stop()
        assert session.state is SessionState.NOT_STARTED
        assert store.messages == ()

    @pytest.mark.asyncio
    async def test_cancel_busy_turn_goes_through_exit(self) -> None:
        spawn = FakeSpawn()
        session, store = await _busy(spawn)
        session.cancel()
        await _until(lambda: session.state is SessionState.NOT_STARTED)
        assert spawn.proc.terminated
        assert store.messages[-1].content == "[gro exited with code -15]"

    @pytest.mark.asyncio
    async def test_cancel_while_starting(self) -> None:
        never = asyncio.Event()

        async def slow_spawn(*args: str, **kwargs: object) -> FakeProcess:
            await never.wait()
            return FakeProcess()

        store = MessageStore()
        session = GroSession(store, spawn=slow_spawn)
        session.start()
        session.submit("hi")
        session.cancel()
        assert store.messages[-1].content == "[cancelled]"
        assert session.state is SessionState.NOT_STARTED
        assert session.pending_prompt is None
