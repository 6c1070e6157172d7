"""Persistent gro process driven in interactive mode.

gro is a long-lived REPL rather than a request/response API, so the session
treats its two output streams asymmetrically:

- stdout carries newline-delimited JSON events (``--output-format stream-json``)
  which are buffered per line and dispatched into the message store.
- stderr carries gro's readline prompt. Its first appearance means gro is
  ready for input; every later appearance means the previous turn is over.
  There is no explicit "done" event on stdout, so the prompt is the turn
  boundary.

All I/O callbacks run on the event loop thread; nothing here blocks.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from ..ansi import strip_ansi
from ..events import ApiUsageEvent, GroEvent, ReasoningEvent, ResultEvent, TokenEvent, ToolCallEvent, parse_event
from ..models import Message, Usage
from .message_store import MessageStore

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "gro"
DEFAULT_PROMPT_MARKER = "you > "

_READ_CHUNK = 4096
_MAX_PROMPT_TAIL = 4096
_STOP_TIMEOUT = 2.0


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    FAILED = "failed"


class SessionError(Exception):
    """Base error for gro session failures surfaced to callers."""


class InvalidStateError(SessionError):
    """Operation not allowed in the session's current state."""


def build_command(executable: str, model: str | None = None, provider: str | None = None) -> list[str]:
    """Argument vector for an interactive, streaming, tool-enabled gro."""
    args = [executable, "-i", "--output-format", "stream-json", "--bash"]
    if model:
        args.extend(["--model", model])
    if provider:
        args.extend(["--provider", provider])
    return args


class LineBuffer:
    """Split a byte stream into lines regardless of how it was chunked.

    Bytes are only decoded once a full line is available, so chunk boundaries
    inside a multi-byte UTF-8 sequence or an escape sequence are harmless.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[str]:
        self._buffer.extend(data)
        if b"\n" not in data:
            return []
        *complete, rest = self._buffer.split(b"\n")
        self._buffer = bytearray(rest)
        return [line.decode("utf-8", errors="replace") for line in complete]

    def flush(self) -> str | None:
        """Return and drop an unterminated trailing line, if any."""
        if not self._buffer:
            return None
        text = self._buffer.decode("utf-8", errors="replace")
        self._buffer.clear()
        return text

    def clear(self) -> None:
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)


class PromptDetector:
    """Count prompt markers on a stream that may colour or split them.

    readline prompts are not newline-terminated, so detection works on the
    running tail of the stream (text after the last newline or the last
    match) with ANSI escape sequences stripped.
    """

    def __init__(self, marker: str = DEFAULT_PROMPT_MARKER, max_tail: int = _MAX_PROMPT_TAIL) -> None:
        if not marker:
            raise ValueError("prompt marker must not be empty")
        self._marker = marker
        self._max_tail = max(max_tail, len(marker) * 2)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._tail = ""

    @property
    def marker(self) -> str:
        return self._marker

    def feed(self, data: bytes) -> int:
        # an incomplete escape sequence at the end survives stripping and is
        # completed by the next chunk
        text = strip_ansi(self._tail + self._decoder.decode(data))
        count = text.count(self._marker)
        if count:
            text = text[text.rfind(self._marker) + len(self._marker) :]
        newline = text.rfind("\n")
        if newline != -1:
            text = text[newline + 1 :]
        self._tail = text[-self._max_tail :]
        return count

    def reset(self) -> None:
        self._decoder.reset()
        self._tail = ""


SpawnFn = Callable[..., Awaitable[Any]]


class GroSession:
    """Own one gro child process and translate its output into store mutations.

    Exactly one turn may be pending or active. ``submit`` while ``BUSY`` is
    rejected; while ``STARTING`` the prompt is parked in a single slot and
    written as soon as gro shows its first prompt.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        executable: str = DEFAULT_EXECUTABLE,
        model: str | None = None,
        provider: str | None = None,
        prompt_marker: str = DEFAULT_PROMPT_MARKER,
        spawn: SpawnFn | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._store = store
        self._executable = executable
        self._model = model
        self._provider = provider
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._on_change = on_change

        self._state = SessionState.NOT_STARTED
        self._proc: Any = None
        self._stdout = LineBuffer()
        self._prompts = PromptDetector(prompt_marker)
        self._pending_prompt: str | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        # bumped whenever the current process is abandoned; callbacks from an
        # older generation are ignored
        self._generation = 0
        self.last_exit_code: int | None = None

    # -- properties --

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def busy(self) -> bool:
        """True while a turn is queued or in flight."""
        if self._state is SessionState.BUSY:
            return True
        return self._state is SessionState.STARTING and self._pending_prompt is not None

    @property
    def pending_prompt(self) -> str | None:
        return self._pending_prompt

    @property
    def command(self) -> list[str]:
        return build_command(self._executable, self._model, self._provider)

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("gro session %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_change is not None:
            self._on_change()

    # -- lifecycle --

    def start(self) -> None:
        """Launch gro. A no-op unless the session is stopped or failed."""
        if self._state not in (SessionState.NOT_STARTED, SessionState.FAILED):
            return
        loop = asyncio.get_running_loop()
        self._generation += 1
        self._stdout.clear()
        self._prompts.reset()
        self._set_state(SessionState.STARTING)
        self._track(loop.create_task(self._run(self._generation)))

    async def _run(self, generation: int) -> None:
        cmd = self.command
        try:
            proc = await self._spawn(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            if generation == self._generation:
                self._on_spawn_failure(e)
            return

        if generation != self._generation:
            # stopped while spawning
            _terminate(proc)
            return

        self._proc = proc
        logger.info("Started %s (pid %s)", " ".join(cmd), getattr(proc, "pid", "?"))

        await asyncio.gather(
            self._pump(proc.stdout, "stdout", generation),
            self._pump(proc.stderr, "stderr", generation),
        )
        returncode = await proc.wait()
        if generation == self._generation:
            self.on_process_exit(returncode)

    async def _pump(self, stream: asyncio.StreamReader | None, name: str, generation: int) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk or generation != self._generation:
                return
            self.on_output_chunk(name, chunk)

    def _on_spawn_failure(self, error: OSError) -> None:
        logger.warning("Failed to start %s: %s", self._executable, error)
        self._pending_prompt = None
        self._store.seal(notice=f"[Error: {error}]")
        self._store.add_system(f"Could not start {self._executable}: {error}")
        self._set_state(SessionState.FAILED)

    def on_process_exit(self, returncode: int | None) -> None:
        """Handle gro exiting, whether on its own, by signal or after cancel."""
        logger.info("%s exited with code %s", self._executable, returncode)
        self.last_exit_code = returncode
        self._flush_stdout()
        if self._store.streaming_id is not None:
            self._store.seal(notice=f"[{self._executable} exited with code {returncode}]")
        self._generation += 1
        self._proc = None
        self._pending_prompt = None
        self._stdout.clear()
        self._prompts.reset()
        self._set_state(SessionState.NOT_STARTED)

    def stop(self) -> None:
        """Terminate gro and reset to ``NOT_STARTED`` from any state."""
        self._teardown("[stopped]")

    async def aclose(self) -> None:
        """Stop and wait briefly for the child to go away."""
        proc = self._teardown("[stopped]")
        if proc is None:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=_STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("%s did not exit after SIGTERM, killing", self._executable)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    def cancel(self) -> None:
        """Abort the in-flight turn by terminating gro.

        The resulting exit goes through ``on_process_exit`` like any other.
        """
        if self._proc is not None and self._proc.returncode is None:
            logger.info("Cancelling turn, terminating %s", self._executable)
            _terminate(self._proc)
        elif self._state is SessionState.STARTING:
            self._teardown("[cancelled]")

    def _teardown(self, notice: str) -> Any:
        self._generation += 1
        proc, self._proc = self._proc, None
        if proc is not None:
            _terminate(proc)
        for task in list(self._tasks):
            task.cancel()
        self._stdout.clear()
        self._prompts.reset()
        self._pending_prompt = None
        if self._store.streaming_id is not None:
            self._store.seal(notice=notice)
        self._set_state(SessionState.NOT_STARTED)
        return proc

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("gro session task failed", exc_info=exc)

    # -- input --

    def submit(self, text: str) -> Message:
        """Open a turn for ``text`` and send it to gro (or park it until ready).

        Raises InvalidStateError while a turn is in flight or before start.
        """
        if self._state is SessionState.BUSY:
            raise InvalidStateError("a turn is already in flight")
        if self._state in (SessionState.NOT_STARTED, SessionState.FAILED):
            raise InvalidStateError(f"cannot submit while session is {self._state.value}")

        placeholder = self._store.begin_turn(text)
        if self._state is SessionState.READY:
            self._write(text)
        else:
            if self._pending_prompt is not None:
                logger.warning("Replacing pending prompt before gro became ready")
            self._pending_prompt = text
        return placeholder

    def _write(self, text: str) -> bool:
        stdin = self._proc.stdin if self._proc is not None else None
        if stdin is None or stdin.is_closing():
            self._on_write_failure("stdin is closed")
            return False
        try:
            stdin.write((text + "\n").encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as e:
            self._on_write_failure(str(e) or type(e).__name__)
            return False
        self._set_state(SessionState.BUSY)
        self._track(asyncio.ensure_future(self._drain(stdin, self._generation)))
        return True

    async def _drain(self, stdin: asyncio.StreamWriter, generation: int) -> None:
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            if generation == self._generation:
                self._on_write_failure(str(e) or type(e).__name__)

    def _on_write_failure(self, reason: str) -> None:
        logger.warning("Could not write to %s: %s", self._executable, reason)
        self._teardown(f"[Error: could not write to {self._executable}: {reason}]")

    # -- output --

    def on_output_chunk(self, stream: str, data: bytes) -> None:
        """Feed a chunk read from gro's ``stdout`` or ``stderr``."""
        if stream == "stdout":
            for line in self._stdout.feed(data):
                self._handle_line(line)
        elif stream == "stderr":
            for _ in range(self._prompts.feed(data)):
                self._on_prompt()
        else:
            raise ValueError(f"unknown stream: {stream!r}")

    def _flush_stdout(self) -> None:
        remainder = self._stdout.flush()
        if remainder is not None and remainder.strip():
            self._handle_line(remainder)

    def _handle_line(self, line: str) -> None:
        event = parse_event(line)
        if event is not None:
            self._dispatch(event)

    def _dispatch(self, event: GroEvent) -> None:
        if isinstance(event, TokenEvent):
            self._store.append_content(event.token)
        elif isinstance(event, ReasoningEvent):
            self._store.append_reasoning(event.token)
        elif isinstance(event, ToolCallEvent):
            self._store.add_tool_call(event.name, event.snippet)
        elif isinstance(event, ApiUsageEvent):
            self._store.set_usage(
                Usage(
                    input_tokens=event.input_tokens,
                    output_tokens=event.output_tokens,
                    input_kb=event.input_kb,
                    output_kb=event.output_kb,
                )
            )
        elif isinstance(event, ResultEvent):
            # the final result supersedes the streamed tokens
            self._store.seal(content=event.result)
            if self._state is SessionState.BUSY:
                self._set_state(SessionState.READY)

    def _on_prompt(self) -> None:
        if self._state is SessionState.STARTING:
            self._set_state(SessionState.READY)
            if self._pending_prompt is not None:
                prompt, self._pending_prompt = self._pending_prompt, None
                self._write(prompt)
        elif self._state is SessionState.BUSY:
            self._flush_stdout()
            self._store.seal()
            self._set_state(SessionState.READY)


def _terminate(proc: Any) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        pass
