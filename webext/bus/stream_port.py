from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, BinaryIO, Protocol

from .config import BusConfig
from .errors import FrameTooLargeError
from .fragments import FragmentAssembler, needs_split, split_text
from .framing import FrameDecoder, encode_text, frame_bytes
from .port import Disconnect, Port
from .protocol import FIELD_TARGET, is_fragment

_LOGGER = logging.getLogger("webext.bus.stream_port")

_READ_SIZE = 64 * 1024


class ByteReader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class ByteWriter(Protocol):
    def write(self, data: bytes) -> Any: ...

    def close(self) -> Any: ...


class StreamPort(Port):
    """Port over a byte stream carrying native messaging frames.

    Outbound messages above the split threshold are sent as fragment groups;
    inbound fragments are reassembled before observers see them.
    """

    def __init__(
        self,
        reader: ByteReader | None = None,
        writer: ByteWriter | None = None,
        *,
        name: str | None = None,
        config: BusConfig | None = None,
        split: bool = True,
        max_frame_bytes: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name=name)
        cfg = config or BusConfig()
        self.split_threshold: int | None = cfg.split_threshold if split else None
        self._decoder = FrameDecoder(max_frame_bytes=max_frame_bytes)
        self._assembler = FragmentAssembler(
            ttl=cfg.fragments_ttl,
            janitoring_period=cfg.janitoring_period,
            clock=clock,
        )
        self._reader: ByteReader | None = None
        self._writer: ByteWriter | None = None
        self._backlog: list[bytes] = []
        self._read_task: asyncio.Task[None] | None = None
        self._drain_task: asyncio.Task[None] | None = None
        if reader is not None and writer is not None:
            self._attach_streams(reader, writer)

    @property
    def open_fragment_groups(self) -> int:
        return self._assembler.open_groups

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    def send(self, msg: dict[str, Any]) -> None:
        if not self.connected:
            _LOGGER.warning("Cannot post message on closed port %s", self.name)
            return
        text = encode_text(msg)
        threshold = self.split_threshold
        if threshold and not is_fragment(msg) and needs_split(text, threshold):
            target = msg.get(FIELD_TARGET)
            fragments = split_text(text, threshold, target=target if isinstance(target, str) else None)
            _LOGGER.debug("Splitting %d chars into %d fragments on %s", len(text), len(fragments), self.name)
            for fragment in fragments:
                self._write(frame_bytes(encode_text(fragment).encode("utf-8")))
            return
        self._write(frame_bytes(text.encode("utf-8")))

    def _write(self, data: bytes) -> None:
        writer = self._writer
        if writer is None:
            self._backlog.append(data)
            return
        try:
            writer.write(data)
        except (OSError, RuntimeError) as exc:
            self._lost(f"write failed: {exc}")
            return
        self._schedule_drain()

    def _schedule_drain(self) -> None:
        drain = getattr(self._writer, "drain", None)
        if drain is None:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.get_running_loop().create_task(self._drain(drain))

    async def _drain(self, drain: Callable[[], Any]) -> None:
        try:
            await drain()
        except (OSError, RuntimeError) as exc:
            self._lost(f"write failed: {exc}")

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────────

    def _attach_streams(self, reader: ByteReader, writer: ByteWriter) -> None:
        self._reader = reader
        self._writer = writer
        backlog, self._backlog = self._backlog, []
        for data in backlog:
            self._write(data)
        self._read_task = asyncio.get_running_loop().create_task(self._read_loop(reader))

    async def _read_loop(self, reader: ByteReader) -> None:
        reason: str | None = None
        try:
            while self.connected:
                chunk = await reader.read(_READ_SIZE)
                if not chunk:
                    break
                self.feed(chunk)
        except FrameTooLargeError as exc:
            reason = str(exc)
        except (OSError, ValueError) as exc:
            reason = f"read failed: {exc}"
        self._lost(reason)

    def feed(self, data: bytes) -> None:
        """Process raw bytes read from the stream."""
        for msg in self._decoder.feed(data):
            self._receive(msg)
            if not self.connected:
                return
        # Frames ahead of an oversized one are delivered first.
        if self._decoder.error is not None:
            raise self._decoder.error

    def _receive(self, msg: dict[str, Any]) -> None:
        if is_fragment(msg):
            complete = self._assembler.add(msg)
            if complete is not None:
                self._deliver(complete)
        else:
            self._deliver(msg)
        self._assembler.janitor()

    # ─────────────────────────────────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────────────────────────────────

    def _lost(self, reason: str | None) -> None:
        if not self.connected:
            return
        self._shutdown_streams()
        self._closed(Disconnect(intentional=False, reason=reason))

    def _close_transport(self) -> None:
        self._shutdown_streams()

    def _shutdown_streams(self) -> None:
        task = self._read_task
        self._read_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        writer = self._writer
        self._writer = None
        self._reader = None
        self._backlog.clear()
        if writer is not None:
            with contextlib.suppress(Exception):
                writer.close()

    def _closed(self, info: Disconnect) -> None:
        self._assembler.clear()
        self._decoder.reset()
        super()._closed(info)


class SubprocessPort(StreamPort):
    """Frames over the stdin/stdout of a child process (the native application)."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        exit_grace: float = 2.0,
        **kwargs: Any,
    ) -> None:
        if not command:
            raise ValueError("command is required")
        kwargs.setdefault("name", f"native:{Path(command[0]).name}")
        super().__init__(**kwargs)
        self.command = list(command)
        self._env = env
        self._cwd = cwd
        self._exit_grace = float(exit_grace)
        self._proc: asyncio.subprocess.Process | None = None
        self._spawn_task = asyncio.get_running_loop().create_task(self._spawn())

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    async def wait_exit(self) -> int | None:
        """Wait for the child to exit; None if it was never started."""
        if not self._spawn_task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._spawn_task
        proc = self._proc
        if proc is None:
            return None
        return await proc.wait()

    async def _spawn(self) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=self._env,
                cwd=self._cwd,
            )
        except OSError as exc:
            _LOGGER.error("Failed to start native application %s: %s", self.command[0], exc)
            self._lost(f"failed to start: {exc}")
            return
        self._proc = proc
        if not self.connected:
            asyncio.get_running_loop().create_task(self._reap(proc))
            return
        if proc.stdout is None or proc.stdin is None:
            self._lost("child process has no stdio pipes")
            return
        _LOGGER.info("Started native application %s (pid=%s)", self.command[0], proc.pid)
        self._attach_streams(proc.stdout, proc.stdin)

    def _shutdown_streams(self) -> None:
        super()._shutdown_streams()
        spawn = self._spawn_task
        if not spawn.done() and spawn is not asyncio.current_task():
            spawn.cancel()
        proc = self._proc
        if proc is not None and proc.returncode is None:
            asyncio.get_running_loop().create_task(self._reap(proc))

    async def _reap(self, proc: asyncio.subprocess.Process) -> None:
        # Closing stdin asks the application to exit; insist if it does not.
        if proc.stdin is not None:
            with contextlib.suppress(Exception):
                proc.stdin.close()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._exit_grace)
        except asyncio.TimeoutError:
            _LOGGER.warning("Native application pid=%s did not exit, terminating", proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            with contextlib.suppress(Exception):
                await proc.wait()


class _FdReader:
    def __init__(self, fd: int) -> None:
        self._fd = fd

    async def read(self, n: int = -1) -> bytes:
        # Blocking read off the loop; works for pipes on every platform.
        return await asyncio.to_thread(os.read, self._fd, n if n > 0 else _READ_SIZE)


class _BinaryWriter:
    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def write(self, data: bytes) -> None:
        self._stream.write(data)
        self._stream.flush()

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self._stream.flush()


class StdioPort(StreamPort):
    """The helper process side: frames on our own stdin/stdout."""

    def __init__(
        self,
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("name", "stdio")
        in_stream = stdin if stdin is not None else sys.stdin.buffer
        out_stream = stdout if stdout is not None else sys.stdout.buffer
        super().__init__(_FdReader(in_stream.fileno()), _BinaryWriter(out_stream), **kwargs)
