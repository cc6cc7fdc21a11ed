"""Subprocess runner with idle-timeout cancellation and streaming capture."""

from __future__ import annotations

import codecs
import logging
import os
import queue
import re
import shlex
import signal
import subprocess
import threading
import time
from collections.abc import Sequence
from pathlib import Path
from typing import IO

from task_conduit.models import AttemptOutcome, Invocation

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 65536
_TERMINATE_WAIT_SECONDS = 2.0
_DRAIN_AFTER_KILL_SECONDS = 2.0
_LINE_SPLIT_RE = re.compile(r"\r?\n")
_UTF8_DECODER = codecs.getincrementaldecoder("utf-8")


class ProcessStartError(RuntimeError):
    """The command could not be spawned at all."""

    def __init__(self, command: str, cause: OSError | ValueError) -> None:
        super().__init__(f"Failed to start {command}: {cause}")
        self.command = command
        self.cause = cause


def run_command(  # noqa: PLR0913
    command: str,
    args: Sequence[str] = (),
    *,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    input_text: str | None = None,
    timeout_seconds: float,
    shell: bool = False,
    log_path: Path | None = None,
) -> AttemptOutcome:
    """Run a command and capture its output.

    The process is terminated when it produces no output on either stream for
    `timeout_seconds`; a non-positive value disables the idle timer. Once a
    run is flagged as timed out the flag is never cleared, but output that
    arrives while the process is being torn down is still captured.
    """

    full_env = os.environ.copy()
    if env:
        full_env.update(env)
    run_args: str | list[str]
    if shell:
        run_args = " ".join([command, *(shlex.quote(arg) for arg in args)])
    else:
        run_args = [command, *args]

    started = time.monotonic()
    try:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            cwd=cwd,
            env=full_env,
            stdin=subprocess.PIPE if input_text else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            shell=shell,  # noqa: S602
        )
    except (OSError, ValueError) as error:
        raise ProcessStartError(command, error) from error

    sink = _LogSink(log_path) if log_path is not None else None
    chunks: queue.Queue[tuple[str, bytes | None]] = queue.Queue()
    threads = [
        threading.Thread(target=_pump, args=("stdout", process.stdout, chunks), daemon=True),
        threading.Thread(target=_pump, args=("stderr", process.stderr, chunks), daemon=True),
    ]
    if input_text:
        threads.append(
            threading.Thread(target=_feed_stdin, args=(process.stdin, input_text), daemon=True),
        )
    for thread in threads:
        thread.start()

    idle_timeout = timeout_seconds if timeout_seconds > 0 else None
    captured: dict[str, list[bytes]] = {"stdout": [], "stderr": []}
    open_streams = 2
    timed_out = False
    try:
        while open_streams:
            wait_seconds = _DRAIN_AFTER_KILL_SECONDS if timed_out else idle_timeout
            try:
                label, chunk = chunks.get(timeout=wait_seconds)
            except queue.Empty:
                if timed_out:
                    logger.warning("Output pipes of %s stayed open after termination", command)
                    break
                logger.info("No output from %s for %ss, terminating", command, timeout_seconds)
                timed_out = True
                _terminate_process(process)
                continue
            if chunk is None:
                open_streams -= 1
                continue
            captured[label].append(chunk)
            if sink is not None:
                sink.write(label, chunk)

        if not timed_out:
            try:
                process.wait(timeout=idle_timeout)
            except subprocess.TimeoutExpired:
                logger.info("%s closed its output but did not exit, terminating", command)
                timed_out = True
                _terminate_process(process)
    finally:
        if process.poll() is None:
            _terminate_process(process)
        if sink is not None:
            sink.close()

    for thread in threads:
        thread.join(timeout=_TERMINATE_WAIT_SECONDS)

    exit_code, signal_name = _exit_status(process.returncode)
    return AttemptOutcome(
        stdout=b"".join(captured["stdout"]).decode("utf-8", errors="replace"),
        stderr=b"".join(captured["stderr"]).decode("utf-8", errors="replace"),
        exit_code=exit_code,
        duration_ms=int((time.monotonic() - started) * 1000),
        timed_out=timed_out,
        signal=signal_name,
    )


def run_invocation(
    invocation: Invocation,
    timeout_seconds: float,
    log_path: Path | None = None,
) -> AttemptOutcome:
    return run_command(
        invocation.command,
        invocation.args,
        cwd=invocation.cwd,
        env=invocation.env,
        input_text=invocation.input_text,
        timeout_seconds=timeout_seconds,
        log_path=log_path,
    )


def run_shell_command(command: str, cwd: str | Path, timeout_seconds: float) -> AttemptOutcome:
    return run_command(command, cwd=cwd, timeout_seconds=timeout_seconds, shell=True)


class _LogSink:
    """Mirror output as labelled lines into an append-only file.

    Each stream keeps its own UTF-8 decoder and unterminated line, so
    characters and lines split across reads are written whole.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._handle: IO[str] | None = None
        self._decoders: dict[str, codecs.IncrementalDecoder] = {}
        self._pending: dict[str, str] = {}
        try:
            self._handle = path.open("a", encoding="utf-8")
        except OSError as error:
            logger.warning("Cannot open run log %s: %s", path, error)

    def write(self, label: str, chunk: bytes) -> None:
        if self._handle is None:
            return
        decoder = self._decoders.get(label)
        if decoder is None:
            decoder = self._decoders[label] = _UTF8_DECODER(errors="replace")
        text = self._pending.pop(label, "") + decoder.decode(chunk)
        lines = _LINE_SPLIT_RE.split(text)
        if lines[-1]:
            self._pending[label] = lines[-1]
        self._write_lines(label, lines[:-1])

    def close(self) -> None:
        if self._handle is None:
            return
        for label, decoder in self._decoders.items():
            tail = self._pending.pop(label, "") + decoder.decode(b"", final=True)
            if tail:
                self._write_lines(label, [tail])
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            handle.close()
        except OSError as error:
            logger.warning("Cannot close run log %s: %s", self._path, error)

    def _write_lines(self, label: str, lines: list[str]) -> None:
        if self._handle is None or not lines:
            return
        try:
            for line in lines:
                self._handle.write(f"[{label}] {line}\n")
            self._handle.flush()
        except OSError as error:
            logger.warning("Disabling run log %s after write failure: %s", self._path, error)
            handle, self._handle = self._handle, None
            try:
                handle.close()
            except OSError:
                logger.debug("Run log %s already unusable", self._path)


def _pump(label: str, stream: IO[bytes], chunks: queue.Queue[tuple[str, bytes | None]]) -> None:
    read = getattr(stream, "read1", stream.read)
    try:
        while True:
            chunk = read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            chunks.put((label, chunk))
    except (OSError, ValueError) as error:
        logger.debug("%s reader stopped: %s", label, error)
    finally:
        chunks.put((label, None))


def _feed_stdin(stream: IO[bytes], input_text: str) -> None:
    try:
        stream.write(input_text.encode("utf-8"))
        stream.close()
    except OSError as error:
        # The child may exit before reading its whole input.
        logger.debug("stdin write stopped: %s", error)


def _exit_status(returncode: int | None) -> tuple[int, str | None]:
    if returncode is None:
        return -1, None
    if returncode < 0:
        try:
            return -1, signal.Signals(-returncode).name
        except ValueError:
            return -1, str(-returncode)
    return returncode, None


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=_TERMINATE_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        try:
            process.wait(timeout=_TERMINATE_WAIT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s did not exit after kill", process.pid)
