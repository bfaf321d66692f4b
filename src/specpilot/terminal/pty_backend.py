"""Pseudo-terminal process spawning for interactive shell sessions."""

from __future__ import annotations

import asyncio
import codecs
import logging as py_logging
import os
import shutil
import signal
import subprocess
import sys
import threading
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from specpilot.errors import ExitCode, SpecPilotError

logger = py_logging.getLogger(__name__)

_READ_SIZE = 4096
_KILL_GRACE_SECONDS = 0.5
POSIX_SHELL_CANDIDATES = ("zsh", "bash", "sh")
WINDOWS_SHELL_CANDIDATES = ("pwsh.exe", "powershell.exe", "cmd.exe")
POSIX_FALLBACK_SHELL = "/bin/sh"
WINDOWS_FALLBACK_SHELL = "powershell.exe"

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int | None], None]


class PtyProcess(Protocol):
    pid: int | None

    def attach(self, on_data: DataCallback, on_exit: ExitCallback) -> None: ...

    def write(self, data: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def terminate(self) -> None: ...

    def isalive(self) -> bool: ...


PtySpawn = Callable[[list[str], str, dict[str, str], int, int], PtyProcess]


@dataclass(frozen=True)
class PtyHandle:
    process: PtyProcess
    command: tuple[str, ...]
    cwd: str


def _is_windows() -> bool:
    return sys.platform == "win32"


def resolve_shell(
    configured: str = "",
    *,
    windows: bool | None = None,
    environ: dict[str, str] | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> list[str]:
    """Return the interactive shell command for a new session.

    The configured shell wins, then ``$SHELL`` on POSIX, then the first
    platform candidate found on ``PATH``, then a fixed safe default.
    """
    on_windows = _is_windows() if windows is None else windows
    env = os.environ if environ is None else environ

    candidates: list[str] = []
    if configured.strip():
        candidates.append(configured.strip())
    if not on_windows and env.get("SHELL", "").strip():
        candidates.append(env["SHELL"].strip())
    candidates.extend(WINDOWS_SHELL_CANDIDATES if on_windows else POSIX_SHELL_CANDIDATES)

    for candidate in candidates:
        resolved = which(candidate)
        if resolved:
            return _shell_argv(resolved, windows=on_windows)
    fallback = WINDOWS_FALLBACK_SHELL if on_windows else POSIX_FALLBACK_SHELL
    logger.warning("No shell candidate resolved; falling back to %s", fallback)
    return _shell_argv(fallback, windows=on_windows)


def _shell_argv(shell: str, *, windows: bool) -> list[str]:
    if windows:
        name = Path(shell).name.lower()
        if name in {"pwsh.exe", "powershell.exe"}:
            return [shell, "-NoLogo"]
        return [shell]
    return [shell, "-l"]


def resolve_cwd(cwd: str | Path | None) -> str:
    if cwd:
        candidate = Path(cwd).expanduser()
        if candidate.is_dir():
            return str(candidate)
        logger.warning("Working directory missing cwd=%s; using home directory", cwd)
    try:
        home = Path.home()
    except RuntimeError:
        home = None
    if home is not None and home.is_dir():
        return str(home)
    return Path.cwd().anchor or os.sep


def build_environment(base: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["TERM"] = "xterm-256color"
    env["COLORTERM"] = "truecolor"
    return env


class PosixPtyProcess:
    """Shell attached to a ``pty.openpty`` pair, read through the event loop."""

    def __init__(self, process: subprocess.Popen[bytes], master_fd: int) -> None:
        self._process = process
        self._fd = master_fd
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None
        self._reading = False
        self._closed = False

    @property
    def pid(self) -> int | None:
        return self._process.pid

    def attach(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        self._loop = asyncio.get_running_loop()
        self._on_data = on_data
        self._on_exit = on_exit
        self._loop.add_reader(self._fd, self._on_readable)
        self._reading = True

    def write(self, data: str) -> None:
        if self._closed:
            raise OSError("PTY is closed")
        payload = data.encode("utf-8")
        while payload:
            written = os.write(self._fd, payload)
            payload = payload[written:]

    def resize(self, cols: int, rows: int) -> None:
        _set_winsize(self._fd, cols, rows)

    def isalive(self) -> bool:
        return self._process.poll() is None

    def terminate(self) -> None:
        self._release()
        _signal_group(self._process, signal.SIGHUP)
        if self._process.poll() is not None:
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_later(_KILL_GRACE_SECONDS, self._force_kill)
        else:
            self._force_kill()

    def _force_kill(self) -> None:
        if self._process.poll() is None:
            _signal_group(self._process, signal.SIGKILL)

    def _on_readable(self) -> None:
        try:
            chunk = os.read(self._fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # Linux reports EIO once the slave side is closed.
            chunk = b""
        if not chunk:
            self._finish()
            return
        text = self._decoder.decode(chunk)
        if text and self._on_data is not None:
            self._on_data(text)

    def _finish(self) -> None:
        tail = self._decoder.decode(b"", final=True)
        if tail and self._on_data is not None:
            self._on_data(tail)
        self._release()
        code = self._process.poll()
        if code is not None or self._loop is None:
            self._notify_exit(code)
            return
        waiter = self._loop.run_in_executor(None, self._process.wait)
        waiter.add_done_callback(
            lambda future: self._notify_exit(
                None if future.cancelled() or future.exception() else future.result()
            )
        )

    def _notify_exit(self, code: int | None) -> None:
        if self._on_exit is not None:
            callback, self._on_exit = self._on_exit, None
            callback(code)

    def _release(self) -> None:
        if self._reading and self._loop is not None:
            with suppress(Exception):
                self._loop.remove_reader(self._fd)
            self._reading = False
        if not self._closed:
            self._closed = True
            with suppress(OSError):
                os.close(self._fd)


class WindowsPtyProcess:
    """pywinpty process drained by a reader thread back into the event loop."""

    def __init__(self, process: object) -> None:
        self._process = process
        self._thread: threading.Thread | None = None

    @property
    def pid(self) -> int | None:
        return getattr(self._process, "pid", None)

    def attach(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        loop = asyncio.get_running_loop()

        def pump() -> None:
            while True:
                try:
                    chunk = self._process.read(_READ_SIZE)
                except EOFError:
                    break
                except Exception:
                    logger.debug("winpty read failed pid=%s", self.pid, exc_info=True)
                    break
                if chunk:
                    loop.call_soon_threadsafe(on_data, str(chunk))
            loop.call_soon_threadsafe(on_exit, getattr(self._process, "exitstatus", None))

        self._thread = threading.Thread(target=pump, name=f"winpty-{self.pid}", daemon=True)
        self._thread.start()

    def write(self, data: str) -> None:
        self._process.write(data)

    def resize(self, cols: int, rows: int) -> None:
        self._process.setwinsize(rows, cols)

    def isalive(self) -> bool:
        try:
            return bool(self._process.isalive())
        except Exception:
            return True

    def terminate(self) -> None:
        with suppress(Exception):
            self._process.terminate(force=True)


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    import fcntl
    import struct
    import termios

    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _signal_group(process: subprocess.Popen[bytes], signum: int) -> None:
    with suppress(ProcessLookupError, PermissionError, OSError):
        os.killpg(os.getpgid(process.pid), signum)


def _become_session_leader() -> None:
    import fcntl
    import termios

    # New session with the PTY as controlling terminal so Ctrl+C reaches the foreground job.
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _spawn_posix(command: list[str], cwd: str, env: dict[str, str], cols: int, rows: int) -> PtyProcess:
    import pty

    master_fd, slave_fd = pty.openpty()
    try:
        _set_winsize(master_fd, cols, rows)
        process = subprocess.Popen(
            command,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=cwd,
            env=env,
            preexec_fn=_become_session_leader,
            close_fds=True,
        )
    except Exception:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)
    return PosixPtyProcess(process, master_fd)


def _spawn_with_pywinpty(command: list[str], cwd: str, env: dict[str, str], cols: int, rows: int) -> PtyProcess:
    try:
        from winpty import PtyProcess as WinPtyProcess
    except Exception as exc:
        raise SpecPilotError(
            "pywinpty backend is unavailable.",
            code=ExitCode.TRANSPORT_ERROR,
            hint="Install the windows extra: pip install specpilot[windows].",
        ) from exc

    process = WinPtyProcess.spawn(
        subprocess.list2cmdline(command),
        cwd=cwd,
        env=env,
        dimensions=(rows, cols),
    )
    return WindowsPtyProcess(process)


def default_spawn() -> PtySpawn:
    return _spawn_with_pywinpty if _is_windows() else _spawn_posix


class PtyBackend:
    def __init__(self, spawn: PtySpawn | None = None, *, shell: str = "") -> None:
        self._spawn = spawn or default_spawn()
        self.shell = shell

    def open(
        self,
        *,
        cwd: str | Path | None,
        cols: int,
        rows: int,
        command: list[str] | None = None,
    ) -> PtyHandle:
        if cols <= 0 or rows <= 0:
            raise SpecPilotError(
                f"Invalid PTY size: {cols}x{rows}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use positive terminal row/column values.",
            )
        resolved_command = list(command) if command else resolve_shell(self.shell)
        resolved_cwd = resolve_cwd(cwd)
        try:
            process = self._spawn(resolved_command, resolved_cwd, build_environment(), cols, rows)
        except SpecPilotError:
            raise
        except Exception as exc:
            raise SpecPilotError(
                "Failed to start PTY process.",
                code=ExitCode.TRANSPORT_ERROR,
                hint=str(exc) or "Check shell installation.",
            ) from exc
        logger.debug("pty-open command=%s cwd=%s size=%sx%s", resolved_command, resolved_cwd, cols, rows)
        return PtyHandle(process=process, command=tuple(resolved_command), cwd=resolved_cwd)
