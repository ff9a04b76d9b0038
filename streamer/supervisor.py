"""
Process supervision for the external sync engine.

Runs bounded one-shot commands and spawns long-running processes whose output
is streamed by a reader thread. Exits are surfaced through callbacks on the
handle; nothing here ever restarts a process.
"""

import logging
import os
import signal
import socket
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from shared.constants import (
    LOOPBACK_HOST,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_TERMINATE_GRACE_SECONDS,
    PROCESS_OUTPUT_TAIL_LINES,
)
from shared.errors import ConfigError, RetryableError
from streamer.rclone import redact

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = LOOPBACK_HOST) -> bool:
    """Return True if something is listening on the given port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        return s.connect_ex((host, port)) == 0


def find_free_port(host: str = LOOPBACK_HOST) -> int:
    """Ask the OS for an unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


@dataclass
class CommandResult:
    """Collected output of a bounded command."""
    args: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stderr, self.stdout) if part)


class ProcessHandle:
    """A supervised long-running process."""

    def __init__(self, proc: subprocess.Popen, args: List[str], name: str):
        self.proc = proc
        self.args = list(args)
        self.name = name
        self.pid = proc.pid
        self.started_at = time.time()
        self._tail = deque(maxlen=PROCESS_OUTPUT_TAIL_LINES)
        self._lock = threading.Lock()
        self._line_listeners: List[Callable[[str], None]] = []
        self._exit_callbacks: List[Callable[['ProcessHandle'], None]] = []
        self._exited = threading.Event()
        self._reader = threading.Thread(
            target=self._pump, name=f"{name}-output", daemon=True)
        self._reader.start()

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.poll()

    def poll(self) -> Optional[int]:
        return self.proc.poll()

    def is_alive(self) -> bool:
        return self.proc.poll() is None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for exit; returns the exit code or None if still running."""
        try:
            return self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def output_tail(self, lines: int = 20) -> str:
        with self._lock:
            return "\n".join(list(self._tail)[-lines:])

    def add_line_listener(self, callback: Callable[[str], None]) -> None:
        with self._lock:
            self._line_listeners.append(callback)
            history = list(self._tail)
        for line in history:
            callback(line)

    def add_exit_callback(self, callback: Callable[['ProcessHandle'], None]) -> None:
        """Register a callback fired once the process has exited and its output drained."""
        with self._lock:
            if not self._exited.is_set():
                self._exit_callbacks.append(callback)
                return
        callback(self)

    def _pump(self):
        stream = self.proc.stdout
        try:
            if stream is not None:
                for raw in iter(stream.readline, ''):
                    line = raw.rstrip("\r\n")
                    if not line:
                        continue
                    with self._lock:
                        self._tail.append(line)
                        listeners = list(self._line_listeners)
                    logger.debug(f"[{self.name}:{self.pid}] {redact(line)}")
                    for listener in listeners:
                        try:
                            listener(line)
                        except Exception as e:
                            logger.warning(f"Line listener failed for {self.name}: {e}")
        except (OSError, ValueError) as e:
            logger.debug(f"Output reader for {self.name} stopped: {e}")
        finally:
            self.proc.wait()
            with self._lock:
                self._exited.set()
                callbacks = list(self._exit_callbacks)
                self._exit_callbacks.clear()
            logger.debug(f"{self.name} (pid {self.pid}) exited with {self.proc.returncode}")
            for callback in callbacks:
                try:
                    callback(self)
                except Exception as e:
                    logger.warning(f"Exit callback failed for {self.name}: {e}")


class ProcessSupervisor:
    """Spawns, terminates and health-checks engine subprocesses."""

    def __init__(self, command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
                 terminate_grace: float = DEFAULT_TERMINATE_GRACE_SECONDS):
        self.command_timeout = command_timeout
        self.terminate_grace = terminate_grace
        self._handles: Dict[int, ProcessHandle] = {}
        self._lock = threading.Lock()

    def run(self, args: List[str], timeout: Optional[float] = None,
            env: Optional[Dict[str, str]] = None) -> CommandResult:
        """
        Run a bounded command and collect its output.

        Raises:
            ConfigError: If the binary cannot be executed
            RetryableError: If the command did not finish within the timeout
        """
        timeout = self.command_timeout if timeout is None else timeout
        start = time.monotonic()
        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._env(env),
                stdin=subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ConfigError(f"Cannot execute {args[0]}: {e}")
        except subprocess.TimeoutExpired:
            raise RetryableError(f"{os.path.basename(args[0])} {args[1] if len(args) > 1 else ''}".strip()
                                 + f" timed out after {timeout:.0f}s")
        duration = time.monotonic() - start
        logger.debug(f"Command {os.path.basename(args[0])} {args[1:2]} exited {proc.returncode} in {duration:.2f}s")
        return CommandResult(args=list(args), returncode=proc.returncode,
                             stdout=proc.stdout or "", stderr=proc.stderr or "",
                             duration=duration)

    def spawn(self, args: List[str], env: Optional[Dict[str, str]] = None,
              name: Optional[str] = None) -> ProcessHandle:
        """
        Start a long-running process with merged, streamed output.

        Raises:
            ConfigError: If the binary cannot be executed
        """
        name = name or os.path.basename(args[0])
        popen_kw = {
            "stdout": subprocess.PIPE,
            "stderr": subprocess.STDOUT,
            "stdin": subprocess.DEVNULL,
            "text": True,
            "bufsize": 1,
            "env": self._env(env),
        }
        if os.name == "nt":
            popen_kw["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            popen_kw["start_new_session"] = True
        try:
            proc = subprocess.Popen(args, **popen_kw)
        except (FileNotFoundError, PermissionError) as e:
            raise ConfigError(f"Cannot execute {args[0]}: {e}")

        handle = ProcessHandle(proc, args, name)
        with self._lock:
            self._handles[handle.pid] = handle
        handle.add_exit_callback(self._forget)
        logger.info(f"Started {name} (pid {handle.pid})")
        return handle

    def terminate(self, handle: ProcessHandle, grace: Optional[float] = None) -> Optional[int]:
        """Send a graceful signal, then force-kill after the grace period."""
        grace = self.terminate_grace if grace is None else grace
        if handle.is_alive():
            logger.info(f"Stopping {handle.name} (pid {handle.pid})")
            self._signal(handle, signal.SIGTERM)
            if handle.wait(timeout=grace) is None:
                logger.warning(f"{handle.name} (pid {handle.pid}) ignored SIGTERM; killing")
                self._signal(handle, signal.SIGKILL if os.name != "nt" else signal.SIGTERM)
                handle.wait(timeout=grace)
        return handle.returncode

    def health(self, handle: ProcessHandle,
               probe: Optional[Callable[[], bool]] = None) -> bool:
        """Liveness plus an optional readiness probe."""
        if handle is None or not handle.is_alive():
            return False
        if probe is None:
            return True
        try:
            return bool(probe())
        except Exception as e:
            logger.debug(f"Health probe for {handle.name} raised: {e}")
            return False

    def live_handles(self) -> List[ProcessHandle]:
        with self._lock:
            return [h for h in self._handles.values() if h.is_alive()]

    def shutdown(self) -> None:
        """Terminate every process this supervisor still tracks."""
        for handle in self.live_handles():
            self.terminate(handle)

    def _forget(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles.pop(handle.pid, None)

    @staticmethod
    def _signal(handle: ProcessHandle, sig) -> None:
        try:
            if os.name != "nt":
                os.killpg(handle.pid, sig)
            elif sig == signal.SIGTERM:
                handle.proc.terminate()
            else:
                handle.proc.kill()
        except (ProcessLookupError, PermissionError, OSError):
            pass

    @staticmethod
    def _env(extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        env = os.environ.copy()
        if extra:
            env.update(extra)
        return env
