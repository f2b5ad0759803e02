#!/usr/bin/env python3
"""
SSH Execution Channel — Supervised Remote Commands and File Transfers

Drives the system `ssh` / `scp` clients as child processes and turns every
run into an ExecResult. Command-level failures (non-zero exit, unreachable
host, watchdog expiry) are results, never exceptions. Only bad input
(invalid IP, unsafe remote path) raises, and it does so before anything
is spawned.

Security model:
- Child processes get a copy of the environment with anything that looks
  like a credential removed (TOKEN, SECRET, PASSWORD, CREDENTIAL)
- Remote paths handed to scp are checked for shell metacharacters
- Unknown host keys are trusted on first use; a changed key is removed
  and the operation retried at most once
- Every run is bounded by a watchdog (SIGTERM, then SIGKILL after a grace
  period) and captured output is capped at 1 MiB per stream

Usage:
    channel = SSHChannel()
    result = await channel.exec("203.0.113.10", "docker ps")
    result = await channel.download("203.0.113.10", "/tmp/db.sql.gz", "./db.sql.gz")
"""

import asyncio
import logging
import os
import re
import shutil
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence

from .errors import UnsafePathError, ValidationError

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 1024 * 1024
READ_CHUNK_BYTES = 64 * 1024

EXEC_TIMEOUT = 30
STREAM_TIMEOUT = 120
TRANSFER_TIMEOUT = 300
KILL_GRACE_SECONDS = 2

MAX_HOST_KEY_RETRIES = 1
TIMEOUT_EXIT_CODE = -1
EXEC_LOG_LIMIT = 500

SENSITIVE_ENV_MARKERS = ("TOKEN", "SECRET", "PASSWORD", "CREDENTIAL")
UNSAFE_PATH_CHARS = frozenset(";|&$`()<>\n\t ")

SSH_OPTIONS = ["-o", "StrictHostKeyChecking=accept-new"]

_IPV4_RE = re.compile(r"^[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}$")
_HOST_KEY_MISMATCH_RE = re.compile(
    r"host key verification failed|remote host identification has changed",
    re.IGNORECASE,
)


# ── Input Validation ─────────────────────────────────────────────

def assert_valid_ip(ip: str) -> None:
    """Raise ValidationError unless ip is a dotted-quad IPv4 address."""
    if not isinstance(ip, str) or not _IPV4_RE.fullmatch(ip):
        raise ValidationError("Invalid IP address format")
    if any(int(octet) > 255 for octet in ip.split(".")):
        raise ValidationError("Invalid IP address: octets must be 0-255")


def is_valid_ip(ip: str) -> bool:
    try:
        assert_valid_ip(ip)
    except ValidationError:
        return False
    return True


def assert_safe_remote_path(path: str) -> None:
    """Reject remote paths that the remote shell could interpret."""
    if not path:
        raise UnsafePathError("Remote path is empty")
    bad = sorted({c for c in path if c in UNSAFE_PATH_CHARS})
    if bad:
        raise UnsafePathError(f"Remote path contains unsafe characters: {bad!r}")


def sanitized_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Copy of the environment without credential-looking variables."""
    source = os.environ if environ is None else environ
    return {
        key: value for key, value in source.items()
        if not any(marker in key.upper() for marker in SENSITIVE_ENV_MARKERS)
    }


def is_host_key_mismatch(stderr: str) -> bool:
    return bool(stderr) and bool(_HOST_KEY_MISMATCH_RE.search(stderr))


def check_ssh_available() -> bool:
    """True when an ssh client is on PATH."""
    return shutil.which("ssh") is not None


# ── Results ──────────────────────────────────────────────────────

@dataclass
class ExecResult:
    """Result of a remote command or file transfer."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    success: bool
    duration_ms: float
    host: str = ""
    timed_out: bool = False
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Process Supervision ──────────────────────────────────────────

class ProcessState(Enum):
    """Lifecycle of one supervised child process."""
    RUNNING = "running"
    TIMED_OUT = "timed-out"
    KILLED = "killed"
    REAPED = "reaped"


class CappedBuffer:
    """Byte buffer that keeps the first `limit` bytes and drops the rest."""

    def __init__(self, limit: int = MAX_OUTPUT_BYTES):
        self.limit = limit
        self.size = 0
        self.dropped = 0
        self._chunks: List[bytes] = []

    def feed(self, chunk: bytes) -> None:
        room = max(self.limit - self.size, 0)
        kept = chunk[:room]
        if kept:
            self._chunks.append(kept)
            self.size += len(kept)
        self.dropped += len(chunk) - len(kept)

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


class ProcessSupervisor:
    """
    Watches one child process: drains its pipes, enforces the watchdog
    and escalates SIGTERM -> SIGKILL.

    Works against anything shaped like asyncio.subprocess.Process
    (stdout/stderr readers, wait(), terminate(), kill(), returncode).
    """

    def __init__(
        self,
        process,
        timeout: Optional[float],
        kill_grace: float = KILL_GRACE_SECONDS,
        limit: int = MAX_OUTPUT_BYTES,
    ):
        self.process = process
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.stdout = CappedBuffer(limit)
        self.stderr = CappedBuffer(limit)
        self.state = ProcessState.RUNNING
        self.history: List[ProcessState] = [ProcessState.RUNNING]

    @property
    def timed_out(self) -> bool:
        return ProcessState.TIMED_OUT in self.history

    def _transition(self, state: ProcessState) -> None:
        self.state = state
        self.history.append(state)

    async def run(self) -> Optional[int]:
        """Wait for the process to be reaped and return its exit status."""
        readers = [
            asyncio.ensure_future(self._drain(stream, buffer))
            for stream, buffer in (
                (self.process.stdout, self.stdout),
                (self.process.stderr, self.stderr),
            )
            if stream is not None
        ]

        try:
            if self.timeout is None:
                await self.process.wait()
            else:
                await asyncio.wait_for(self.process.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._transition(ProcessState.TIMED_OUT)
            await self._terminate()

        self._transition(ProcessState.REAPED)

        if readers:
            # Grandchildren can keep a pipe open after the child is gone.
            _, pending = await asyncio.wait(readers, timeout=self.kill_grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        return self.process.returncode

    async def _terminate(self) -> None:
        self._send(self.process.terminate)
        try:
            await asyncio.wait_for(self.process.wait(), timeout=self.kill_grace)
            return
        except asyncio.TimeoutError:
            pass
        self._transition(ProcessState.KILLED)
        self._send(self.process.kill)
        await self.process.wait()

    @staticmethod
    def _send(signal_fn: Callable[[], None]) -> None:
        try:
            signal_fn()
        except ProcessLookupError:
            pass  # exited between the timeout and the signal

    @staticmethod
    async def _drain(stream, buffer: CappedBuffer) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            buffer.feed(chunk)


# ── Channel ──────────────────────────────────────────────────────

class SSHChannel:
    """
    Remote execution over the system ssh/scp clients.

    One channel can talk to many hosts; it keeps no connection state
    between calls, only an in-memory audit log of everything it ran.
    """

    def __init__(
        self,
        username: str = "root",
        exec_timeout: float = EXEC_TIMEOUT,
        stream_timeout: float = STREAM_TIMEOUT,
        transfer_timeout: float = TRANSFER_TIMEOUT,
        kill_grace: float = KILL_GRACE_SECONDS,
        spawn: Optional[Callable[..., Any]] = None,
    ):
        """
        Args:
            username: Remote login user.
            exec_timeout: Watchdog for one-shot commands (seconds).
            stream_timeout: Watchdog for streaming/interactive sessions.
            transfer_timeout: Watchdog for scp transfers.
            kill_grace: Delay between SIGTERM and SIGKILL.
            spawn: Process factory with the signature of
                asyncio.create_subprocess_exec.
        """
        self.username = username
        self.exec_timeout = exec_timeout
        self.stream_timeout = stream_timeout
        self.transfer_timeout = transfer_timeout
        self.kill_grace = kill_grace
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._exec_log: Deque[ExecResult] = deque(maxlen=EXEC_LOG_LIMIT)

    def _target(self, ip: str) -> str:
        return f"{self.username}@{ip}"

    # ── Public operations ────────────────────────────────────────

    async def exec(self, ip: str, command: str, timeout: Optional[float] = None) -> ExecResult:
        """Run a command and capture its output."""
        assert_valid_ip(ip)
        argv = ["ssh", *SSH_OPTIONS, self._target(ip), command]
        return await self._run_with_host_key_retry(
            ip, argv, command, timeout or self.exec_timeout,
        )

    async def stream(self, ip: str, command: str, timeout: Optional[float] = None) -> ExecResult:
        """Run a command with its stdout going straight to the terminal."""
        assert_valid_ip(ip)
        argv = ["ssh", *SSH_OPTIONS, self._target(ip), command]
        return await self._run_with_host_key_retry(
            ip, argv, command, timeout or self.stream_timeout,
            capture_stdout=False,
        )

    async def connect(self, ip: str, timeout: Optional[float] = None) -> ExecResult:
        """Open an interactive session on the current terminal."""
        assert_valid_ip(ip)
        argv = ["ssh", *SSH_OPTIONS, self._target(ip)]
        return await self._run(
            argv, ip, "<interactive>", timeout or self.stream_timeout,
            capture_stdout=False, capture_stderr=False,
        )

    async def upload(
        self, ip: str, local_path: str, remote_path: str,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """Copy a local file to the remote host."""
        assert_valid_ip(ip)
        assert_safe_remote_path(remote_path)
        remote = f"{self._target(ip)}:{remote_path}"
        argv = ["scp", *SSH_OPTIONS, "-o", "BatchMode=yes", str(local_path), remote]
        return await self._run_with_host_key_retry(
            ip, argv, f"scp {local_path} -> {remote_path}",
            timeout or self.transfer_timeout,
        )

    async def download(
        self, ip: str, remote_path: str, local_path: str,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """Copy a remote file to the local filesystem."""
        assert_valid_ip(ip)
        assert_safe_remote_path(remote_path)
        remote = f"{self._target(ip)}:{remote_path}"
        argv = ["scp", *SSH_OPTIONS, "-o", "BatchMode=yes", remote, str(local_path)]
        return await self._run_with_host_key_retry(
            ip, argv, f"scp {remote_path} -> {local_path}",
            timeout or self.transfer_timeout,
        )

    async def remove_stale_host_key(self, ip: str) -> ExecResult:
        """Forget the cached host key for ip."""
        assert_valid_ip(ip)
        return await self._run(
            ["ssh-keygen", "-R", ip], ip, f"ssh-keygen -R {ip}", self.exec_timeout,
        )

    # ── Internals ────────────────────────────────────────────────

    async def _run_with_host_key_retry(
        self, ip: str, argv: Sequence[str], label: str, timeout: float,
        capture_stdout: bool = True,
    ) -> ExecResult:
        retries = 0
        while True:
            result = await self._run(argv, ip, label, timeout, capture_stdout=capture_stdout)
            if (
                result.success
                or retries >= MAX_HOST_KEY_RETRIES
                or not is_host_key_mismatch(result.stderr)
            ):
                return result
            retries += 1
            logger.warning(f"[SSH] Host key for {ip} changed, removing cached key and retrying")
            await self.remove_stale_host_key(ip)

    async def _run(
        self, argv: Sequence[str], host: str, label: str, timeout: Optional[float],
        capture_stdout: bool = True, capture_stderr: bool = True,
    ) -> ExecResult:
        start = time.time()
        pipe = asyncio.subprocess.PIPE
        interactive = not (capture_stdout or capture_stderr)

        try:
            process = await self._spawn(
                *argv,
                stdin=None if interactive else asyncio.subprocess.DEVNULL,
                stdout=pipe if capture_stdout else None,
                stderr=pipe if capture_stderr else None,
                env=sanitized_env(),
            )
        except OSError as e:
            return self._record(ExecResult(
                command=label, exit_code=-1, stdout="", stderr=str(e),
                success=False, duration_ms=round((time.time() - start) * 1000, 1),
                host=host,
            ))

        supervisor = ProcessSupervisor(process, timeout, self.kill_grace)
        returncode = await supervisor.run()

        stdout = supervisor.stdout.text()
        stderr = supervisor.stderr.text()
        if supervisor.timed_out:
            exit_code = TIMEOUT_EXIT_CODE
            note = f"Timed out after {timeout}s"
            stderr = f"{stderr.rstrip()}\n{note}" if stderr.strip() else note
        else:
            exit_code = returncode if returncode is not None else -1

        return self._record(ExecResult(
            command=label,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            success=exit_code == 0 and not supervisor.timed_out,
            duration_ms=round((time.time() - start) * 1000, 1),
            host=host,
            timed_out=supervisor.timed_out,
        ))

    def _record(self, result: ExecResult) -> ExecResult:
        self._exec_log.append(result)
        level = logging.INFO if result.success else logging.WARNING
        logger.log(
            level,
            f"[SSH] {result.host} {result.command[:80]} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)"
        )
        return result

    # ── Audit ────────────────────────────────────────────────────

    def get_exec_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent runs, newest first."""
        entries = list(self._exec_log)[-limit:]
        return [e.to_dict() for e in reversed(entries)]

    def get_exec_stats(self) -> Dict[str, Any]:
        total = len(self._exec_log)
        successes = sum(1 for e in self._exec_log if e.success)
        avg_duration = (
            sum(e.duration_ms for e in self._exec_log) / total
            if total > 0 else 0
        )
        return {
            "total_commands": total,
            "successes": successes,
            "failures": total - successes,
            "timeouts": sum(1 for e in self._exec_log if e.timed_out),
            "avg_duration_ms": round(avg_duration, 1),
        }

    def __repr__(self) -> str:
        return f"SSHChannel(user={self.username}, runs={len(self._exec_log)})"
