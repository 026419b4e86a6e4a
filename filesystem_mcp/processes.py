from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ProcessError

LOG = logging.getLogger('filesystem-mcp')

DEFAULT_SHELL = '/bin/sh'
_READ_CHUNK = 65536


def _iso_from_ts(ts: float) -> str:
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    except Exception:
        return str(ts)


def _merge_env(env: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    if not env:
        return None
    run_env = os.environ.copy()
    for k, v in env.items():
        run_env[str(k)] = '' if v is None else str(v)
    return run_env


def _kill_group(proc: subprocess.Popen) -> None:
    """SIGKILL the child's whole process group so `sh -c` grandchildren die too."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except (AttributeError, PermissionError, OSError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def _decode(data: Optional[bytes]) -> str:
    return (data or b'').decode('utf-8', errors='replace')


def _truncate(data: bytes, limit: int) -> tuple:
    if limit <= 0 or len(data) <= limit:
        return data, False
    return data[:limit], True


class ProcessState(str, Enum):
    STARTING = 'starting'
    RUNNING = 'running'
    COMPLETED = 'completed'
    KILLED = 'killed'
    TIMED_OUT = 'timed_out'

    @property
    def terminal(self) -> bool:
        return self in (ProcessState.COMPLETED, ProcessState.KILLED, ProcessState.TIMED_OUT)


class OutputBuffer:
    """Append-only byte buffer shared by a pump thread and status readers."""

    def __init__(self, limit: int = 0):
        self._lock = threading.Lock()
        self._buf = bytearray()
        self._limit = limit
        self._truncated = False

    def write(self, data: bytes) -> int:
        with self._lock:
            if self._limit > 0:
                room = self._limit - len(self._buf)
                if room < len(data):
                    self._truncated = True
                    data = data[:max(0, room)]
            self._buf.extend(data)
        return len(data)

    def getvalue(self) -> str:
        with self._lock:
            return _decode(bytes(self._buf))

    @property
    def truncated(self) -> bool:
        with self._lock:
            return self._truncated


@dataclass
class ProcessSnapshot:
    id: str
    command: str
    workdir: Optional[str]
    started_at: str
    state: str
    done: bool
    exit_code: Optional[int]
    pid: Optional[int]
    stdout: str = ''
    stderr: str = ''
    truncated: bool = False

    def to_dict(self, include_output: bool = True) -> Dict[str, Any]:
        d = asdict(self)
        if not include_output:
            for k in ('stdout', 'stderr', 'truncated'):
                d.pop(k, None)
        return d


@dataclass
class ForegroundResult:
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ProcessRecord:
    """State of one background child process.

    `done` and `exit_code` are written once by the completion thread; the
    exit code is stored before the event is set, so any reader that sees
    `done` also sees the final code.
    """

    def __init__(self, pid: str, command: str, workdir: Optional[str], output_limit: int = 0):
        self.id = pid
        self.command = command
        self.workdir = workdir
        self.started_at = time.time()
        self.stdout = OutputBuffer(output_limit)
        self.stderr = OutputBuffer(output_limit)
        self.proc: Optional[subprocess.Popen] = None
        self._state = ProcessState.STARTING
        self._state_lock = threading.Lock()
        self._exit_code: Optional[int] = None
        self._done = threading.Event()
        self._kill_requested = False

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code if self._done.is_set() else None

    @property
    def state(self) -> ProcessState:
        with self._state_lock:
            return self._state

    def attach(self, proc: subprocess.Popen) -> None:
        with self._state_lock:
            self.proc = proc
            self._state = ProcessState.RUNNING

    def request_kill(self) -> None:
        with self._state_lock:
            self._kill_requested = True

    def finish(self, exit_code: int, timed_out: bool = False) -> None:
        with self._state_lock:
            if self._state.terminal:
                return
            if timed_out:
                self._state = ProcessState.TIMED_OUT
            elif self._kill_requested:
                self._state = ProcessState.KILLED
            else:
                self._state = ProcessState.COMPLETED
            self._exit_code = exit_code
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def snapshot(self, include_output: bool = True) -> ProcessSnapshot:
        done = self.done
        proc = self.proc
        return ProcessSnapshot(
            id=self.id,
            command=self.command,
            workdir=self.workdir,
            started_at=_iso_from_ts(self.started_at),
            state=self.state.value,
            done=done,
            exit_code=self._exit_code if done else None,
            pid=proc.pid if proc is not None else None,
            stdout=self.stdout.getvalue() if include_output else '',
            stderr=self.stderr.getvalue() if include_output else '',
            truncated=self.stdout.truncated or self.stderr.truncated,
        )


def _pump(stream, sink: OutputBuffer) -> None:
    try:
        while True:
            chunk = stream.read1(_READ_CHUNK)
            if not chunk:
                break
            sink.write(chunk)
    except (OSError, ValueError) as e:
        LOG.debug('output pump stopped: %s', e)
    finally:
        try:
            stream.close()
        except OSError:
            pass


class ProcessSupervisor:
    """Spawns shell commands and tracks background ones by id (proc_1, proc_2, ...)."""

    def __init__(self, max_output_bytes: int = 1_048_576, retention: int = 0, shell: str = DEFAULT_SHELL):
        self.max_output_bytes = max_output_bytes
        self.retention = retention
        self.shell = shell
        self._lock = threading.Lock()
        self._records: Dict[str, ProcessRecord] = {}
        self._counter = 0

    def _spawn(self, command: str, workdir: Optional[str], env: Optional[Dict[str, Any]]) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                [self.shell, '-c', command],
                cwd=workdir or None,
                env=_merge_env(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise ProcessError(ProcessError.START_FAILURE, f'failed to start command: {e}')

    def _register(self, command: str, workdir: Optional[str]) -> ProcessRecord:
        with self._lock:
            self._counter += 1
            rec = ProcessRecord(f'proc_{self._counter}', command, workdir, self.max_output_bytes)
            self._records[rec.id] = rec
            self._evict_locked()
        return rec

    def _evict_locked(self) -> None:
        if self.retention <= 0 or len(self._records) <= self.retention:
            return
        # oldest first; running processes are never evicted
        for pid in list(self._records):
            if len(self._records) <= self.retention:
                break
            if self._records[pid].done:
                del self._records[pid]

    def _lookup(self, pid: str) -> ProcessRecord:
        with self._lock:
            rec = self._records.get(pid)
        if rec is None:
            raise ProcessError(ProcessError.NOT_FOUND, f'process {pid!r} not found')
        return rec

    def start_background(self, command: str, workdir: Optional[str] = None, env: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> str:
        rec = self._register(command, workdir)
        try:
            proc = self._spawn(command, workdir, env)
        except ProcessError:
            with self._lock:
                self._records.pop(rec.id, None)
            raise
        rec.attach(proc)
        pumps = [
            threading.Thread(target=_pump, args=(proc.stdout, rec.stdout), name=f'{rec.id}-stdout', daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, rec.stderr), name=f'{rec.id}-stderr', daemon=True),
        ]
        for t in pumps:
            t.start()
        threading.Thread(target=self._track, args=(rec, proc, pumps, timeout), name=f'{rec.id}-wait', daemon=True).start()
        LOG.info('started background %s pid=%s: %s', rec.id, proc.pid, command)
        return rec.id

    def _track(self, rec: ProcessRecord, proc: subprocess.Popen, pumps: List[threading.Thread], timeout: Optional[float]) -> None:
        timed_out = False
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            LOG.info('%s exceeded %ss; killing', rec.id, timeout)
            _kill_group(proc)
            proc.wait()
        for t in pumps:
            t.join()
        rec.finish(proc.returncode, timed_out=timed_out)
        LOG.info('%s finished state=%s exit=%s', rec.id, rec.state.value, rec.exit_code)

    def run_foreground(self, command: str, workdir: Optional[str] = None, env: Optional[Dict[str, Any]] = None, timeout: Optional[float] = 30.0) -> ForegroundResult:
        start = time.time()
        proc = self._spawn(command, workdir, env)
        try:
            out, err = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            out, err = proc.communicate()
            out, _ = _truncate(out or b'', self.max_output_bytes)
            err, _ = _truncate(err or b'', self.max_output_bytes)
            LOG.info('foreground command timed out after %ss: %s', timeout, command)
            raise ProcessError(ProcessError.TIMEOUT, f'command timed out after {timeout}s', stdout=_decode(out), stderr=_decode(err))
        out, t1 = _truncate(out or b'', self.max_output_bytes)
        err, t2 = _truncate(err or b'', self.max_output_bytes)
        return ForegroundResult(
            stdout=_decode(out),
            stderr=_decode(err),
            exit_code=int(proc.returncode),
            duration_ms=int((time.time() - start) * 1000),
            truncated=t1 or t2,
        )

    def status(self, pid: str) -> ProcessSnapshot:
        return self._lookup(pid).snapshot()

    def wait(self, pid: str, timeout: Optional[float] = None) -> ProcessSnapshot:
        """Block until `pid` reaches a terminal state (or `timeout`), then snapshot it."""
        rec = self._lookup(pid)
        rec.wait(timeout)
        return rec.snapshot()

    def kill(self, pid: str) -> None:
        rec = self._lookup(pid)
        if rec.done:
            raise ProcessError(ProcessError.ALREADY_EXITED, f'process {pid!r} already exited')
        proc = rec.proc
        if proc is None:
            raise ProcessError(ProcessError.NO_HANDLE, f'process {pid!r} has no OS process')
        rec.request_kill()
        _kill_group(proc)
        LOG.info('kill requested for %s pid=%s', pid, proc.pid)

    def list(self) -> List[ProcessSnapshot]:
        with self._lock:
            records = list(self._records.values())
        return [r.snapshot(include_output=False) for r in records]

    def shutdown(self) -> None:
        """Kill every still-running background process."""
        with self._lock:
            records = list(self._records.values())
        for rec in records:
            if not rec.done and rec.proc is not None:
                rec.request_kill()
                _kill_group(rec.proc)
