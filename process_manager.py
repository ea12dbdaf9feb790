#!/usr/bin/env python3
"""
Worker process supervision for the review loop
Owns the trigger lock, the pid file and liveness checks across invocations
"""

import os
import signal
import subprocess
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import psutil


RUNNER_SCRIPT = Path(__file__).resolve().parent / 'agent_runner.py'


class Liveness(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    FINISHED = 'finished'
    CRASHED_NO_OUTPUT = 'crashed-no-output'
    WAITING_UNKNOWN_OWNER = 'waiting-unknown-owner'
    STALE_UNKNOWN_OWNER = 'stale-unknown-owner'


class LockHeld(RuntimeError):
    """Another worker already holds the trigger lock"""


class ProcessSupervisor:
    def __init__(self, lock_file: Path, pid_file: Path, flag_file: Path,
                 worker_log: Path, stale_lock_seconds: int = 2700):
        self.lock_file = lock_file
        self.pid_file = pid_file
        self.flag_file = flag_file
        self.worker_log = worker_log
        self.stale_lock_seconds = stale_lock_seconds

    # Lock and pid file
    def is_locked(self) -> bool:
        return self.lock_file.exists()

    def acquire_lock(self):
        try:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise LockHeld(f"lock already held: {self.lock_file}") from None
        with os.fdopen(fd, 'w') as f:
            f.write(f"{os.getpid()}\n")

    def release(self):
        """Clear the lock and the liveness record"""
        for path in (self.lock_file, self.pid_file):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def lock_age(self) -> Optional[float]:
        try:
            return max(0.0, time.time() - self.lock_file.stat().st_mtime)
        except FileNotFoundError:
            return None

    def read_pid(self) -> Optional[int]:
        try:
            text = self.pid_file.read_text().strip()
        except FileNotFoundError:
            return None
        try:
            return int(text)
        except ValueError:
            return None

    def _save_pid(self, pid: int):
        self.pid_file.write_text(f"{pid}\n")

    def _is_process_running(self, pid: int) -> bool:
        try:
            if not psutil.pid_exists(pid):
                return False
            # Zombies are effectively dead
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def _reap_zombie_if_child(self, pid: int):
        try:
            os.waitpid(pid, os.WNOHANG)
        except (OSError, ChildProcessError):
            # Not our child or already reaped
            pass

    def _owns_group(self, pid: int) -> bool:
        """True when pid leads a process group other than our own"""
        try:
            pgid = os.getpgid(pid)
        except (OSError, ProcessLookupError):
            return False
        return pgid == pid and pgid != os.getpgrp()

    def _is_own_lineage(self, pid: int) -> bool:
        if pid == os.getpid():
            return True
        try:
            return pid in {p.pid for p in psutil.Process().parents()}
        except psutil.Error:
            return False

    def _group_members(self, pgid: int) -> List[psutil.Process]:
        """Live processes still in the worker's group, including orphans"""
        if pgid == os.getpgrp():
            return []
        members = []
        for proc in psutil.process_iter(['status']):
            try:
                if os.getpgid(proc.pid) == pgid and proc.info['status'] != psutil.STATUS_ZOMBIE:
                    members.append(proc)
            except (OSError, ProcessLookupError):
                continue
        return members

    def _is_worker_running(self, pid: int) -> bool:
        """The runner or anything left in its group is still alive"""
        return self._is_process_running(pid) or bool(self._group_members(pid))

    def _worker_tree(self, pid: int) -> List[psutil.Process]:
        tree = {}
        try:
            root = psutil.Process(pid)
            tree[root.pid] = root
            for child in root.children(recursive=True):
                tree[child.pid] = child
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        for member in self._group_members(pid):
            tree.setdefault(member.pid, member)
        return list(tree.values())

    def _signal_tree(self, pid: int, procs: List[psutil.Process], sig: int):
        if self._owns_group(pid):
            try:
                os.killpg(pid, sig)
            except (OSError, ProcessLookupError):
                pass
        # Descendants that left the group are signalled one by one
        for proc in procs:
            try:
                proc.send_signal(sig)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

    def worker_alive(self) -> bool:
        pid = self.read_pid()
        return pid is not None and self._is_worker_running(pid)

    # Liveness
    def poll_liveness(self) -> Liveness:
        if not self.is_locked():
            return Liveness.IDLE

        pid = self.read_pid()
        if pid is not None:
            if self._is_worker_running(pid):
                return Liveness.RUNNING
            self._reap_zombie_if_child(pid)
            if self.flag_file.exists():
                return Liveness.FINISHED
            return Liveness.CRASHED_NO_OUTPUT

        # No pid recorded; liveness can only be inferred from lock age
        age = self.lock_age()
        if age is not None and age >= self.stale_lock_seconds:
            return Liveness.STALE_UNKNOWN_OWNER
        return Liveness.WAITING_UNKNOWN_OWNER

    # Triggering
    def build_runner_command(self, command: List[str], timeout_seconds: int) -> List[str]:
        return [sys.executable, str(RUNNER_SCRIPT), '--timeout', str(int(timeout_seconds)), '--'] + list(command)

    def _spawn(self, argv: List[str], env: Dict[str, str], cwd: Path) -> int:
        self.worker_log.parent.mkdir(parents=True, exist_ok=True)
        with open(self.worker_log, 'ab') as log:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                cwd=str(cwd),
                env=env,
                close_fds=True,
                start_new_session=True,  # runner leads the group the worker runs in
            )
        return process.pid

    def trigger(self, command: List[str], timeout_seconds: int, env: Dict[str, str] = None,
                cwd: Path = None) -> int:
        """Acquire the lock, start the worker detached, record its pid"""
        self.acquire_lock()
        full_env = dict(os.environ)
        full_env.update(env or {})
        try:
            pid = self._spawn(self.build_runner_command(command, timeout_seconds),
                              full_env, cwd or self.lock_file.parent)
        except (OSError, subprocess.SubprocessError):
            self.release()
            raise
        self._save_pid(pid)
        return pid

    def terminate(self, timeout: int = 10) -> bool:
        """Stop the recorded worker and everything it started, then release the lock.

        The process group is only signalled when the recorded pid leads a
        group of its own; a stale or reused pid never takes our group down.
        """
        pid = self.read_pid()
        if pid is None or not self._is_worker_running(pid):
            self.release()
            return True
        if self._is_own_lineage(pid):
            # A reused pid pointing at us or a parent is not a worker
            return False

        procs = self._worker_tree(pid)
        self._signal_tree(pid, procs, signal.SIGTERM)
        if not self._wait_gone(pid, procs, timeout):
            self._signal_tree(pid, self._worker_tree(pid) or procs, signal.SIGKILL)
            if not self._wait_gone(pid, procs, 5):
                return False

        self._reap_zombie_if_child(pid)
        self.release()
        return True

    def _wait_gone(self, pid: int, procs: List[psutil.Process], timeout: float) -> bool:
        deadline = time.time() + timeout
        while time.time() < deadline:
            self._reap_zombie_if_child(pid)
            if not any(self._is_process_running(p.pid) for p in procs) and not self._group_members(pid):
                return True
            time.sleep(0.1)
        return False
