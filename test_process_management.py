#!/usr/bin/env python3
"""
Test suite for ProcessSupervisor functionality
Tests lock handling, PID liveness, detached triggering, timeout enforcement and termination
"""

import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time
import unittest
from pathlib import Path

from process_manager import Liveness, LockHeld, ProcessSupervisor


class TestProcessSupervisor(unittest.TestCase):

    def setUp(self):
        """Set up a scratch project directory"""
        self.test_dir = Path(tempfile.mkdtemp())
        self.supervisor = ProcessSupervisor(
            lock_file=self.test_dir / '.agent-trigger.lock',
            pid_file=self.test_dir / '.agent-pid',
            flag_file=self.test_dir / '.agent-status.json',
            worker_log=self.test_dir / '.review-loop' / 'agent.log',
            stale_lock_seconds=2700,
        )
        self.processes = []

    def tearDown(self):
        """Clean up test environment"""
        # Plain sleepers share our process group; stop them directly
        for process in self.processes:
            if process.poll() is None:
                process.kill()
                process.wait()
        self.supervisor.terminate(timeout=2)
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _sleeper(self, seconds=10):
        process = subprocess.Popen([sys.executable, '-c', f'import time; time.sleep({seconds})'])
        self.processes.append(process)
        return process

    def _wait_for(self, predicate, timeout=10):
        deadline = time.time() + timeout
        while time.time() < deadline:
            if predicate():
                return True
            time.sleep(0.1)
        return False

    def test_idle_without_lock(self):
        self.assertEqual(self.supervisor.poll_liveness(), Liveness.IDLE)
        self.assertIsNone(self.supervisor.lock_age())

    def test_lock_is_exclusive(self):
        self.supervisor.acquire_lock()
        with self.assertRaises(LockHeld):
            self.supervisor.acquire_lock()
        self.supervisor.release()
        self.supervisor.acquire_lock()
        self.assertTrue(self.supervisor.is_locked())

    def test_running_pid_detected(self):
        process = self._sleeper()
        self.supervisor.acquire_lock()
        self.supervisor.pid_file.write_text(f"{process.pid}\n")

        self.assertEqual(self.supervisor.poll_liveness(), Liveness.RUNNING)
        self.assertTrue(self.supervisor.worker_alive())

    def test_dead_pid_without_flag_is_crash(self):
        process = self._sleeper()
        self.supervisor.acquire_lock()
        self.supervisor.pid_file.write_text(f"{process.pid}\n")

        process.terminate()
        process.wait()

        self.assertEqual(self.supervisor.poll_liveness(), Liveness.CRASHED_NO_OUTPUT)
        self.assertFalse(self.supervisor.worker_alive())

    def test_zombie_counts_as_dead(self):
        process = self._sleeper(0)
        self.supervisor.acquire_lock()
        self.supervisor.pid_file.write_text(f"{process.pid}\n")
        # Exited but never waited on
        self.assertTrue(self._wait_for(lambda: not self.supervisor.worker_alive()))

        self.assertEqual(self.supervisor.poll_liveness(), Liveness.CRASHED_NO_OUTPUT)

    def test_dead_pid_with_flag_is_finished(self):
        self.supervisor.acquire_lock()
        self.supervisor.pid_file.write_text("999999\n")
        self.supervisor.flag_file.write_text('{}')

        self.assertEqual(self.supervisor.poll_liveness(), Liveness.FINISHED)

    def test_lock_without_pid_ages_to_stale(self):
        self.supervisor.acquire_lock()
        self.assertEqual(self.supervisor.poll_liveness(), Liveness.WAITING_UNKNOWN_OWNER)

        past = time.time() - 50 * 60
        os.utime(self.supervisor.lock_file, (past, past))
        self.assertGreaterEqual(self.supervisor.lock_age(), 50 * 60 - 5)
        self.assertEqual(self.supervisor.poll_liveness(), Liveness.STALE_UNKNOWN_OWNER)

    def test_garbage_pid_file_treated_as_missing(self):
        self.supervisor.acquire_lock()
        self.supervisor.pid_file.write_text("not-a-pid\n")
        self.assertIsNone(self.supervisor.read_pid())
        self.assertEqual(self.supervisor.poll_liveness(), Liveness.WAITING_UNKNOWN_OWNER)

    def test_release_clears_lock_and_pid(self):
        self.supervisor.acquire_lock()
        self.supervisor.pid_file.write_text("123\n")
        self.supervisor.release()
        self.assertFalse(self.supervisor.lock_file.exists())
        self.assertFalse(self.supervisor.pid_file.exists())
        # Releasing twice is harmless
        self.supervisor.release()

    def test_trigger_records_pid_and_runs_detached(self):
        marker = self.test_dir / 'worker-ran'
        command = [sys.executable, '-c',
                   f"import os, pathlib; pathlib.Path({str(marker)!r}).write_text(os.environ['REVIEW_LOOP_STEP'])"]

        pid = self.supervisor.trigger(command, timeout_seconds=30, env={'REVIEW_LOOP_STEP': '4'},
                                      cwd=self.test_dir)

        self.assertEqual(self.supervisor.read_pid(), pid)
        self.assertTrue(self.supervisor.is_locked())
        self.assertTrue(self._wait_for(marker.exists))
        self.assertEqual(marker.read_text(), '4')
        self.assertTrue(self._wait_for(lambda: not self.supervisor.worker_alive()))
        self.assertEqual(self.supervisor.poll_liveness(), Liveness.CRASHED_NO_OUTPUT)

    def test_trigger_refuses_when_locked(self):
        self.supervisor.acquire_lock()
        with self.assertRaises(LockHeld):
            self.supervisor.trigger([sys.executable, '-c', 'pass'], timeout_seconds=5)
        self.assertIsNone(self.supervisor.read_pid())

    def test_trigger_runs_in_own_session(self):
        pid = self.supervisor.trigger([sys.executable, '-c', 'import time; time.sleep(20)'], timeout_seconds=30)
        self.assertTrue(self.supervisor.worker_alive())
        self.assertEqual(os.getsid(pid), pid)
        self.assertNotEqual(os.getsid(pid), os.getsid(0))

    def test_timeout_kills_worker(self):
        start = time.time()
        self.supervisor.trigger([sys.executable, '-c', 'import time; time.sleep(60)'], timeout_seconds=1)

        self.assertTrue(self._wait_for(lambda: not self.supervisor.worker_alive(), timeout=15))
        self.assertLess(time.time() - start, 15)
        self.assertEqual(self.supervisor.poll_liveness(), Liveness.CRASHED_NO_OUTPUT)
        self.assertIn('timeout after 1s', self.supervisor.worker_log.read_text())

    def test_terminate_stops_worker_and_releases(self):
        pid = self.supervisor.trigger([sys.executable, '-c', 'import time; time.sleep(30)'], timeout_seconds=60)
        self.assertTrue(self.supervisor.worker_alive())

        start = time.time()
        self.assertTrue(self.supervisor.terminate(timeout=5))
        self.assertLess(time.time() - start, 7)
        self.assertFalse(self.supervisor._is_process_running(pid))
        self.assertFalse(self.supervisor.is_locked())

    def test_terminate_without_worker(self):
        self.supervisor.acquire_lock()
        self.assertTrue(self.supervisor.terminate())
        self.assertFalse(self.supervisor.is_locked())

    def test_terminate_spares_our_process_group(self):
        """A recorded pid in our own group is signalled alone"""
        process = self._sleeper(30)
        self.assertEqual(os.getpgid(process.pid), os.getpgrp())
        self.supervisor.acquire_lock()
        self.supervisor.pid_file.write_text(f"{process.pid}\n")

        self.assertTrue(self.supervisor.terminate(timeout=5))

        self.assertIsNotNone(process.wait(timeout=5))
        self.assertFalse(self.supervisor.is_locked())

    def test_terminate_refuses_own_pid(self):
        self.supervisor.acquire_lock()
        self.supervisor.pid_file.write_text(f"{os.getpid()}\n")

        self.assertFalse(self.supervisor.terminate(timeout=1))
        self.assertTrue(self.supervisor.is_locked())
        self.supervisor.release()

    def _start_worker(self, body, timeout_seconds=60):
        worker_pid_file = self.test_dir / 'worker.pid'
        script = (f"import os, pathlib, signal, time\n{body}\n"
                  f"pathlib.Path({str(worker_pid_file)!r}).write_text(str(os.getpid()))\n"
                  "time.sleep(60)\n")
        runner_pid = self.supervisor.trigger([sys.executable, '-c', script], timeout_seconds=timeout_seconds)
        self.assertTrue(self._wait_for(lambda: worker_pid_file.exists() and worker_pid_file.read_text()))
        return runner_pid, int(worker_pid_file.read_text())

    def test_worker_shares_runner_group(self):
        runner_pid, worker_pid = self._start_worker('')
        self.assertEqual(os.getpgid(worker_pid), runner_pid)

    def test_terminate_kills_worker_ignoring_sigterm(self):
        runner_pid, worker_pid = self._start_worker('signal.signal(signal.SIGTERM, signal.SIG_IGN)')

        self.assertTrue(self.supervisor.terminate(timeout=2))

        self.assertFalse(self.supervisor._is_process_running(runner_pid))
        self.assertTrue(self._wait_for(lambda: not self.supervisor._is_process_running(worker_pid), timeout=5))
        self.assertFalse(self.supervisor.is_locked())

    def test_worker_outliving_runner_still_counts_as_running(self):
        runner_pid, worker_pid = self._start_worker('')

        os.kill(runner_pid, signal.SIGKILL)
        self.assertTrue(self._wait_for(lambda: not self.supervisor._is_process_running(runner_pid)))

        self.assertTrue(self.supervisor._is_process_running(worker_pid))
        self.assertEqual(self.supervisor.poll_liveness(), Liveness.RUNNING)

        self.assertTrue(self.supervisor.terminate(timeout=5))
        self.assertFalse(self.supervisor._is_process_running(worker_pid))


if __name__ == '__main__':
    unittest.main()
