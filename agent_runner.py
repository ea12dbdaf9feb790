#!/usr/bin/env python3
"""
Runs one worker command under a hard wall-clock timeout

Spawned detached by ProcessSupervisor.trigger as a process group leader; its
pid is the one recorded for liveness. The worker stays in that group so
killing the group always reaches it. Exits with the worker's return code, or
124 on timeout.
"""

import argparse
import signal
import subprocess
import sys

import psutil

from orchestrator_logger import utc_timestamp


TIMEOUT_EXIT_CODE = 124
KILL_GRACE_SECONDS = 10


def _signal_descendants(sig: int):
    for child in psutil.Process().children(recursive=True):
        try:
            child.send_signal(sig)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass


def run(command, timeout_seconds: int) -> int:
    print(f"[{utc_timestamp()}] agent_runner: starting {command[0]} (timeout={timeout_seconds}s)", flush=True)
    process = subprocess.Popen(command)

    def forward(sig, frame):
        _signal_descendants(sig)

    signal.signal(signal.SIGTERM, forward)
    signal.signal(signal.SIGINT, forward)

    try:
        returncode = process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        print(f"[{utc_timestamp()}] agent_runner: timeout after {timeout_seconds}s, terminating", flush=True)
        _signal_descendants(signal.SIGTERM)
        try:
            process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            _signal_descendants(signal.SIGKILL)
            process.wait()
        return TIMEOUT_EXIT_CODE

    print(f"[{utc_timestamp()}] agent_runner: {command[0]} exited with {returncode}", flush=True)
    return returncode

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Run a review loop worker with a hard timeout')
    parser.add_argument('--timeout', type=int, required=True, help='Wall-clock budget in seconds')
    parser.add_argument('command', nargs=argparse.REMAINDER, help='Worker command (after --)')
    args = parser.parse_args(argv)

    command = args.command
    if command and command[0] == '--':
        command = command[1:]
    if not command:
        parser.error('a worker command is required')

    try:
        return run(command, args.timeout)
    except FileNotFoundError as e:
        print(f"[{utc_timestamp()}] agent_runner: cannot start worker: {e}", flush=True)
        return 127


if __name__ == '__main__':
    sys.exit(main())
