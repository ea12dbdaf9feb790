#!/usr/bin/env python3
"""
inject-state: the only sanctioned state-correction tool

Use ONLY to fix corrupted state (wrong step, fabricated history, stale lock,
halted loop). NOT for advancing state, approving work or skipping reviews.

Usage:
  inject-state --step 11b --phase propose --status starting --reason "Prior agent fabricated step 20"
  inject-state --clear-lock --reason "Lock stale after crash"
  inject-state --clear-flag --reason "Stale flag from abandoned run"
  inject-state --acknowledge --reason "Reviewed manual edit of the state file"
"""

import argparse
import sys
from pathlib import Path

from loop_config import LoopConfig
from loop_state import ControllerLedger, StateCorrupt, StateStore
from orchestrator_logger import OrchestratorLogger
from process_manager import ProcessSupervisor
from transitions import Phase, Status


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Audited manual correction of review loop state')
    parser.add_argument('--step', help='Override currentStep')
    parser.add_argument('--phase', choices=[p.value for p in Phase], help='Override phase')
    parser.add_argument('--status', choices=[s.value for s in Status], help='Override status')
    parser.add_argument('--clear-lock', action='store_true', help='Remove the trigger lock and pid file')
    parser.add_argument('--clear-flag', action='store_true', help='Remove a pending completion record')
    parser.add_argument('--acknowledge', action='store_true',
                        help='Accept the current state file as-is and record the reason')
    parser.add_argument('--reason', default='', help='Why this injection is necessary (required)')
    parser.add_argument('--root', type=Path, default=None, help='Project root')
    args = parser.parse_args(argv)

    if not args.reason.strip():
        print("ERROR: --reason is required. Document why this injection is necessary.", file=sys.stderr)
        return 1

    config = LoopConfig(project_root=args.root)
    logger = OrchestratorLogger('inject-state', config.log_dir)
    ledger = ControllerLedger(config.ledger_file)
    store = StateStore(config.state_file, ledger)
    supervisor = ProcessSupervisor(config.lock_file, config.pid_file, config.flag_file,
                                   config.worker_log, config.stale_lock_seconds)

    logger.info(f"inject-state invoked. Reason: {args.reason.strip()}")

    if args.clear_lock:
        if supervisor.is_locked():
            supervisor.release()
            logger.info(f"Cleared: {config.lock_file.name}")
        else:
            logger.info("No lock to clear.")

    if args.clear_flag:
        if config.flag_file.exists():
            config.flag_file.unlink()
            logger.info(f"Cleared: {config.flag_file.name}")
        else:
            logger.info("No flag to clear.")

    # Every intervention is recorded in the state; overrides need a state to apply to
    if store.exists() or args.step or args.phase or args.status or args.acknowledge:
        try:
            before = store.load()
            after = store.inject(args.reason, step=args.step, phase=args.phase, status=args.status)
        except (StateCorrupt, ValueError) as e:
            logger.error(str(e))
            return 1
        logger.info(f"State updated: {before.summary()} -> {after.summary()}")

    # Any audited intervention lifts a halt and restarts the recovery budget
    if ledger.halted:
        logger.info(f"Cleared halt: {ledger.halted}")
    ledger.clear_halt()
    ledger.reset_counters()

    logger.info("Done.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
