#!/usr/bin/env python3
"""
Deterministic review loop controller

All routing decisions are made here. Workers execute tasks and write a
completion record; the controller reads it, validates it, transitions state
and triggers the next worker. No model judgment in the control path.

Flow per step: propose -> review -> execute -> verify -> advance

Usage: review-loop [run|watch|status|init|check|stop]
  `run` is one invocation and is meant to be called on a fixed cadence
  (cron or `review-loop watch`).
"""

import argparse
import json
import signal
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from escalation import (AGENT_UNAVAILABLE, AMBIGUOUS_SUCCESSOR, PROMPT_MISSING, RECOVERY_EXHAUSTED,
                        REPEATED_REJECTION, STALE_LOCK_UNKNOWN_OWNER, UNAUTHORIZED_MUTATION,
                        UNKNOWN_TRANSITION, Escalator, LogSink, WebhookSink)
from flag_validator import validate
from loop_config import LoopConfig
from loop_state import ControllerLedger, LoopState, StateCorrupt, StateStore
from orchestrator_logger import OrchestratorLogger
from process_manager import Liveness, LockHeld, ProcessSupervisor
from prompts import PromptNotFound, archive_review_files, build_command, resolve_prompt
from transitions import (CORRECTION_STATUSES, Phase, Status, Transition, TransitionTableError,
                         UnknownTransition, lookup, next_step, resolve_idle, self_check)


ARCHIVE_STATUSES = {Status.PROPOSED.value, Status.REVIEWED.value, Status.NOT_APPROVED.value}


class Outcome(str, Enum):
    PROCESSED = 'processed'
    ADVANCED = 'advanced'
    REJECTED = 'rejected'
    WAITING = 'waiting'
    RECOVERED = 'recovered'
    TRIGGERED = 'triggered'
    ESCALATED = 'escalated'
    HALTED = 'halted'


FAILED_OUTCOMES = {Outcome.ESCALATED, Outcome.HALTED}


class LoopController:
    """One invocation of the loop: process a flag, wait, recover or trigger"""

    def __init__(self, config: LoopConfig, supervisor: ProcessSupervisor = None,
                 escalator: Escalator = None, logger: OrchestratorLogger = None):
        self.config = config
        self.logger = logger or OrchestratorLogger('loop', config.log_dir)
        for warning in config.load_warnings:
            self.logger.warning(warning)
        self.ledger = ControllerLedger(config.ledger_file)
        self.store = StateStore(config.state_file, self.ledger)
        self.supervisor = supervisor or ProcessSupervisor(
            config.lock_file, config.pid_file, config.flag_file,
            config.worker_log, config.stale_lock_seconds)
        if escalator is None:
            sinks = [LogSink(config.escalation_log)]
            if config.webhook_url:
                sinks.append(WebhookSink(config.webhook_url))
            escalator = Escalator(self.logger, sinks)
        self.escalator = escalator

    def run_once(self) -> Outcome:
        self.logger.banner("review loop fired")
        state = self.store.load()
        self.logger.info(f"State: {state.summary()}")

        if not self.store.check_seal():
            if self.ledger.unreadable:
                reason = (f"controller ledger {self.config.ledger_file} is unreadable ({self.ledger.unreadable}); "
                          "halt marker, counters and seal are lost. Acknowledge with inject-state")
            else:
                reason = ("state file changed outside the controller without an injection note; "
                          "correct or acknowledge it with inject-state")
            self.escalator.escalate(UNAUTHORIZED_MUTATION, reason, {'state': state.to_dict()})
            return Outcome.HALTED

        if self.ledger.halted:
            pending = " A completion record is waiting." if self.config.flag_file.exists() else ""
            self.logger.warning(f"Loop halted ({self.ledger.halted}); waiting for inject-state.{pending}")
            return Outcome.HALTED

        if self.config.flag_file.exists():
            outcome = self._process_flag(state)
            if outcome is not None:
                return outcome
            state = self.store.load()

        if self.supervisor.is_locked():
            outcome = self._check_liveness(state)
            if outcome is not None:
                return outcome

        return self._idle(state)

    # Section 1: completion record
    def _discard_flag(self):
        try:
            self.config.flag_file.unlink()
        except FileNotFoundError:
            pass

    def _process_flag(self, state: LoopState) -> Optional[Outcome]:
        self.logger.info("Flag found.")
        result = validate(self.config.flag_file, state.current_step,
                          max_age_seconds=self.config.flag_max_age_seconds)

        if not result.valid:
            self.logger.warning(f"FLAG REJECTED ({result.reason.value}): {result.message}. Deleting.")
            self._discard_flag()
            count = self.ledger.record_rejection(state.current_step, state.phase)
            if count >= self.config.rejection_threshold:
                self.escalator.escalate(
                    REPEATED_REJECTION,
                    f"{count} consecutive rejected flags for step {state.current_step} phase {state.phase}",
                    {'step': state.current_step, 'phase': state.phase, 'lastReason': result.reason.value})
            if self.supervisor.worker_alive():
                return Outcome.REJECTED
            self.supervisor.release()
            return None

        record = result.record
        self.logger.info(f"Flag validated: agent={record.agent} status={record.status} next={record.next_agent}")

        try:
            transition = lookup(state.phase, record.status)
        except UnknownTransition as e:
            self.escalator.escalate(
                UNKNOWN_TRANSITION,
                f"Unknown transition: phase={state.phase} flag_status={record.status} "
                f"(step={state.current_step} round={state.current_round})",
                {'state': state.to_dict(), 'flagStatus': record.status})
            self._discard_flag()
            self.supervisor.release()
            self.ledger.halt(str(e))
            return Outcome.ESCALATED

        expected_next = 'advance' if transition.is_advance else transition.next_agent
        if record.next_agent != expected_next:
            self.logger.warning(
                f"Flag requested nextAgent={record.next_agent}; table routes to {expected_next}")

        if record.status in ARCHIVE_STATUSES:
            archived = archive_review_files(self.config.project_root, self.config.reviews_dir,
                                            self.config.review_files)
            for name, target in archived.items():
                self.logger.info(f"Archived {name} -> {target}")

        # Consume the record before anything else so it is processed at most once
        self._discard_flag()

        if transition.is_advance:
            self._advance(state)
            self.supervisor.release()
            self.ledger.reset_counters()
            return Outcome.ADVANCED

        new_round = state.current_round + 1 if record.status in CORRECTION_STATUSES else state.current_round
        new_state = self.store.update(phase=transition.next_phase, status=record.status,
                                      active_agent=transition.next_agent, current_round=new_round)
        self.logger.info(f"Transition: {state.summary()} -> {new_state.summary()} next={transition.next_agent}")
        self.supervisor.release()
        self.ledger.reset_counters()

        command = self._prepare(new_state, transition)
        if command is None:
            return Outcome.ESCALATED
        outcome = self._start(new_state, transition, command)
        return Outcome.PROCESSED if outcome == Outcome.TRIGGERED else outcome

    def _advance(self, state: LoopState) -> LoopState:
        successor, ambiguous = next_step(state.current_step)
        self.logger.info(f"Step {state.current_step} verified-clean. Advancing to {successor}.")
        new_state = self.store.update(
            current_step=successor,
            phase=Phase.PROPOSE.value,
            status=Status.STARTING.value,
            current_round=1,
            active_agent='implementer',
            steps_complete=state.steps_complete + [state.current_step],
        )
        self.logger.info(f"Transition: {state.summary()} -> {new_state.summary()}")
        if ambiguous:
            self.escalator.escalate(
                AMBIGUOUS_SUCCESSOR,
                f"step {state.current_step} is not a plain integer; advanced to {successor}. "
                "Confirm or correct with inject-state",
                {'previousStep': state.current_step, 'nextStep': successor})
        return new_state

    # Section 2: lock held, no flag
    def _check_liveness(self, state: LoopState) -> Optional[Outcome]:
        liveness = self.supervisor.poll_liveness()
        age = self.supervisor.lock_age() or 0
        pid = self.supervisor.read_pid()

        if liveness == Liveness.RUNNING:
            self.logger.info(f"Agent alive (PID {pid}, lock {int(age)}s) - waiting.")
            return Outcome.WAITING
        if liveness == Liveness.WAITING_UNKNOWN_OWNER:
            self.logger.info(f"Lock {int(age)}s old (no PID) - waiting.")
            return Outcome.WAITING
        if liveness == Liveness.FINISHED:
            self.logger.info("Agent finished and a flag appeared - processing on next cycle.")
            return Outcome.WAITING
        if liveness == Liveness.IDLE:
            return None

        if liveness == Liveness.STALE_UNKNOWN_OWNER:
            self.escalator.escalate(
                STALE_LOCK_UNKNOWN_OWNER,
                f"Lock stale ({int(age)}s, no PID file) - clearing and re-triggering",
                {'lockAgeSeconds': int(age), 'state': state.to_dict()})
            self.supervisor.release()
            return None

        # CRASHED_NO_OUTPUT
        if self.ledger.recoveries(state.current_step, state.phase) >= 1:
            self.escalator.escalate(
                RECOVERY_EXHAUSTED,
                f"Agent died again without output (PID {pid}) for step {state.current_step} "
                f"phase {state.phase}; automatic recovery already used",
                {'pid': pid, 'state': state.to_dict()})
            self.supervisor.release()
            self.ledger.halt(f"recovery exhausted for step {state.current_step} phase {state.phase}")
            return Outcome.HALTED

        self.logger.warning(f"Agent dead (PID {pid} gone, lock {int(age)}s) - clearing and re-triggering.")
        self.ledger.record_recovery(state.current_step, state.phase)
        self.supervisor.release()
        outcome = self._idle(state)
        return Outcome.RECOVERED if outcome == Outcome.TRIGGERED else outcome

    # Section 3: idle
    def _idle(self, state: LoopState) -> Outcome:
        self.logger.info(f"No flag, no active agent. State: {state.phase}/{state.status} - triggering.")
        try:
            transition, pending = resolve_idle(state.phase, state.status)
        except UnknownTransition:
            self.escalator.escalate(
                UNKNOWN_TRANSITION,
                f"Idle state with no valid transition: phase={state.phase} status={state.status} "
                f"step={state.current_step}",
                {'state': state.to_dict()})
            return Outcome.ESCALATED

        if transition.is_advance:
            self._advance(state)
            self.ledger.reset_counters()
            return Outcome.ADVANCED

        command = self._prepare(state, transition)
        if command is None:
            return Outcome.ESCALATED

        if pending and (state.phase != transition.next_phase or state.active_agent != transition.next_agent):
            new_state = self.store.update(phase=transition.next_phase, active_agent=transition.next_agent)
            self.logger.info(f"Transition: {state.summary()} -> {new_state.summary()} next={transition.next_agent}")
            state = new_state

        return self._start(state, transition, command)

    # Triggering
    def _prepare(self, state: LoopState, transition: Transition) -> Optional[List[str]]:
        agent = transition.next_agent
        template = self.config.agent_command(agent)
        if template is None:
            self.escalator.escalate(AGENT_UNAVAILABLE, f"No command configured for agent {agent}",
                                    {'agent': agent})
            return None
        try:
            prompt_file = resolve_prompt(self.config.prompts_dir, state.current_step,
                                         transition.prompt_tier, agent)
        except PromptNotFound as e:
            self.escalator.escalate(PROMPT_MISSING, str(e),
                                    {'step': state.current_step, 'tier': transition.prompt_tier})
            return None
        self.logger.debug(f"Resolved prompt {prompt_file}")
        return build_command(template, prompt_file)

    def _worker_env(self, state: LoopState, agent: str) -> Dict[str, str]:
        mandated = state.current_step in self.config.load_owner_mandates()
        return {
            'REVIEW_LOOP_STEP': state.current_step,
            'REVIEW_LOOP_PHASE': state.phase,
            'REVIEW_LOOP_ROUND': str(state.current_round),
            'REVIEW_LOOP_AGENT': agent,
            'REVIEW_LOOP_FLAG': str(self.config.flag_file),
            'REVIEW_LOOP_OWNER_MANDATE': '1' if mandated else '0',
        }

    def _start(self, state: LoopState, transition: Transition, command: List[str]) -> Outcome:
        agent = transition.next_agent
        timeout = self.config.phase_timeout(transition.next_phase)
        try:
            pid = self.supervisor.trigger(command, timeout, self._worker_env(state, agent),
                                          cwd=self.config.project_root)
        except LockHeld as e:
            self.logger.warning(f"{e} - not triggering {agent}")
            return Outcome.WAITING
        except OSError as e:
            self.escalator.escalate(AGENT_UNAVAILABLE, f"Failed to start {agent}: {e}", {'agent': agent})
            return Outcome.ESCALATED
        self.logger.info(
            f"Triggered {agent} (PID {pid}, tier={transition.prompt_tier}, timeout={timeout}s) "
            f"for {state.summary()}")
        return Outcome.TRIGGERED

    def status_report(self) -> Dict:
        report = {
            'liveness': self.supervisor.poll_liveness().value,
            'pid': self.supervisor.read_pid(),
            'lockAgeSeconds': None,
            'flagPresent': self.config.flag_file.exists(),
            'halted': self.ledger.halted,
            'ledger': self.ledger.data,
        }
        age = self.supervisor.lock_age()
        if age is not None:
            report['lockAgeSeconds'] = int(age)
        try:
            report['state'] = self.store.load().to_dict()
        except StateCorrupt as e:
            report['state'] = None
            report['stateError'] = str(e)
        return report


def watch(controller: LoopController, interval: int) -> int:
    """In-process driver: one invocation every `interval` seconds"""
    running = True

    def stop_watching(sig, frame):
        nonlocal running
        controller.logger.info(f"Received signal {sig}. Stopping watch.")
        running = False

    signal.signal(signal.SIGINT, stop_watching)
    signal.signal(signal.SIGTERM, stop_watching)

    while running:
        try:
            controller.run_once()
        except StateCorrupt as e:
            controller.logger.error(f"FATAL: {e}")
            return 2
        deadline = time.time() + interval
        while running and time.time() < deadline:
            time.sleep(min(1.0, interval))
    return 0


def main(argv=None) -> int:
    """CLI entry point"""
    parser = argparse.ArgumentParser(description='Deterministic review loop controller')
    parser.add_argument('command', nargs='?', default='run',
                        choices=['run', 'watch', 'status', 'init', 'check', 'stop'],
                        help='Command to execute (default: run)')
    parser.add_argument('--root', type=Path, default=None,
                        help='Project root (default: $REVIEW_LOOP_ROOT or cwd)')
    parser.add_argument('--interval', type=int, default=180,
                        help='Seconds between invocations for watch (default: 180)')
    parser.add_argument('--step', default='1', help='Initial step id for init (default: 1)')
    args = parser.parse_args(argv)

    try:
        self_check()
    except TransitionTableError as e:
        print(f"FATAL: transition table self-check failed: {e}", file=sys.stderr)
        return 2
    if args.command == 'check':
        print("Transition table OK")
        return 0

    config = LoopConfig(project_root=args.root)
    controller = LoopController(config)

    if args.command == 'init':
        try:
            state = controller.store.create(args.step)
        except (FileExistsError, ValueError) as e:
            controller.logger.error(str(e))
            return 1
        controller.logger.info(f"Initialised loop state: {state.summary()}")
        if not config.config_path.exists():
            config.save_config()
            controller.logger.info(f"Wrote default configuration to {config.config_path}")
        return 0

    if args.command == 'status':
        print(json.dumps(controller.status_report(), indent=2))
        return 0

    if args.command == 'stop':
        if controller.supervisor.terminate():
            controller.logger.info("Active agent stopped and lock released.")
            return 0
        controller.logger.error("Failed to stop the active agent.")
        return 1

    if args.command == 'watch':
        return watch(controller, args.interval)

    try:
        outcome = controller.run_once()
    except StateCorrupt as e:
        controller.logger.error(f"FATAL: {e}. Fix manually or with inject-state.")
        return 2
    controller.logger.info(f"Outcome: {outcome.value}")
    return 1 if outcome in FAILED_OUTCOMES else 0


if __name__ == '__main__':
    sys.exit(main())
