#!/usr/bin/env python3
"""
Transition table for the review loop state machine

Maps (phase, status) to (next phase, next agent, prompt tier). The table is
closed: any key not listed here is an anomaly, never a default case.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


STEP_PATTERN = re.compile(r'^\d+(\.\d+)?[a-z]?$')
ADVANCE = 'advance'


class Phase(str, Enum):
    PROPOSE = 'propose'
    REVIEW = 'review'
    EXECUTE = 'execute'
    VERIFY = 'verify'


class Status(str, Enum):
    STARTING = 'starting'
    PROPOSED = 'proposed'
    APPROVED = 'approved'
    REVIEWED = 'reviewed'
    NOT_APPROVED = 'not-approved'
    EXECUTED = 'executed'
    VERIFIED_CLEAN = 'verified-clean'


class Agent(str, Enum):
    IMPLEMENTER = 'implementer'
    REVIEWER = 'reviewer'
    ORCHESTRATOR = 'orchestrator'
    ADVANCE = 'advance'


# Statuses a worker may report in a completion record
FLAG_STATUSES: FrozenSet[str] = frozenset(s.value for s in Status if s is not Status.STARTING)
FLAG_AGENTS: FrozenSet[str] = frozenset(a.value for a in Agent)

# Statuses that send the work back to the implementer and bump the round
CORRECTION_STATUSES: FrozenSet[str] = frozenset({Status.REVIEWED.value, Status.NOT_APPROVED.value})

# Statuses a worker may legally report while the loop is in each phase
LEGAL_FLAG_STATUSES: Dict[str, FrozenSet[str]] = {
    Phase.PROPOSE.value: frozenset({Status.PROPOSED.value}),
    Phase.REVIEW.value: frozenset({Status.APPROVED.value, Status.REVIEWED.value, Status.NOT_APPROVED.value}),
    Phase.EXECUTE.value: frozenset({Status.EXECUTED.value}),
    Phase.VERIFY.value: frozenset({Status.VERIFIED_CLEAN.value, Status.REVIEWED.value, Status.NOT_APPROVED.value}),
}


class UnknownTransition(KeyError):
    """(phase, status) pair with no entry in the transition table"""

    def __init__(self, phase: str, status: str):
        self.phase = phase
        self.status = status
        super().__init__(f"{phase}:{status}")

    def __str__(self):
        return f"no transition for phase={self.phase} status={self.status}"


class TransitionTableError(RuntimeError):
    """The table does not cover every status the flag schema allows"""


@dataclass(frozen=True)
class Transition:
    next_phase: str
    next_agent: Optional[str]
    prompt_tier: Optional[str]

    @property
    def is_advance(self) -> bool:
        return self.next_phase == ADVANCE


TRANSITIONS: Dict[Tuple[str, str], Transition] = {
    ('propose', 'starting'): Transition('propose', 'implementer', 'p1'),
    ('propose', 'proposed'): Transition('review', 'reviewer', 'review'),
    ('review', 'approved'): Transition('execute', 'implementer', 'p2'),
    ('review', 'reviewed'): Transition('review', 'implementer', 'cr-fix'),
    ('review', 'not-approved'): Transition('review', 'implementer', 'cr-fix'),
    ('execute', 'executed'): Transition('verify', 'reviewer', 'verify'),
    ('verify', 'verified-clean'): Transition(ADVANCE, None, None),
    ('verify', 'reviewed'): Transition('verify', 'implementer', 'cr-fix'),
    ('verify', 'not-approved'): Transition('verify', 'implementer', 'cr-fix'),
}


def lookup(phase: str, status: str) -> Transition:
    """Transition for a completion record reported during `phase`"""
    try:
        return TRANSITIONS[(phase, status)]
    except KeyError:
        raise UnknownTransition(phase, status) from None


def resolve_idle(phase: str, status: str) -> Tuple[Transition, bool]:
    """Work out what to trigger when no worker is running.

    Returns (transition, pending). `pending` is True when the stored pair is
    itself a table key whose effect has not been applied yet (e.g. a manual
    correction to review/approved); the caller moves state to the next phase.
    Otherwise the stored pair is the result of an applied transition and the
    entry that produced it is re-triggered as-is.
    """
    if (phase, status) in TRANSITIONS:
        return TRANSITIONS[(phase, status)], True
    matches = [t for (p, s), t in TRANSITIONS.items() if s == status and t.next_phase == phase]
    if len(matches) == 1:
        return matches[0], False
    raise UnknownTransition(phase, status)


def self_check():
    """Fail loudly if the table and the flag schema disagree"""
    phases = {p.value for p in Phase}
    problems = []
    for phase, statuses in LEGAL_FLAG_STATUSES.items():
        for status in sorted(statuses):
            if (phase, status) not in TRANSITIONS:
                problems.append(f"missing entry for {phase}:{status}")
    covered = set().union(*LEGAL_FLAG_STATUSES.values())
    for status in sorted(FLAG_STATUSES - covered):
        problems.append(f"flag status {status} is not legal in any phase")
    for (phase, status), transition in TRANSITIONS.items():
        if phase not in phases:
            problems.append(f"entry {phase}:{status} has unknown phase")
        if transition.next_phase not in phases and not transition.is_advance:
            problems.append(f"entry {phase}:{status} routes to unknown phase {transition.next_phase}")
        if not transition.is_advance and transition.next_agent not in FLAG_AGENTS:
            problems.append(f"entry {phase}:{status} routes to unknown agent {transition.next_agent}")
    if problems:
        raise TransitionTableError("; ".join(problems))


def is_valid_step(step: str) -> bool:
    return isinstance(step, str) and STEP_PATTERN.match(step) is not None


def next_step(step: str) -> Tuple[str, bool]:
    """Successor step id and whether it was guessed.

    Plain integers increment. Composite ids (11b, 3.2) fall back to the
    leading integer plus one and are reported as ambiguous so a human can
    confirm or correct with inject-state.
    """
    if step.isdigit():
        return str(int(step) + 1), False
    leading = re.match(r'^\d+', step)
    if leading is None:
        raise ValueError(f"step id {step!r} has no numeric part")
    return str(int(leading.group(0)) + 1), True
