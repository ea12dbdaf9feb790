#!/usr/bin/env python3
"""
Persisted loop state and the controller ledger

StateStore is the single writer of .review-loop-state.json. Every write is an
atomic replace, and every write reseals the ledger so edits made outside this
module can be told apart from the controller's own.
"""

import hashlib
import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from orchestrator_logger import utc_timestamp
from transitions import Phase, Status, is_valid_step


class StateCorrupt(Exception):
    """State record missing or invalid; requires manual correction"""


@dataclass
class LoopState:
    current_step: str
    phase: str
    status: str
    current_round: int = 1
    active_agent: str = 'implementer'
    steps_complete: List[str] = field(default_factory=list)
    last_updated: str = ''
    injection_note: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoopState':
        if not isinstance(data, dict):
            raise StateCorrupt("state record is not a JSON object")
        missing = [k for k in ('currentStep', 'phase', 'status', 'currentRound') if k not in data]
        if missing:
            raise StateCorrupt(f"state record missing fields: {', '.join(missing)}")

        step = data['currentStep']
        if not is_valid_step(step):
            raise StateCorrupt(f"invalid currentStep: {step!r}")
        if data['phase'] not in {p.value for p in Phase}:
            raise StateCorrupt(f"invalid phase: {data['phase']!r}")
        if data['status'] not in {s.value for s in Status}:
            raise StateCorrupt(f"invalid status: {data['status']!r}")
        round_ = data['currentRound']
        if isinstance(round_, bool) or not isinstance(round_, int) or round_ < 1:
            raise StateCorrupt(f"invalid currentRound: {round_!r}")
        steps = data.get('stepsComplete', [])
        if not isinstance(steps, list) or not all(isinstance(s, str) for s in steps):
            raise StateCorrupt("stepsComplete must be a list of step ids")

        return cls(
            current_step=step,
            phase=data['phase'],
            status=data['status'],
            current_round=round_,
            active_agent=str(data.get('activeAgent', 'implementer')),
            steps_complete=list(steps),
            last_updated=str(data.get('lastUpdated', '')),
            injection_note=data.get('injectionNote'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'currentStep': self.current_step,
            'phase': self.phase,
            'status': self.status,
            'currentRound': self.current_round,
            'activeAgent': self.active_agent,
            'stepsComplete': list(self.steps_complete),
            'lastUpdated': self.last_updated,
        }
        if self.injection_note is not None:
            data['injectionNote'] = self.injection_note
        return data

    def summary(self) -> str:
        return f"step={self.current_step} phase={self.phase} status={self.status} round={self.current_round}"


_FIELD_NAMES = {
    'current_step': 'currentStep',
    'phase': 'phase',
    'status': 'status',
    'current_round': 'currentRound',
    'active_agent': 'activeAgent',
    'steps_complete': 'stepsComplete',
}


def _atomic_write_json(path: Path, data: Dict[str, Any]):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
            f.write('\n')
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _digest(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


class ControllerLedger:
    """Controller-private bookkeeping: audit seal, counters, halt marker"""

    def __init__(self, ledger_file: Path):
        self.ledger_file = ledger_file
        # Set when the file exists but cannot be trusted; cleared by the next save
        self.unreadable: Optional[str] = None
        self.data: Dict[str, Any] = self._read()

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.ledger_file, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            self.unreadable = str(e)
            return {}
        if not isinstance(data, dict):
            self.unreadable = "ledger is not a JSON object"
            return {}
        return data

    def save(self):
        _atomic_write_json(self.ledger_file, self.data)
        self.unreadable = None

    # Seal
    @property
    def seal(self) -> Optional[Dict[str, Any]]:
        return self.data.get('seal')

    def set_seal(self, digest: str, injection_note: Optional[str]):
        self.data['seal'] = {'digest': digest, 'injectionNote': injection_note}
        self.save()

    # Counters are scoped to one (step, phase); a new scope starts from zero
    def _scoped(self, name: str, step: str, phase: str) -> Dict[str, Any]:
        entry = self.data.get(name)
        if not entry or entry.get('step') != step or entry.get('phase') != phase:
            entry = {'step': step, 'phase': phase, 'count': 0}
            self.data[name] = entry
        return entry

    def rejections(self, step: str, phase: str) -> int:
        return self._scoped('rejections', step, phase)['count']

    def record_rejection(self, step: str, phase: str) -> int:
        entry = self._scoped('rejections', step, phase)
        entry['count'] += 1
        self.save()
        return entry['count']

    def recoveries(self, step: str, phase: str) -> int:
        return self._scoped('recoveries', step, phase)['count']

    def record_recovery(self, step: str, phase: str) -> int:
        entry = self._scoped('recoveries', step, phase)
        entry['count'] += 1
        self.save()
        return entry['count']

    def reset_counters(self):
        self.data.pop('rejections', None)
        self.data.pop('recoveries', None)
        self.save()

    # Halt
    @property
    def halted(self) -> Optional[str]:
        return self.data.get('halted')

    def halt(self, reason: str):
        self.data['halted'] = reason
        self.save()

    def clear_halt(self):
        self.data.pop('halted', None)
        self.save()


class StateStore:
    """Single-writer access to the loop state record"""

    def __init__(self, state_file: Path, ledger: ControllerLedger):
        self.state_file = state_file
        self.ledger = ledger

    def exists(self) -> bool:
        return self.state_file.exists()

    def _read_raw(self) -> bytes:
        try:
            return self.state_file.read_bytes()
        except FileNotFoundError:
            raise StateCorrupt(f"state file missing: {self.state_file}") from None

    def load(self) -> LoopState:
        raw = self._read_raw()
        try:
            data = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise StateCorrupt(f"state file is not valid JSON: {e}") from None
        return LoopState.from_dict(data)

    def _write(self, state: LoopState) -> LoopState:
        state.last_updated = utc_timestamp()
        _atomic_write_json(self.state_file, state.to_dict())
        self.ledger.set_seal(_digest(self.state_file.read_bytes()), state.injection_note)
        return state

    def create(self, step: str = '1') -> LoopState:
        if self.exists():
            raise FileExistsError(f"state file already exists: {self.state_file}")
        if not is_valid_step(step):
            raise ValueError(f"invalid step id: {step!r}")
        state = LoopState(current_step=step, phase=Phase.PROPOSE.value, status=Status.STARTING.value)
        return self._write(state)

    def update(self, **fields) -> LoopState:
        """Atomic read-modify-write of the named LoopState fields"""
        unknown = set(fields) - set(_FIELD_NAMES)
        if unknown:
            raise ValueError(f"unknown state fields: {', '.join(sorted(unknown))}")
        data = self.load().to_dict()
        for name, value in fields.items():
            data[_FIELD_NAMES[name]] = list(value) if name == 'steps_complete' else value
        # Re-validate so no invalid record can reach disk
        return self._write(LoopState.from_dict(data))

    def inject(self, reason: str, step: str = None, phase: str = None, status: str = None) -> LoopState:
        """Manual correction path; the reason is recorded in injectionNote"""
        if not reason or not reason.strip():
            raise ValueError("a non-empty reason is required for state injection")
        state = self.load()
        prev = f"step={state.current_step} phase={state.phase} status={state.status}"

        data = state.to_dict()
        if step:
            data['currentStep'] = step
        if phase:
            data['phase'] = phase
        if status:
            data['status'] = status
        data['injectionNote'] = None
        new_state = LoopState.from_dict(data)
        new_state.injection_note = (
            f"State corrected at {utc_timestamp()}: {prev} -> step={new_state.current_step} "
            f"phase={new_state.phase} status={new_state.status}. Reason: {reason.strip()}"
        )
        return self._write(new_state)

    def check_seal(self) -> bool:
        """True when the record on disk is accounted for.

        Unsealed records are sealed as-is. A record whose injectionNote
        changed since the last seal was corrected out of band with an audit
        note, so it is accepted and resealed. Any other delta is unexplained,
        and so is everything while the ledger itself cannot be read.
        """
        if self.ledger.unreadable:
            return False
        raw = self._read_raw()
        digest = _digest(raw)
        seal = self.ledger.seal
        note = self.load().injection_note
        if seal is None:
            self.ledger.set_seal(digest, note)
            return True
        if seal.get('digest') == digest:
            return True
        if note and note != seal.get('injectionNote'):
            self.ledger.set_seal(digest, note)
            return True
        return False

    def reseal(self):
        """Accept the record on disk as the new baseline"""
        self.ledger.set_seal(_digest(self._read_raw()), self.load().injection_note)
