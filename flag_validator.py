#!/usr/bin/env python3
"""
Strict validation of worker completion records ("flags")

Checks run in a fixed order and stop at the first failure. The validator
never deletes or rewrites the record; disposal is the caller's decision.

Usage: validate-flag <flag-file> <expected-step>
Exit 0 = valid. Exit 1 = invalid (reason printed to stderr).
"""

import argparse
import json
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from transitions import FLAG_AGENTS, FLAG_STATUSES


REQUIRED_FIELDS = ('agent', 'step', 'status', 'nextAgent', 'timestamp')
MAX_AGE_SECONDS = 1800      # 30 min
MAX_FUTURE_SKEW_SECONDS = 300


class RejectReason(str, Enum):
    MALFORMED_RECORD = 'MalformedRecord'
    MISSING_FIELD = 'MissingField'
    STEP_MISMATCH = 'StepMismatch'
    STALE_RECORD = 'StaleRecord'
    UNKNOWN_STATUS = 'UnknownStatus'
    UNKNOWN_AGENT = 'UnknownAgent'


@dataclass
class CompletionRecord:
    agent: str
    step: str
    status: str
    next_agent: str
    timestamp: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any], timestamp: datetime) -> 'CompletionRecord':
        return cls(agent=data['agent'], step=data['step'], status=data['status'],
                   next_agent=data['nextAgent'], timestamp=timestamp)


@dataclass
class ValidationResult:
    valid: bool
    reason: Optional[RejectReason] = None
    message: str = ''
    record: Optional[CompletionRecord] = None

    def __bool__(self):
        return self.valid


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 with optional Z suffix; naive values are taken as UTC"""
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {type(value).__name__}")
    ts = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _reject(reason: RejectReason, message: str) -> ValidationResult:
    return ValidationResult(valid=False, reason=reason, message=message)


def validate(source: Union[Path, str, Dict[str, Any]], expected_step: str,
             now: Optional[datetime] = None, max_age_seconds: int = MAX_AGE_SECONDS) -> ValidationResult:
    """Validate a completion record given as a path, JSON text or parsed dict"""
    if isinstance(source, Path):
        try:
            source = source.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            return _reject(RejectReason.MALFORMED_RECORD, f"cannot read flag file: {e}")
    if isinstance(source, str):
        try:
            data = json.loads(source)
        except ValueError as e:
            return _reject(RejectReason.MALFORMED_RECORD, f"flag is not valid JSON: {e}")
    else:
        data = source
    if not isinstance(data, dict):
        return _reject(RejectReason.MALFORMED_RECORD, "flag is not a JSON object")

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            return _reject(RejectReason.MISSING_FIELD, f"missing required field: {field}")

    if data['step'] != expected_step:
        return _reject(RejectReason.STEP_MISMATCH,
                       f"step mismatch: flag={data['step']} expected={expected_step}")

    now = now or datetime.now(timezone.utc)
    try:
        timestamp = parse_timestamp(data['timestamp'])
    except ValueError as e:
        return _reject(RejectReason.STALE_RECORD, f"invalid timestamp: {e}")
    age = (now - timestamp).total_seconds()
    if age > max_age_seconds:
        return _reject(RejectReason.STALE_RECORD, f"flag is stale: age={int(age)}s max={max_age_seconds}s")
    if age < -MAX_FUTURE_SKEW_SECONDS:
        return _reject(RejectReason.STALE_RECORD, f"flag timestamp is in the future by {int(-age)}s")

    if not isinstance(data['status'], str) or data['status'] not in FLAG_STATUSES:
        return _reject(RejectReason.UNKNOWN_STATUS, f"unknown status: {data['status']}")

    if not isinstance(data['nextAgent'], str) or data['nextAgent'] not in FLAG_AGENTS:
        return _reject(RejectReason.UNKNOWN_AGENT, f"unknown nextAgent: {data['nextAgent']}")

    return ValidationResult(valid=True, record=CompletionRecord.from_dict(data, timestamp))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Validate a review loop completion record')
    parser.add_argument('flag', help='Path to the completion record')
    parser.add_argument('step', help='Expected step id')
    args = parser.parse_args(argv)

    flag_path = Path(args.flag)
    if not flag_path.is_file():
        print(f"ERROR: {RejectReason.MALFORMED_RECORD.value}: flag file not found: {flag_path}", file=sys.stderr)
        return 1

    result = validate(flag_path, args.step)
    if not result.valid:
        print(f"ERROR: {result.reason.value}: {result.message}", file=sys.stderr)
        return 1
    print("OK")
    return 0


if __name__ == '__main__':
    sys.exit(main())
