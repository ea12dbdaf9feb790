#!/usr/bin/env python3
"""
Escalation to a human when the loop cannot safely resolve an anomaly

The Escalator only reports. It never touches loop state and never picks a
transition. Sinks are pluggable; a failing sink is logged and skipped.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from orchestrator_logger import OrchestratorLogger, utc_timestamp


UNKNOWN_TRANSITION = 'UnknownTransition'
REPEATED_REJECTION = 'RepeatedRejection'
STALE_LOCK_UNKNOWN_OWNER = 'StaleLockUnknownOwner'
UNAUTHORIZED_MUTATION = 'UnauthorizedMutation'
RECOVERY_EXHAUSTED = 'RecoveryExhausted'
AMBIGUOUS_SUCCESSOR = 'AmbiguousSuccessor'
PROMPT_MISSING = 'PromptMissing'
AGENT_UNAVAILABLE = 'AgentUnavailable'


class LogSink:
    """Append escalations as JSON lines for later inspection"""

    def __init__(self, path: Path):
        self.path = path

    def notify(self, event: Dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write(json.dumps(event, sort_keys=True) + '\n')


class WebhookSink:
    """POST escalations as JSON to a chat or alerting webhook"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def notify(self, event: Dict[str, Any]):
        text = f"Review loop escalation [{event['kind']}]: {event['reason']}"
        response = requests.post(self.url, json={'text': text, 'event': event}, timeout=self.timeout)
        response.raise_for_status()


class Escalator:
    def __init__(self, logger: OrchestratorLogger, sinks: Optional[List[Any]] = None):
        self.logger = logger
        self.sinks = list(sinks or [])
        self.raised: List[Dict[str, Any]] = []

    def escalate(self, kind: str, reason: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        event = {
            'kind': kind,
            'reason': reason,
            'context': dict(context or {}),
            'timestamp': utc_timestamp(),
        }
        self.raised.append(event)
        self.logger.error(f"ESCALATION [{kind}]: {reason}")

        for sink in self.sinks:
            try:
                sink.notify(event)
            except (OSError, requests.RequestException, ValueError) as e:
                self.logger.warning(f"Escalation sink {type(sink).__name__} failed: {e}")
        return event
