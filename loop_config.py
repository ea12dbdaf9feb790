#!/usr/bin/env python3
"""
Configuration for the review loop
Defaults match the file layout workers are told about; .review-loop/config.json overrides them
"""

import json
import os
from pathlib import Path
from typing import Dict, List, Optional, Set


DEFAULT_TIMEOUTS = {
    'propose': 600,    # 10 min, proposal should be fast
    'review': 900,     # 15 min, review of proposal
    'execute': 1500,   # 25 min, implementation
    'verify': 1200,    # 20 min, verification + tests
}
FALLBACK_TIMEOUT = 600

DEFAULT_AGENTS = {
    'implementer': ['claude', '-p', '{prompt}', '--model', 'claude-sonnet-4-5',
                    '--dangerously-skip-permissions', '--output-format', 'stream-json', '--verbose'],
    'reviewer': ['codex', 'exec', '{prompt}'],
}

STALE_LOCK_SECONDS = 2700       # 45 min, lock with no pid file
FLAG_MAX_AGE_SECONDS = 1800     # 30 min
REJECTION_THRESHOLD = 3


class LoopConfig:
    """Paths, timeouts and agent commands for one project root"""

    def __init__(self, project_root: Path = None, config_path: Path = None):
        root = project_root or os.getenv('REVIEW_LOOP_ROOT') or Path.cwd()
        self.project_root = Path(root).resolve()
        self.loop_dir = self.project_root / '.review-loop'
        self.config_path = config_path or (self.loop_dir / 'config.json')

        # Files shared with workers keep fixed names at the project root
        self.state_file = self.project_root / '.review-loop-state.json'
        self.flag_file = self.project_root / '.agent-status.json'
        self.lock_file = self.project_root / '.agent-trigger.lock'
        self.pid_file = self.project_root / '.agent-pid'
        self.owner_mandates_file = self.project_root / 'owner-mandates.json'

        # Controller-private files
        self.ledger_file = self.loop_dir / 'ledger.json'
        self.log_dir = self.loop_dir
        self.worker_log = self.loop_dir / 'agent.log'
        self.escalation_log = self.loop_dir / 'escalations.jsonl'

        self.prompts_dir = self.project_root / 'scripts' / 'prompts'
        self.reviews_dir = self.project_root / 'reviews'
        self.review_files = ['ENG_REVIEW_RESPONSE.md', 'ENG_REVIEW_COMMENTS.md']

        self.timeouts: Dict[str, int] = dict(DEFAULT_TIMEOUTS)
        self.agents: Dict[str, List[str]] = {k: list(v) for k, v in DEFAULT_AGENTS.items()}
        self.stale_lock_seconds = STALE_LOCK_SECONDS
        self.flag_max_age_seconds = FLAG_MAX_AGE_SECONDS
        self.rejection_threshold = REJECTION_THRESHOLD
        self.webhook_url: Optional[str] = None

        self.load_warnings: List[str] = []
        self._load_config()

        env_webhook = os.getenv('REVIEW_LOOP_WEBHOOK_URL')
        if env_webhook:
            self.webhook_url = env_webhook

    def _load_config(self):
        """Overlay values from the JSON config file, keeping defaults on error"""
        if not self.config_path.exists():
            return
        try:
            with open(self.config_path, 'r') as f:
                config_data = json.load(f)
            self._parse_config(config_data)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            self.load_warnings.append(f"Failed to load loop config {self.config_path}: {e}")

    def _parse_config(self, config_data: Dict):
        for phase, seconds in config_data.get('timeouts', {}).items():
            self.timeouts[phase] = int(seconds)
        for agent, command in config_data.get('agents', {}).items():
            if not isinstance(command, list) or not command:
                raise ValueError(f"agent command for {agent} must be a non-empty list")
            self.agents[agent] = [str(part) for part in command]
        if 'prompts_dir' in config_data:
            self.prompts_dir = self._resolve(config_data['prompts_dir'])
        if 'reviews_dir' in config_data:
            self.reviews_dir = self._resolve(config_data['reviews_dir'])
        if 'review_files' in config_data:
            self.review_files = list(config_data['review_files'])
        self.stale_lock_seconds = int(config_data.get('stale_lock_seconds', self.stale_lock_seconds))
        self.flag_max_age_seconds = int(config_data.get('flag_max_age_seconds', self.flag_max_age_seconds))
        self.rejection_threshold = int(config_data.get('rejection_threshold', self.rejection_threshold))
        self.webhook_url = config_data.get('webhook_url', self.webhook_url)

    def _resolve(self, value: str) -> Path:
        path = Path(value)
        return path if path.is_absolute() else self.project_root / path

    def _portable(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.project_root))
        except ValueError:
            return str(path)

    def phase_timeout(self, phase: str) -> int:
        return self.timeouts.get(phase, FALLBACK_TIMEOUT)

    def agent_command(self, agent: str) -> Optional[List[str]]:
        command = self.agents.get(agent)
        return list(command) if command else None

    def load_owner_mandates(self) -> Set[str]:
        """Step ids the owner has pre-approved; read-only input to the loop"""
        if not self.owner_mandates_file.exists():
            return set()
        try:
            with open(self.owner_mandates_file, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError):
            return set()
        if isinstance(data, dict):
            data = data.get('mandates', [])
        steps = set()
        for entry in data if isinstance(data, list) else []:
            if isinstance(entry, dict) and entry.get('step'):
                steps.add(str(entry['step']))
            elif isinstance(entry, (str, int)):
                steps.add(str(entry))
        return steps

    def save_config(self):
        """Save current configuration to JSON file"""
        config_data = {
            'timeouts': self.timeouts,
            'agents': self.agents,
            'prompts_dir': self._portable(self.prompts_dir),
            'reviews_dir': self._portable(self.reviews_dir),
            'review_files': self.review_files,
            'stale_lock_seconds': self.stale_lock_seconds,
            'flag_max_age_seconds': self.flag_max_age_seconds,
            'rejection_threshold': self.rejection_threshold,
        }
        # A URL supplied through the environment stays out of the file
        if self.webhook_url and self.webhook_url != os.getenv('REVIEW_LOOP_WEBHOOK_URL'):
            config_data['webhook_url'] = self.webhook_url

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            json.dump(config_data, f, indent=2)
