#!/usr/bin/env python3
"""
Prompt lookup and review archiving for worker triggers
"""

import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List


class PromptNotFound(FileNotFoundError):
    """No step-specific or default prompt exists for an agent"""


def prompt_candidates(prompts_dir: Path, step: str, tier: str, agent: str) -> List[Path]:
    return [
        prompts_dir / f"step-{step}-{tier}-{agent}.md",
        prompts_dir / f"default-{agent}.md",
    ]


def resolve_prompt(prompts_dir: Path, step: str, tier: str, agent: str) -> Path:
    """Step-specific prompt first, then the agent's default"""
    candidates = prompt_candidates(prompts_dir, step, tier, agent)
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise PromptNotFound(
        f"No prompt found for step={step} tier={tier} agent={agent} "
        f"(looked for {', '.join(c.name for c in candidates)} in {prompts_dir})"
    )


def substitute_variables(command: List[str], **values) -> List[str]:
    """Replace {name} and {{name}} placeholders in each argv element"""
    result = []
    for part in command:
        for name, value in values.items():
            part = part.replace('{{' + name + '}}', str(value))
            part = part.replace('{' + name + '}', str(value))
        result.append(part)
    return result


def build_command(template: List[str], prompt_file: Path) -> List[str]:
    prompt_text = prompt_file.read_text(encoding='utf-8')
    return substitute_variables(template, prompt=prompt_text, prompt_file=str(prompt_file))


def archive_review_files(project_root: Path, reviews_dir: Path, filenames: List[str]) -> Dict[str, Path]:
    """Copy review documents aside before the next round overwrites them"""
    archived = {}
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    for name in filenames:
        source = project_root / name
        if not source.is_file():
            continue
        reviews_dir.mkdir(parents=True, exist_ok=True)
        target = reviews_dir / f"{source.stem}-{stamp}{source.suffix}"
        shutil.copy2(source, target)
        archived[name] = target
    return archived
