"""Avatar persona prompt templates and the system-prompt builder used by the runtime."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from schemas import Case, ScenarioNode

_PROMPT_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class AvatarPrompt:
    """A persona template; ``node_instructions`` is keyed by node type with a ``default`` entry."""

    id: str
    variant: str
    prompt_version: str
    label: str
    description: str
    system_template: str
    node_instructions: Mapping[str, str] = field(default_factory=dict)

    @property
    def normalized_variant(self) -> str:
        return self.variant.lower()

    def instruction_for(self, node_type: str) -> str:
        return self.node_instructions.get(node_type) or self.node_instructions.get("default", "{node_content}")


def _load_prompt(path: Path) -> AvatarPrompt:
    payload = json.loads(path.read_text(encoding="utf-8"))
    required = {"id", "variant", "prompt_version", "label", "description", "system_template"}
    missing = sorted(required - payload.keys())
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    instructions = payload.get("node_instructions") or {}
    if not isinstance(instructions, dict):
        raise ValueError(f"Prompt file {path.name}: node_instructions must be an object")
    return AvatarPrompt(
        id=str(payload["id"]),
        variant=str(payload["variant"]),
        prompt_version=str(payload["prompt_version"]),
        label=str(payload["label"]),
        description=str(payload["description"]),
        system_template=str(payload["system_template"]),
        node_instructions={str(k): str(v) for k, v in instructions.items()},
    )


def _iter_prompt_files(directory: Path) -> Iterable[Path]:
    for path in sorted(directory.glob("*.json")):
        if path.is_file():
            yield path


@lru_cache(maxsize=4)
def load_prompts(directory: Path | None = None) -> Mapping[str, AvatarPrompt]:
    base_dir = Path(directory) if directory else _PROMPT_DIR
    prompts: Dict[str, AvatarPrompt] = {}
    for file_path in _iter_prompt_files(base_dir):
        prompt = _load_prompt(file_path)
        key = prompt.normalized_variant
        if key in prompts:
            raise ValueError(f"Duplicate avatar prompt variant detected: {prompt.variant}")
        prompts[key] = prompt
    if not prompts:
        raise RuntimeError(f"No avatar prompt definitions found in {base_dir}")
    return prompts


def get_prompt(variant: str | None = None) -> AvatarPrompt:
    prompts = load_prompts()
    variant = variant or os.getenv("AVATAR_PROMPT_VARIANT", "case_persona")
    key = str(variant).lower()
    if key not in prompts:
        raise KeyError(f"Unknown avatar prompt variant '{variant}'. Available: {', '.join(sorted(prompts))}")
    return prompts[key]


def _join(items: Iterable[str], empty: str) -> str:
    cleaned = [item.strip() for item in items if item and item.strip()]
    return ", ".join(cleaned) if cleaned else empty


def build_avatar_system_prompt(
    case: Case,
    node: Optional[ScenarioNode],
    *,
    variant: str | None = None,
    avatar_name: str | None = None,
) -> str:
    """Render the persona prompt for the avatar speaking at ``node``."""

    prompt = get_prompt(variant)
    avatar = case.avatar_config
    traits = avatar.personality_traits
    node_type = node.type.value if node else "default"
    instruction = prompt.instruction_for(node_type).format(node_content=node.content if node else "")
    return prompt.system_template.format(
        avatar_name=avatar_name or avatar.base_avatar_id or "the case avatar",
        case_name=case.name or case.id,
        case_context=avatar.case_context or case.description or "(no additional background)",
        formality=traits.formality,
        patience=traits.patience,
        empathy=traits.empathy,
        directness=traits.directness,
        can_discuss=_join(avatar.knowledge_boundaries.can_discuss, "anything related to the case"),
        cannot_discuss=_join(avatar.knowledge_boundaries.cannot_discuss, "nothing specific"),
        node_instruction=instruction,
    ).strip()


__all__ = ["AvatarPrompt", "load_prompts", "get_prompt", "build_avatar_system_prompt"]
