# config.py
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union

from jsonschema import Draft202012Validator, ValidationError

from models import PromptTemplateError


@dataclass
class PathsConfig:
    # Relative to the workspace root
    specs_dir: str = "specs"
    cache_dir: str = ".promptpress/cache"
    logs_dir: str = "logs"
    concept_filename: str = "ConOps.md"
    # Heading targeted by the "AI-CLARIFY section" sentinel
    clarifications_heading: str = "Questions & Clarifications"


@dataclass
class CascadeConfig:
    max_tokens: int = 4000
    # Refinement responses at or below this length are discarded
    min_refinement_chars: int = 100
    # Excerpt limits fed to the generation prompts
    requirement_excerpt_chars: int = 3000
    impl_requirement_excerpt_chars: int = 1000
    impl_design_excerpt_chars: int = 1500
    reference_context_chars: int = 15000
    # "conservative": no baseline means no changes; "aggressive": everything is new
    absent_baseline_policy: str = "conservative"
    confirm_before_cascade: bool = False
    log_prompts: bool = True


@dataclass
class GenerationConfig:
    model: str = "gemini-2.5-flash"
    temperature: float = 0.1
    api_key_env: str = "GOOGLE_API_KEY"


@dataclass
class AppConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    cascade: CascadeConfig = field(default_factory=CascadeConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)


# Global defaults used across modules
DEFAULTS = AppConfig()


# ==========================
# Prompt templates
# ==========================

REQUIRED_TEMPLATES = (
    "refine_requirement",
    "refine_design",
    "refine_implementation",
    "generate_design",
    "sync_implementation",
    "tersify",
)

PROMPTS_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["templates"],
    "properties": {
        "templates": {
            "type": "object",
            "required": list(REQUIRED_TEMPLATES),
            "additionalProperties": {"$ref": "#/$defs/Template"},
        }
    },
    "$defs": {
        "Template": {
            "type": "object",
            "required": ["system", "user"],
            "properties": {
                "system": {"type": "string", "minLength": 1},
                "user": {"type": "string", "minLength": 1},
            },
        }
    },
}

DEFAULT_PROMPTS_PATH = Path(__file__).resolve().parent / "prompts.json"


@dataclass(frozen=True)
class PromptTemplate:
    system: str
    user: str


@dataclass
class PromptTemplates:
    """Named system/user prompt pairs, loaded once and handed to the orchestrator."""
    templates: Dict[str, PromptTemplate] = field(default_factory=dict)

    def get(self, name: str) -> PromptTemplate:
        try:
            return self.templates[name]
        except KeyError:
            raise PromptTemplateError(f"Unknown prompt template: {name}") from None

    def refine_for(self, phase_value: Optional[str]) -> PromptTemplate:
        # The concept document is refined with the requirement template
        return self.get(f"refine_{phase_value or 'requirement'}")

    @classmethod
    def from_dict(cls, data: dict) -> "PromptTemplates":
        try:
            Draft202012Validator(PROMPTS_SCHEMA).validate(data)
        except ValidationError as e:
            raise PromptTemplateError(f"Invalid prompt templates: {e.message}") from e
        return cls({
            name: PromptTemplate(system=t["system"], user=t["user"])
            for name, t in data["templates"].items()
        })


def load_prompt_templates(path: Union[str, Path, None] = None) -> PromptTemplates:
    """Read and validate the prompt template document (defaults to the bundled prompts.json)."""
    p = Path(path) if path is not None else DEFAULT_PROMPTS_PATH
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PromptTemplateError(f"Failed to load prompt templates from {p}: {e}") from e
    return PromptTemplates.from_dict(data)
