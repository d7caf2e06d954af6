# models.py
"""
Data structures for the spec-graph and cascade engine.
Contains the core data models used across multiple modules.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


# ==========================
# Exceptions
# ==========================

class SpecCascadeError(RuntimeError):
    pass


class MissingSiblingError(SpecCascadeError):
    """A phase document required for propagation does not exist."""


class StagingError(SpecCascadeError):
    pass


class PromptTemplateError(ValueError):
    pass


# ==========================
# Document model
# ==========================

class Phase(Enum):
    REQUIREMENT = "requirement"
    DESIGN = "design"
    IMPLEMENTATION = "implementation"

    @property
    def suffix(self) -> str:
        return _PHASE_SUFFIX[self]

    @property
    def directory(self) -> str:
        return _PHASE_DIR[self]

    @classmethod
    def from_suffix(cls, suffix: str) -> Optional["Phase"]:
        for phase, sfx in _PHASE_SUFFIX.items():
            if sfx == suffix:
                return phase
        return None


_PHASE_SUFFIX = {
    Phase.REQUIREMENT: "req",
    Phase.DESIGN: "design",
    Phase.IMPLEMENTATION: "impl",
}
_PHASE_DIR = {
    Phase.REQUIREMENT: "requirements",
    Phase.DESIGN: "design",
    Phase.IMPLEMENTATION: "implementation",
}

CONCEPT_REF = "ConOps"


@dataclass
class SpecMetadata:
    """Frontmatter of a managed document. phase is None for the root concept document."""
    artifact: str
    phase: Optional[Phase] = None
    # None means the key was absent from the frontmatter
    depends_on: Optional[List[str]] = None
    references: Optional[List[str]] = None
    version: Optional[str] = None
    last_updated: Optional[str] = None

    @property
    def is_concept(self) -> bool:
        return self.phase is None

    @property
    def ref(self) -> str:
        if self.phase is None:
            return CONCEPT_REF
        return f"{self.artifact}.{self.phase.suffix}"


@dataclass
class Mention:
    """An in-prose @artifact.phase token."""
    ref: str            # canonical 'artifact.req' / 'artifact.design'
    raw: str            # token text after '@' up to the next whitespace
    line: int
    column: int         # column of the '@'


@dataclass
class SpecDocument:
    metadata: Optional[SpecMetadata]
    content: str
    sections: Dict[str, str] = field(default_factory=dict)
    mentions: List[Mention] = field(default_factory=list)
    clarifications: List[str] = field(default_factory=list)
    text: str = ""

    @property
    def mention_refs(self) -> List[str]:
        return [m.ref for m in self.mentions]


@dataclass
class ChangeDetectionResult:
    has_changes: bool
    modified_sections: List[str]
    summary: str
    old_content: str
    new_content: str


# ==========================
# Structured edits
# ==========================

class EditType(Enum):
    REMOVE = "Remove from"
    ADD = "Add to"
    NONE = "None"


@dataclass
class StructuredEdit:
    type: EditType
    section: str
    content: str


@dataclass
class ChangeRow:
    """One row of a Document | Action | Details change table."""
    document: str
    action: str
    details: str
    reason: str = ""


# ==========================
# Validation
# ==========================

@dataclass
class Diagnostic:
    code: str
    message: str
    line: int
    column: int
    length: int


# ==========================
# Workflows
# ==========================

class CascadeState(Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    NO_CHANGE = "no_change"
    CONFIRMING = "confirming"
    REFINING = "refining"
    PROPAGATING = "propagating"
    COMMITTED = "committed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class CascadeResult:
    success: bool = False
    updated_files: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    state: CascadeState = CascadeState.IDLE


@dataclass
class ReferencedArtifact:
    name: str
    requirement: Optional[str] = None
    design: Optional[str] = None
