# reference_graph.py
"""
Reference graph over the on-disk spec store.

Resolves symbolic references (artifact.req / artifact.design / artifact.impl)
to file locations, walks depends-on edges transitively, and validates a
document's declared edges and in-prose mentions. Validation accumulates
diagnostics and never raises.
"""

import logging
import re
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional, Set, Tuple

from collaborators import FileStore, PathLike
from config import DEFAULTS, PathsConfig
from models import CONCEPT_REF, Diagnostic, Phase, SpecDocument
from spec_parser import SpecParser
from utils import canonical_ref, is_canonical_ref, split_ref

logger = logging.getLogger(__name__)

_SPEC_FILENAME_RE = re.compile(r"^([a-zA-Z0-9-]+)\.(req|design|impl)\.md$")
# a mention may be followed by punctuation, never by '.md' or other word characters
_MENTION_TOKEN_RE = re.compile(r"^[a-z0-9-]+\.(?:req|design)[^\w]*$")


class ReferenceGraph:
    def __init__(self, store: FileStore, parser: Optional[SpecParser] = None, paths: Optional[PathsConfig] = None):
        self.store = store
        self.paths = paths or DEFAULTS.paths
        self.parser = parser or SpecParser(self.paths)

    # ---------- Resolution ----------

    @property
    def specs_root(self) -> Path:
        return self.store.root / self.paths.specs_dir

    def resolve(self, ref: str) -> Path:
        """Location of a reference; over-specified refs ('x.req.md') resolve like 'x.req'."""
        ref = canonical_ref(ref)
        if ref == CONCEPT_REF:
            return self.specs_root / self.paths.concept_filename
        artifact, suffix = split_ref(ref)
        phase = Phase.from_suffix(suffix) if suffix else None
        if phase is None:
            return self.specs_root / f"{ref}.md"
        return self.specs_root / phase.directory / f"{artifact}.{suffix}.md"

    def sibling(self, artifact: str, phase: Phase) -> Path:
        return self.resolve(f"{artifact}.{phase.suffix}")

    def ref_for_path(self, path: PathLike) -> Optional[str]:
        name = Path(path).name
        if name == self.paths.concept_filename:
            return CONCEPT_REF
        m = _SPEC_FILENAME_RE.match(name)
        return f"{m.group(1)}.{m.group(2)}" if m else None

    def exists(self, ref: str) -> bool:
        return self.store.exists(self.resolve(ref))

    def load(self, ref: str) -> Optional[SpecDocument]:
        text = self.store.read_text(self.resolve(ref))
        if text is None:
            return None
        return self.parser.parse(text)

    def list_refs(self, phases: Optional[Iterable[Phase]] = None) -> List[str]:
        """References of every spec file on disk, phase by phase, then ConOps."""
        refs: List[str] = []
        for phase in (phases if phases is not None else list(Phase)):
            for p in self.store.list_files(self.specs_root / phase.directory):
                ref = self.ref_for_path(p)
                if ref and ref != CONCEPT_REF:
                    refs.append(ref)
        if self.exists(CONCEPT_REF):
            refs.append(CONCEPT_REF)
        return refs

    # ---------- Traversal ----------

    def dependencies_of(self, ref: str, _path: FrozenSet[str] = frozenset()) -> Set[str]:
        """
        Transitive depends-on closure of ref.

        A reference already on the current path is not descended again, so a
        cycle terminates; the edge that closes it still lands in the result,
        which is how callers detect the cycle (subject in dependencies_of(dep)).
        """
        ref = canonical_ref(ref)
        if ref in _path:
            return set()
        path = _path | {ref}

        doc = self.load(ref)
        if doc is None or doc.metadata is None:
            return set()

        deps: Set[str] = set()
        for dep in doc.metadata.depends_on or []:
            dep = canonical_ref(dep)
            if dep:
                deps.add(dep)
                deps |= self.dependencies_of(dep, path)
        return deps

    def would_create_cycle(self, candidate_dep: str, subject_ref: str) -> bool:
        return canonical_ref(subject_ref) in self.dependencies_of(candidate_dep)

    def dependents_of(self, ref: str) -> List[str]:
        """Documents whose depends-on names ref."""
        ref = canonical_ref(ref)
        out = []
        for other in self.list_refs():
            if other == ref:
                continue
            doc = self.load(other)
            if doc is None or doc.metadata is None:
                continue
            if ref in (canonical_ref(d) for d in doc.metadata.depends_on or []):
                out.append(other)
        return out

    # ---------- Validation ----------

    def validate_file(self, path: PathLike) -> List[Diagnostic]:
        text = self.store.read_text(path)
        if text is None:
            return [Diagnostic("missing-file", f"File not found: {path}", 0, 0, 0)]
        return self.validate(self.parser.parse(text), ref=self.ref_for_path(path))

    def validate(self, doc: SpecDocument, ref: Optional[str] = None) -> List[Diagnostic]:
        """
        Check depends-on entries, references entries and body mentions.

        Each occurrence is checked on its own for self-reference,
        over-specification, a missing target, cycles / reverse dependencies
        and the concept-document constraints; finally metadata and prose are
        cross-checked against each other.
        """
        if doc.metadata is None:
            return [Diagnostic("missing-metadata", self.parser.validate_structure(doc)[0], 0, 0, 0)]

        subject = ref or doc.metadata.ref
        is_concept = subject == CONCEPT_REF
        text = doc.text
        errors: List[Diagnostic] = []

        def add(code: str, message: str, loc: Tuple[int, int, int]) -> None:
            errors.append(Diagnostic(code, message, *loc))

        for dep in doc.metadata.depends_on or []:
            loc = self._metadata_location(text, ("depends-on", "dependsOn"), dep)
            target = canonical_ref(dep)
            if target == subject:
                add("self-reference", "Cannot depend on itself", loc)
                continue
            if is_concept:
                add("concept-dependency", "ConOps should not have dependencies", loc)
                continue
            if not is_canonical_ref(dep):
                add("over-specified", f"Depends-on '{dep}' is over-specified", loc)
            if not self.exists(target):
                add("missing-target", f"Dependency '{dep}' not found", loc)
                continue
            if self.would_create_cycle(target, subject):
                add("circular-dependency", f"Dependency '{dep}' creates a circular dependency", loc)

        for r in doc.metadata.references or []:
            loc = self._metadata_location(text, ("references",), r)
            target = canonical_ref(r)
            if target == subject:
                add("self-reference", "Cannot reference itself", loc)
                continue
            if not is_canonical_ref(r):
                add("over-specified", f"Reference '{r}' is over-specified", loc)
            if is_concept and split_ref(target)[1] != "req":
                add("concept-reference", f"ConOps can only reference .req files, not '{r}'", loc)
            if not self.exists(target):
                add("missing-target", f"Reference '{r}' not found", loc)
                continue
            if subject in self.dependencies_of(target):
                add("reverse-dependency", f"Cannot reference '{r}' which depends on this document", loc)

        for m in doc.mentions:
            loc = (m.line, m.column, len(m.raw) + 1)
            if not _MENTION_TOKEN_RE.match(m.raw):
                add("over-specified", f"Mention '@{m.raw}' is over-specified", loc)
            if m.ref == subject:
                add("self-reference", "Cannot reference itself", loc)
                continue
            if is_concept and split_ref(m.ref)[1] != "req":
                add("concept-reference", "ConOps can only reference requirement files", loc)
            if not self.exists(m.ref):
                add("missing-target", f"Mention '@{m.ref}' not found", loc)
                continue
            if subject in self.dependencies_of(m.ref):
                add("reverse-dependency", f"Cannot reference '@{m.ref}' which depends on this document", loc)

        # metadata and prose must agree
        mentioned = set(doc.mention_refs)
        for r in doc.metadata.references or []:
            if canonical_ref(r) not in mentioned:
                add("unmentioned-reference", f"Reference '{r}' is listed but not mentioned in content",
                    self._metadata_location(text, ("references",), r))
        for dep in doc.metadata.depends_on or []:
            if canonical_ref(dep) not in mentioned:
                add("unmentioned-dependency", f"Depends-on '{dep}' has no corresponding mention in content",
                    self._metadata_location(text, ("depends-on", "dependsOn"), dep))

        declared = {canonical_ref(v) for v in (doc.metadata.references or []) + (doc.metadata.depends_on or [])}
        reported: Set[str] = set()
        for m in doc.mentions:
            if m.ref in declared or m.ref == subject or m.ref in reported:
                continue
            reported.add(m.ref)
            add("undeclared-mention", f"Mention '@{m.ref}' is not declared in references or depends-on",
                (m.line, m.column, len(m.ref) + 1))

        if errors:
            logger.debug("[Validate] %s: %d diagnostic(s)", subject, len(errors))
        return errors

    # ---------- Internal methods ----------

    @staticmethod
    def _metadata_location(text: str, keys: Tuple[str, ...], value: str) -> Tuple[int, int, int]:
        lines = text.split("\n")
        for i, line in enumerate(lines):
            s = line.strip()
            if any(s.startswith(k + ":") for k in keys) and value in line:
                return i, line.index(value), len(value)
        return 0, 0, len(lines[0]) if lines else 0
