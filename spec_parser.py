# spec_parser.py
"""
Spec Document Parser

Turns raw spec Markdown into metadata, sections, mentions and clarification
markers, and reads the pipe tables the generation service answers with.
Parsing never raises: text without a usable frontmatter block yields
metadata=None.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from config import DEFAULTS, PathsConfig
from models import ChangeRow, EditType, Mention, Phase, SpecDocument, SpecMetadata, StructuredEdit
from utils import canonical_ref, dedupe

logger = logging.getLogger(__name__)

FRONTMATTER_DELIMITER = "---"

# Frontmatter keys, with the camelCase spellings older documents used
_META_KEYS = {
    "artifact": "artifact",
    "phase": "phase",
    "depends-on": "depends_on",
    "dependsOn": "depends_on",
    "references": "references",
    "version": "version",
    "last-updated": "last_updated",
    "lastUpdated": "last_updated",
}
# "concept" marks the phase-less root document
_PHASE_VALUES = {p.value for p in Phase} | {"concept"}

_HEADING_RE = re.compile(r"^##(?!#)\s*(.*?)\s*$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")


def iter_section_spans(lines: List[str]) -> List[Tuple[str, int, int, int]]:
    """
    Locate second-level headings outside fenced code blocks.

    Returns (heading, heading_index, body_start, body_end) per heading; the
    body runs up to (not including) the next second-level heading.
    """
    heads: List[Tuple[str, int]] = []
    in_fence = False
    for i, line in enumerate(lines):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        m = _HEADING_RE.match(line)
        if m:
            heads.append((m.group(1), i))

    spans = []
    for n, (name, idx) in enumerate(heads):
        end = heads[n + 1][1] if n + 1 < len(heads) else len(lines)
        spans.append((name, idx, idx + 1, end))
    return spans


def build_section_map(text: str) -> Dict[str, str]:
    """Heading -> verbatim body. Later duplicates of a heading replace earlier ones."""
    lines = (text or "").split("\n")
    return {name: "\n".join(lines[start:end]) for name, _, start, end in iter_section_spans(lines)}


class SpecParser:
    """Parses spec Markdown per the constrained dialect rules."""

    def __init__(self, paths: Optional[PathsConfig] = None):
        self.paths = paths or DEFAULTS.paths
        self.patterns = self._build_patterns()

    # ---------- Public API ----------

    def parse(self, text: str) -> SpecDocument:
        text = text or ""
        block, content, body_line = self._split_frontmatter(text)
        metadata = self._parse_metadata(block) if block is not None else None
        return SpecDocument(
            metadata=metadata,
            content=content,
            sections=build_section_map(content),
            mentions=self.extract_mentions(content, line_offset=body_line),
            clarifications=self.extract_clarifications(content),
            text=text,
        )

    def extract_mentions(self, text: str, *, line_offset: int = 0) -> List[Mention]:
        """Every @artifact.req / @artifact.design token, in order, duplicates kept."""
        out: List[Mention] = []
        for i, line in enumerate((text or "").split("\n")):
            for m in self.patterns["mention"].finditer(line):
                out.append(Mention(
                    ref=m.group("ref"),
                    raw=m.group("ref") + m.group("tail"),
                    line=i + line_offset,
                    column=m.start(),
                ))
        return out

    def extract_clarifications(self, text: str) -> List[str]:
        return [m.group(1).strip() for m in self.patterns["clarify"].finditer(text or "")]

    def parse_markdown_table(self, text: str) -> List[Dict[str, str]]:
        """First pipe table in text (header, separator, rows) as row dicts keyed by header cell."""
        lines = (text or "").splitlines()
        for i in range(len(lines) - 1):
            if not (self._is_table_row(lines[i]) and self._is_separator(lines[i + 1])):
                continue
            headers = self._split_row(lines[i])
            rows: List[Dict[str, str]] = []
            for line in lines[i + 2:]:
                if not self._is_table_row(line):
                    break
                cells = self._split_row(line)
                rows.append({h: (cells[j] if j < len(cells) else "") for j, h in enumerate(headers)})
            return rows
        return []

    def parse_change_table(self, text: str) -> List[ChangeRow]:
        """Read a Document | Action | Details [| Reason] table."""
        rows = self.parse_markdown_table(text)
        if not rows:
            return []

        keys = {k.strip().lower(): k for k in rows[0].keys()}
        doc_key = keys.get("document") or keys.get("target document")
        action_key = keys.get("action")
        if not doc_key or not action_key:
            logger.warning("[Tersify] Change table lacks Document/Action columns: %s", list(rows[0].keys()))
            return []
        details_key = keys.get("details")
        reason_key = keys.get("reason")

        def _cell(row: Dict[str, str], key: Optional[str]) -> str:
            value = (row.get(key) or "").strip() if key else ""
            return "" if value == "-" else value

        out = []
        for row in rows:
            document = _cell(row, doc_key).strip("`")
            if not document:
                continue
            out.append(ChangeRow(
                document=document,
                action=_cell(row, action_key),
                details=_cell(row, details_key),
                reason=_cell(row, reason_key),
            ))
        return out

    def edit_from_row(self, row: ChangeRow) -> Optional[StructuredEdit]:
        """Classify the Action cell; None for actions outside the grammar."""
        action = row.action.strip()
        for edit_type in (EditType.REMOVE, EditType.ADD):
            prefix = edit_type.value + " "
            if action.startswith(prefix):
                return StructuredEdit(edit_type, action[len(prefix):].strip(), row.details)
        if action.lower() == "none":
            return StructuredEdit(EditType.NONE, "", row.details)
        return None

    def group_changes_by_document(self, rows: List[ChangeRow]) -> Dict[str, List[StructuredEdit]]:
        """Actionable edits keyed by canonical document name, table order preserved."""
        grouped: Dict[str, List[StructuredEdit]] = {}
        for row in rows:
            edit = self.edit_from_row(row)
            if edit is None:
                logger.warning("[Tersify] Skipping unknown action %r for %s", row.action, row.document)
                continue
            if edit.type is EditType.NONE:
                continue
            grouped.setdefault(canonical_ref(row.document), []).append(edit)
        return grouped

    def validate_structure(self, doc: SpecDocument) -> List[str]:
        errors: List[str] = []
        if doc.metadata is None:
            block = self._split_frontmatter(doc.text)[0]
            raw = self._raw_metadata(block) if block is not None else {}
            phase_value = self._scalar(raw.get("phase"))
            if block is None:
                errors.append("Missing or invalid metadata header")
            elif not self._scalar(raw.get("artifact")):
                errors.append("Missing or invalid artifact name in metadata")
            elif phase_value and phase_value not in _PHASE_VALUES:
                errors.append(f"Invalid phase '{phase_value}' in metadata")
            else:
                errors.append("Missing or invalid metadata header")
        elif doc.metadata.artifact == "unknown":
            errors.append("Missing or invalid artifact name in metadata")
        if not doc.sections:
            errors.append("No sections found in spec")
        return errors

    # ---------- Serialization ----------

    def render_frontmatter(self, metadata: SpecMetadata) -> str:
        lines = [FRONTMATTER_DELIMITER, f"artifact: {metadata.artifact}"]
        if metadata.phase is not None:
            lines.append(f"phase: {metadata.phase.value}")
        if metadata.depends_on is not None:
            lines.append("depends-on: [" + ", ".join(f'"{v}"' for v in metadata.depends_on) + "]")
        if metadata.references is not None:
            lines.append("references: [" + ", ".join(f'"{v}"' for v in metadata.references) + "]")
        if metadata.version:
            lines.append(f"version: {metadata.version}")
        if metadata.last_updated:
            lines.append(f"last-updated: {metadata.last_updated}")
        lines.append(FRONTMATTER_DELIMITER)
        return "\n".join(lines)

    def serialize(self, doc: SpecDocument) -> str:
        if doc.metadata is None:
            return doc.content
        return self.render_frontmatter(doc.metadata) + "\n" + doc.content

    def replace_frontmatter(self, text: str, metadata: SpecMetadata) -> str:
        """Swap the frontmatter block of text (or prepend one) keeping the body byte-for-byte."""
        block, content, _ = self._split_frontmatter(text or "")
        if block is None:
            return self.render_frontmatter(metadata) + "\n" + (text or "")
        return self.render_frontmatter(metadata) + "\n" + content

    # ---------- Internal methods ----------

    def _build_patterns(self):
        return {
            # phase suffix never followed by a word character (@foo.requirement is not a mention)
            "mention": re.compile(r"(?<![\w@])@(?P<ref>[a-z0-9-]+\.(?:req|design))(?!\w)(?P<tail>\S*)"),
            "clarify": re.compile(r"\[AI-CLARIFY:\s*([^\]]+)\]"),
        }

    def _split_frontmatter(self, text: str) -> Tuple[Optional[List[str]], str, int]:
        """(frontmatter lines or None, body text, line index where the body starts)."""
        lines = text.split("\n")
        start = 0
        while start < len(lines) and not lines[start].strip():
            start += 1
        if start >= len(lines) or lines[start].rstrip("\r") != FRONTMATTER_DELIMITER:
            return None, text, 0
        for end in range(start + 1, len(lines)):
            if lines[end].rstrip("\r") == FRONTMATTER_DELIMITER:
                return lines[start + 1:end], "\n".join(lines[end + 1:]), end + 1
        return None, text, 0

    @staticmethod
    def _raw_metadata(block: List[str]) -> Dict[str, str]:
        raw: Dict[str, str] = {}
        for line in block:
            s = line.strip()
            if not s or s.startswith("#"):
                continue
            for key, attr in _META_KEYS.items():
                if s.startswith(key + ":"):
                    raw[attr] = s[len(key) + 1:].strip()
                    break
        return raw

    def _parse_metadata(self, block: List[str]) -> Optional[SpecMetadata]:
        raw = self._raw_metadata(block)
        artifact = self._scalar(raw.get("artifact"))
        if not artifact:
            return None

        phase_value = self._scalar(raw.get("phase"))
        phase: Optional[Phase] = None
        if phase_value and phase_value != "concept":
            try:
                phase = Phase(phase_value)
            except ValueError:
                logger.debug("Unknown phase %r in frontmatter of %s", phase_value, artifact)
                return None

        return SpecMetadata(
            artifact=artifact,
            phase=phase,
            depends_on=self._list(raw.get("depends_on")),
            references=self._list(raw.get("references")),
            version=self._scalar(raw.get("version")),
            last_updated=self._scalar(raw.get("last_updated")),
        )

    @staticmethod
    def _scalar(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().strip("\"'")
        return value or None

    @staticmethod
    def _list(value: Optional[str]) -> Optional[List[str]]:
        if value is None:
            return None
        value = value.strip()
        if value.startswith("[") and value.endswith("]"):
            value = value[1:-1]
        items = [v.strip().strip("\"'").strip() for v in value.split(",")]
        return dedupe(v for v in items if v)

    @staticmethod
    def _is_table_row(line: str) -> bool:
        return "|" in line and bool(line.strip())

    @staticmethod
    def _is_separator(line: str) -> bool:
        s = line.strip()
        return "|" in s and "-" in s and not re.sub(r"[\s|:-]", "", s)

    @staticmethod
    def _split_row(line: str) -> List[str]:
        s = line.strip()
        if s.startswith("|"):
            s = s[1:]
        if s.endswith("|") and not s.endswith("\\|"):
            s = s[:-1]
        return [c.strip().replace("\\|", "|") for c in re.split(r"(?<!\\)\|", s)]
