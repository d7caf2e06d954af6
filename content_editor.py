# content_editor.py
"""
Structured content editor.

Applies "Remove from" / "Add to" edits to a named second-level section, or to
a labeled sub-item inside it ("Functional Requirements FR-8"). Everything
outside the targeted span is left byte-for-byte as it was. Removal matches on
normalized text; an edit whose target cannot be found is logged and skipped.
"""

import logging
import re
from typing import Iterable, List, Optional, Tuple

from config import DEFAULTS, PathsConfig
from models import EditType, StructuredEdit
from spec_parser import iter_section_spans
from utils import normalize_for_match

logger = logging.getLogger(__name__)

CLARIFY_SENTINEL = "AI-CLARIFY section"

_SECONDARY_RE = re.compile(r"^(.+?)\s+([A-Z][A-Z0-9]*-\d+)$")
# lines that open a new sub-item (or heading) and so end the previous one
_ITEM_START_RE = re.compile(r"^\s*(?:[-*+]\s+|\d+\.\s+|#|(?:\*\*)?[A-Z][A-Z0-9]*-\d+)")
_EMPTY_BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+\.)\s*$")


class ContentEditor:
    def __init__(self, paths: Optional[PathsConfig] = None):
        self.paths = paths or DEFAULTS.paths

    # ---------- Public API ----------

    def resolve_section(self, section: str, text: Optional[str] = None) -> Tuple[str, Optional[str]]:
        """
        'Functional Requirements FR-8' -> ('Functional Requirements', 'FR-8').

        With the document text at hand, a heading that is itself named like
        'Appendix A-1' is kept whole instead of being split into a label.
        """
        s = (section or "").strip().lstrip("#").strip()
        if s.lower() == CLARIFY_SENTINEL.lower():
            return self.paths.clarifications_heading, None
        m = _SECONDARY_RE.match(s)
        if m is None:
            return s, None
        if text is not None and self._find_section(text.split("\n"), s) is not None:
            return s, None
        return m.group(1), m.group(2)

    def get_section(self, text: str, primary: str, secondary: Optional[str] = None) -> Optional[str]:
        """
        Body of a section (verbatim, up to the next second-level heading), or
        the value of a labeled sub-item within it. None when absent.
        """
        lines = text.split("\n")
        span = self._find_section(lines, primary)
        if span is None:
            return None
        body = lines[span[0]:span[1]]
        if secondary is None:
            return "\n".join(body)
        item = self._find_item(body, secondary)
        if item is None:
            return None
        start, end, _, first = item
        return "\n".join([first] + body[start + 1:end])

    def set_section(self, text: str, primary: str, body: str, secondary: Optional[str] = None) -> str:
        """
        Replace a section body (or sub-item value), creating whatever is missing.

        A sub-item set to an empty value is deleted.
        """
        lines = text.split("\n")
        span = self._find_section(lines, primary)

        if span is None:
            if secondary is not None:
                body = f"- {secondary}: {body}"
            head = text.rstrip("\n")
            return (head + "\n\n" if head else "") + f"## {primary}\n\n{body.strip()}\n"

        start, end = span
        if secondary is None:
            lines[start:end] = body.split("\n")
            return "\n".join(lines)

        section = lines[start:end]
        item = self._find_item(section, secondary)
        if item is None:
            section = self._append(("\n".join(section)), f"- {secondary}: {body.strip()}").split("\n")
        else:
            i, j, prefix, _ = item
            if normalize_for_match(body):
                section[i:j] = (prefix + body).split("\n")
            else:
                del section[i:j]
                # drop the blank line the item used to be separated by
                if i < len(section) and not section[i].strip() and (i == 0 or not section[i - 1].strip()):
                    del section[i]
        lines[start:end] = section
        return "\n".join(lines)

    def apply(self, text: str, edit: StructuredEdit) -> str:
        if edit.type is EditType.NONE:
            return text

        primary, secondary = self.resolve_section(edit.section, text)
        content = (edit.content or "").strip()
        if not content:
            logger.warning("[Tersify] Empty content for '%s %s', skipping", edit.type.value, edit.section)
            return text

        current = self.get_section(text, primary, secondary)

        if edit.type is EditType.ADD:
            if current is None:
                return self.set_section(text, primary, content, secondary)
            if secondary is not None:
                return self.set_section(text, primary, current.rstrip("\n") + "\n" + content, secondary)
            return self.set_section(text, primary, self._append(current, content))

        # Remove from
        if current is None:
            logger.warning("[Tersify] Section not found for removal: %s", edit.section)
            return text
        if secondary is not None:
            content = self._strip_label(content, secondary)
        updated = self._remove_text(current, content)
        if updated is None:
            logger.warning("[Tersify] Could not find text to remove in %s: %r", edit.section, content[:80])
            return text
        return self.set_section(text, primary, updated, secondary)

    def apply_all(self, text: str, edits: Iterable[StructuredEdit]) -> str:
        for edit in edits:
            text = self.apply(text, edit)
        return text

    # ---------- Internal methods ----------

    @staticmethod
    def _find_section(lines: List[str], primary: str) -> Optional[Tuple[int, int]]:
        spans = iter_section_spans(lines)
        for name, _, start, end in reversed(spans):
            if name == primary:
                return start, end
        wanted = primary.strip().lower()
        for name, _, start, end in reversed(spans):
            if name.strip().lower() == wanted:
                return start, end
        return None

    @staticmethod
    def _find_item(body: List[str], label: str) -> Optional[Tuple[int, int, str, str]]:
        """(first line, end line, label prefix, first-line value) of a labeled sub-item."""
        pattern = re.compile(
            r"^(\s*(?:[-*+]\s+|\d+\.\s+)?(?:\*\*)?" + re.escape(label) + r"(?:\*\*)?\s*:(?:\*\*)?\s*)(.*)$"
        )
        for i, line in enumerate(body):
            m = pattern.match(line)
            if not m:
                continue
            j = i + 1
            while j < len(body) and body[j].strip() and not _ITEM_START_RE.match(body[j]):
                j += 1
            return i, j, m.group(1), m.group(2)
        return None

    @staticmethod
    def _strip_label(content: str, label: str) -> str:
        return re.sub(
            r"^(?:[-*+]\s+)?(?:\*\*)?" + re.escape(label) + r"(?:\*\*)?\s*:(?:\*\*)?\s*", "", content
        )

    @staticmethod
    def _append(body: str, content: str) -> str:
        head = body.rstrip("\n")
        # keep the blank line(s) that separate this section from the next heading
        tail = body[len(head):] or "\n"
        if not head.strip():
            return "\n" + content + tail
        return head + "\n" + content + tail

    def _remove_text(self, current: str, target: str) -> Optional[str]:
        wanted = normalize_for_match(target)
        if not wanted or wanted not in normalize_for_match(current):
            return None
        idx = current.find(target)
        if idx >= 0:
            return self._cut(current, idx, idx + len(target))
        # same words, different spacing or trailing punctuation
        pattern = r"\s+".join(re.escape(w) for w in wanted.split(" ")) + r"[;.,]?"
        m = re.search(pattern, current)
        if m is None:
            return None
        return self._cut(current, m.start(), m.end())

    @staticmethod
    def _cut(body: str, start: int, end: int) -> str:
        """
        Remove body[start:end]. Only the line(s) the cut touches are tidied:
        a line left blank (or a bare bullet) goes away, and a blank line
        doubled up by that is merged.
        """
        lines = body.split("\n")
        first, last = body.count("\n", 0, start), body.count("\n", 0, end)
        before = lines[first][:start - (body.rfind("\n", 0, start) + 1)]
        after = lines[last][end - (body.rfind("\n", 0, end) + 1):]
        rest = before + after
        if rest.strip() and not _EMPTY_BULLET_RE.match(rest):
            if not after.strip():
                before, after = before.rstrip(" \t"), ""
            lines[first:last + 1] = [before + after]
            return "\n".join(lines)

        del lines[first:last + 1]
        if 0 < first < len(lines) and not lines[first - 1].strip() and not lines[first].strip():
            del lines[first]
        return "\n".join(lines)
