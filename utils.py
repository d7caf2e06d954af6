# utils.py
"""
Shared utility functions for the spec cascade engine.
Consolidates commonly used rendering, formatting, and reference helpers.
"""

import re
from typing import Any, Iterable, List, Optional, Sequence, Tuple

# artifact.req / artifact.design / artifact.impl, nothing more
CANONICAL_REF_RE = re.compile(r"^([a-zA-Z0-9-]+)\.(req|design|impl)$")


# ==========================
# String & Formatting Utilities
# ==========================

def slugify(text: str) -> str:
    """Convert text to a filename-safe slug."""
    text = (text or "operation").lower()
    text = re.sub(r'[^a-z0-9]+', '-', text)
    text = re.sub(r'-{2,}', '-', text)
    return text.strip('-')[:80] or "operation"


def artifact_title(artifact: str) -> str:
    """'geode-rose-quartz' -> 'Geode Rose Quartz'"""
    return " ".join(w[:1].upper() + w[1:] for w in artifact.split("-") if w)


def excerpt(text: str, limit: int, marker: str = "...") -> str:
    """Head of text limited to `limit` characters, always followed by the marker."""
    return text[:limit] + marker


def clip(text: str, limit: int) -> str:
    """Head of text, marked only when it was actually cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + "... [truncated]"


def dedupe(values: Iterable[str]) -> List[str]:
    """Drop repeats, keep first-occurrence order."""
    seen = set()
    out = []
    for v in values:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def normalize_for_match(text: str) -> str:
    """Trim, collapse whitespace and drop one trailing ';' ',' or '.'."""
    text = re.sub(r"\s+", " ", (text or "").strip())
    return re.sub(r"[;.,]$", "", text)


def render_prompt(template: str, **values: Any) -> str:
    """
    Fill {{name}} placeholders. Every occurrence is replaced; unknown
    placeholders are left as they are.
    """
    t = template
    for k, v in values.items():
        t = t.replace("{{" + k + "}}", "" if v is None else str(v))
    return t


# ==========================
# Reference Utilities
# ==========================

def canonical_ref(ref: str) -> str:
    """Strip an over-specifying '.md' (and surrounding '@'/backticks) from a reference."""
    ref = (ref or "").strip().strip("`").lstrip("@")
    if ref.endswith(".md"):
        ref = ref[:-3]
    return ref


def is_canonical_ref(ref: str) -> bool:
    return bool(CANONICAL_REF_RE.match(ref or ""))


def split_ref(ref: str) -> Tuple[str, Optional[str]]:
    """'name.req' -> ('name', 'req'); refs without a known phase suffix -> (ref, None)."""
    ref = canonical_ref(ref)
    m = CANONICAL_REF_RE.match(ref)
    if m:
        return m.group(1), m.group(2)
    return ref, None


# ==========================
# Table Rendering
# ==========================

def render_table_markdown(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    """
    Render headers and rows as a pipe table.

    Rows are padded or truncated to the header count; pipes inside cells are escaped.
    """
    if not headers and not rows:
        return ""

    def cell(value: Any) -> str:
        return str("" if value is None else value).replace("|", "\\|").replace("\n", " ")

    lines = []
    if headers:
        lines.append("| " + " | ".join(cell(h) for h in headers) + " |")
        lines.append("| " + " | ".join(["---"] * len(headers)) + " |")

    for row in rows:
        if headers:
            data = list(row[:len(headers)]) + [""] * max(0, len(headers) - len(row))
        else:
            data = list(row)
        lines.append("| " + " | ".join(cell(c) for c in data) + " |")

    return "\n".join(lines)
