# metadata_sync.py
"""
Frontmatter maintenance for spec documents: keep phase / artifact in line
with the filename, stamp last-updated, and keep `references` in step with the
@mentions in the body.
"""

import logging
import re
from datetime import date
from pathlib import Path
from typing import List, Optional

from models import Phase, SpecDocument, SpecMetadata
from spec_parser import SpecParser
from utils import canonical_ref

logger = logging.getLogger(__name__)

_SPEC_FILENAME_RE = re.compile(r"^(.+)\.(req|design|impl)\.md$")
_OVERSPECIFIED_RE = re.compile(r"(?<![\w/.@-])@?([a-z0-9-]+\.(?:req|design))\.md(?!\w)")


def update_metadata(text: str, filename: str, today: Optional[str] = None,
                    parser: Optional[SpecParser] = None) -> str:
    """
    Refresh the frontmatter of a document saved as `filename`.

    Only the frontmatter block is rewritten; a document with no usable
    frontmatter gets one when its filename names a phase.
    """
    parser = parser or SpecParser()
    doc = parser.parse(text)
    m = _SPEC_FILENAME_RE.match(Path(filename).name)

    metadata = doc.metadata
    if metadata is None:
        if m is None:
            logger.warning("[Sync] %s has no metadata header and no phase extension, leaving it alone", filename)
            return text
        metadata = SpecMetadata(artifact=m.group(1))

    if m is not None:
        metadata.phase = Phase.from_suffix(m.group(2))
        if not metadata.artifact or metadata.artifact == "unknown":
            metadata.artifact = m.group(1)

    metadata.last_updated = today or date.today().isoformat()
    metadata.references = _mentioned_references(doc, metadata)
    return parser.replace_frontmatter(text, metadata)


def sync_references_with_mentions(text: str, parser: Optional[SpecParser] = None) -> str:
    """Set `references` to the mentioned documents not already in `depends-on`."""
    parser = parser or SpecParser()
    doc = parser.parse(text)
    if doc.metadata is None:
        return text

    refs = _mentioned_references(doc, doc.metadata)
    if refs == doc.metadata.references:
        return text
    doc.metadata.references = refs
    return parser.replace_frontmatter(text, doc.metadata)


def convert_overspecified_references(text: str, parser: Optional[SpecParser] = None) -> str:
    """
    Rewrite 'name.req.md' / '@name.req.md' in the body to '@name.req', and
    drop '.md' from entries of the frontmatter lists.
    """
    parser = parser or SpecParser()
    doc = parser.parse(text)
    if doc.metadata is None:
        return _OVERSPECIFIED_RE.sub(r"@\1", text)

    content = _OVERSPECIFIED_RE.sub(r"@\1", doc.content)
    metadata = doc.metadata
    lists_changed = False
    for attr in ("depends_on", "references"):
        values = getattr(metadata, attr)
        if values is None:
            continue
        canonical = [canonical_ref(v) for v in values]
        if canonical != values:
            setattr(metadata, attr, canonical)
            lists_changed = True

    if lists_changed:
        return parser.render_frontmatter(metadata) + "\n" + content
    frontmatter = text[:len(text) - len(doc.content)] if doc.content else text
    return frontmatter + content


def _mentioned_references(doc: SpecDocument, metadata: SpecMetadata) -> Optional[List[str]]:
    deps = {canonical_ref(d) for d in metadata.depends_on or []}
    refs = sorted(set(doc.mention_refs) - deps)
    if not refs and metadata.references is None:
        return None
    return refs
