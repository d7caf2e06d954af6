# change_detector.py
"""
Section-level change detection between two snapshots of a spec document.
"""

from typing import List, Optional

from models import ChangeDetectionResult
from spec_parser import build_section_map

ALL_SECTIONS = "All sections"


def compare(old_text: Optional[str], new_text: str, *, absent_policy: str = "conservative") -> ChangeDetectionResult:
    """
    Compare two snapshots.

    old_text=None means no baseline exists. Under the conservative policy that
    is reported as "no detectable change"; under the aggressive policy every
    section counts as new.
    """
    if old_text is None:
        if absent_policy == "aggressive":
            return ChangeDetectionResult(
                has_changes=True,
                modified_sections=[ALL_SECTIONS],
                summary="New document: all content treated as changed",
                old_content="",
                new_content=new_text,
            )
        return ChangeDetectionResult(
            has_changes=False,
            modified_sections=[],
            summary="No version control history, staged content, or baseline available for change detection",
            old_content="",
            new_content=new_text,
        )

    if old_text == new_text:
        return ChangeDetectionResult(False, [], "No changes", old_text, new_text)

    modified = find_modified_sections(old_text, new_text)
    return ChangeDetectionResult(
        has_changes=True,
        modified_sections=modified,
        summary=summarize(old_text, new_text, modified),
        old_content=old_text,
        new_content=new_text,
    )


def find_modified_sections(old_text: str, new_text: str) -> List[str]:
    """Headings whose body differs, or that exist on one side only (new order first)."""
    old_sections = build_section_map(old_text)
    new_sections = build_section_map(new_text)

    modified = [name for name, body in new_sections.items()
                if name not in old_sections or old_sections[name] != body]
    modified.extend(name for name in old_sections if name not in new_sections)
    return modified


def summarize(old_text: str, new_text: str, modified_sections: List[str]) -> str:
    delta = len(new_text.split("\n")) - len(old_text.split("\n"))
    summary = f"Modified {len(modified_sections)} section(s)"
    if delta > 0:
        summary += f", added {delta} line(s)"
    elif delta < 0:
        summary += f", removed {-delta} line(s)"
    return summary
