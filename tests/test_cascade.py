import logging

import pytest

from cascade import CascadeOrchestrator
from change_detector import ALL_SECTIONS, compare
from config import AppConfig, CascadeConfig, load_prompt_templates
from models import CascadeState, StagingError

from conftest import FakeGenerator, FakeUI, FakeVCS, spec_text

REQ_OLD = spec_text("widget", "requirement",
                    body="## Overview\n\nA widget.\n\n## Functional Requirements\n\n- FR-1: Spin.\n")
REQ_NEW = REQ_OLD.replace("- FR-1: Spin.\n", "- FR-1: Spin.\n- FR-2: Stop.\n")
DESIGN = spec_text("widget", "design", depends_on=["widget.req"], body="## Overview\n\nBuilt from @widget.req.\n")
IMPL = spec_text("widget", "implementation", depends_on=["widget.design"], body="## Files\n\nwidget.py\n")

NEW_DESIGN = spec_text("widget", "design", depends_on=["widget.req"],
                       body="## Overview\n\n" + "Regenerated design. " * 10 + "\n")
NEW_IMPL = spec_text("widget", "implementation", depends_on=["widget.design"],
                     body="## Files\n\n" + "Regenerated implementation. " * 10 + "\n")
REFINED_REQ = REQ_NEW.replace("A widget.", "A widget. REFINED " + "x" * 120)

REQ = "specs/requirements/widget.req.md"
DES = "specs/design/widget.design.md"
IMP = "specs/implementation/widget.impl.md"


@pytest.fixture
def make(tmp_path):
    templates = load_prompt_templates()

    def _make(generator, vcs=None, **cascade):
        cascade.setdefault("log_prompts", False)
        config = AppConfig(cascade=CascadeConfig(**cascade))
        return CascadeOrchestrator(tmp_path, generator, vcs or FakeVCS(), templates, config=config)
    return _make


# ---------- Baseline ----------

def test_baseline_priority(make, write_spec, tmp_path):
    p = write_spec(REQ, REQ_NEW)
    orch = make(FakeGenerator())
    orch.update_baseline(p, "cached")
    assert (tmp_path / ".promptpress/cache/widget.req.md.baseline").read_text(encoding="utf-8") == "cached"
    assert orch.resolve_baseline(p) == "cached"

    orch.vcs = FakeVCS(staged={"widget.req.md": "staged"})
    assert orch.resolve_baseline(p) == "staged"

    orch.vcs = FakeVCS(committed={"widget.req.md": "committed"}, staged={"widget.req.md": "staged"})
    assert orch.resolve_baseline(p) == "committed"


def test_no_baseline_anywhere(make, write_spec):
    p = write_spec(REQ, REQ_NEW)
    assert make(FakeGenerator()).resolve_baseline(p) is None


# ---------- Cascade ----------

def test_unchanged_document_does_nothing(make, write_spec):
    p = write_spec(REQ, REQ_NEW)
    write_spec(DES, DESIGN)
    gen = FakeGenerator()
    ui = FakeUI()
    result = make(gen, FakeVCS(committed={"widget.req.md": REQ_NEW})).cascade(p, ui)
    assert result.success
    assert result.updated_files == []
    assert result.state is CascadeState.NO_CHANGE
    assert gen.calls == []
    assert ui.infos == ["No changes detected in widget.req.md"]


def test_absent_baseline_is_no_change_by_default(make, write_spec):
    p = write_spec(REQ, REQ_NEW)
    write_spec(DES, DESIGN)
    gen = FakeGenerator()
    result = make(gen).cascade(p, FakeUI())
    assert result.success
    assert result.state is CascadeState.NO_CHANGE
    assert gen.calls == []


def test_absent_baseline_aggressive_regenerates(make, write_spec):
    p = write_spec(REQ, REQ_NEW)
    write_spec(DES, DESIGN)
    gen = FakeGenerator(["NONE", NEW_DESIGN])
    result = make(gen, absent_baseline_policy="aggressive").cascade(p, FakeUI())
    assert result.success
    assert len(gen.calls) == 2
    assert ALL_SECTIONS in gen.prompt(1)


def test_requirement_cascades_to_design_then_implementation(make, write_spec, tmp_path):
    p = write_spec(REQ, REQ_NEW)
    write_spec(DES, DESIGN)
    write_spec(IMP, IMPL)
    gen = FakeGenerator(["NONE", NEW_DESIGN, NEW_IMPL])
    ui = FakeUI()

    result = make(gen, FakeVCS(committed={"widget.req.md": REQ_OLD})).cascade(p, ui)

    assert result.success, result.errors
    assert result.state is CascadeState.COMMITTED
    assert result.updated_files == [str(tmp_path.resolve() / DES), str(tmp_path.resolve() / IMP)]
    assert (tmp_path / DES).read_text(encoding="utf-8") == NEW_DESIGN
    assert (tmp_path / IMP).read_text(encoding="utf-8") == NEW_IMPL
    assert (tmp_path / REQ).read_text(encoding="utf-8") == REQ_NEW

    summary = compare(REQ_OLD, REQ_NEW).summary
    assert len(gen.calls) == 3
    assert summary in gen.prompt(1)
    assert summary in gen.prompt(2)
    # implementation is generated from the freshly written design
    assert "Regenerated design." in gen.prompt(2)
    assert all(c["max_tokens"] == 4000 for c in gen.calls)

    baseline = tmp_path / ".promptpress/cache/widget.req.md.baseline"
    assert baseline.read_text(encoding="utf-8") == REQ_NEW
    assert ui.infos[-1] == "Successfully cascaded changes to 2 file(s)"


def test_refined_text_drives_propagation(make, write_spec, tmp_path):
    p = write_spec(REQ, REQ_NEW)
    write_spec(DES, DESIGN)
    gen = FakeGenerator([REFINED_REQ, NEW_DESIGN])

    result = make(gen, FakeVCS(committed={"widget.req.md": REQ_OLD})).cascade(p, FakeUI())

    assert result.success
    assert result.updated_files[0] == str(p.resolve())
    assert (tmp_path / REQ).read_text(encoding="utf-8") == REFINED_REQ
    assert "REFINED" in gen.prompt(1)
    assert (tmp_path / ".promptpress/cache/widget.req.md.baseline").read_text(encoding="utf-8") == REFINED_REQ


def test_refinement_loads_context_for_mentioned_artifacts(make, write_spec):
    p = write_spec(REQ, REQ_NEW + "\n## Integration with @auth and @billing.req\n\nSign-in first.\n")
    write_spec("specs/requirements/auth.req.md", spec_text("auth", "requirement", body="## Overview\n\nAUTH-REQ-BODY\n"))
    write_spec("specs/design/auth.design.md",
               spec_text("auth", "design", depends_on=["auth.req"], body="## Overview\n\nAUTH-DESIGN-BODY\n"))
    write_spec("specs/requirements/billing.req.md", spec_text("billing", "requirement", body="## Overview\n\nBILL-REQ\n"))
    write_spec("specs/design/billing.design.md",
               spec_text("billing", "design", depends_on=["billing.req"], body="## Overview\n\nBILL-DESIGN\n"))
    gen = FakeGenerator(["NONE"])

    result = make(gen, FakeVCS(committed={"widget.req.md": REQ_OLD})).cascade(p, FakeUI())

    assert result.success
    prompt = gen.prompt(0)
    # a bare name brings both phases, a suffixed one only that phase
    assert "AUTH-REQ-BODY" in prompt and "AUTH-DESIGN-BODY" in prompt
    assert "BILL-REQ" in prompt and "BILL-DESIGN" not in prompt


def test_missing_design_skips_propagation(make, write_spec):
    p = write_spec(REQ, REQ_NEW)
    gen = FakeGenerator(["NONE"])
    result = make(gen, FakeVCS(committed={"widget.req.md": REQ_OLD})).cascade(p, FakeUI())
    assert result.success
    assert result.updated_files == []
    assert len(gen.calls) == 1


def test_design_without_requirement_fails(make, write_spec):
    p = write_spec(DES, DESIGN + "\nMore.\n")
    write_spec(IMP, IMPL)
    ui = FakeUI()
    result = make(FakeGenerator(["NONE", NEW_IMPL]), FakeVCS(committed={"widget.design.md": DESIGN})).cascade(p, ui)
    assert not result.success
    assert result.state is CascadeState.FAILED
    assert result.errors == ["Cannot cascade from design without requirement file"]
    assert ui.errors


def test_design_cascades_to_implementation(make, write_spec, tmp_path):
    write_spec(REQ, REQ_NEW)
    p = write_spec(DES, DESIGN + "\nMore.\n")
    write_spec(IMP, IMPL)
    gen = FakeGenerator(["NONE", NEW_IMPL])
    result = make(gen, FakeVCS(committed={"widget.design.md": DESIGN})).cascade(p, FakeUI())
    assert result.success
    assert result.updated_files == [str(tmp_path.resolve() / IMP)]
    assert "More." in gen.prompt(1)


def test_implementation_is_terminal(make, write_spec):
    p = write_spec(IMP, IMPL + "\nextra\n")
    gen = FakeGenerator(["NONE"])
    result = make(gen, FakeVCS(committed={"widget.impl.md": IMPL})).cascade(p, FakeUI())
    assert result.success
    assert len(gen.calls) == 1


def test_generation_failure_is_reported(make, write_spec):
    p = write_spec(REQ, REQ_NEW)
    write_spec(DES, DESIGN)
    gen = FakeGenerator(error=RuntimeError("service down"))
    result = make(gen, FakeVCS(committed={"widget.req.md": REQ_OLD})).cascade(p, FakeUI())
    # refinement swallows the error, propagation reports it
    assert not result.success
    assert result.errors == ["Failed to cascade: service down"]


def test_refinement_failure_is_not_fatal(make, write_spec):
    p = write_spec(REQ, REQ_NEW)
    gen = FakeGenerator(error=RuntimeError("service down"))
    result = make(gen, FakeVCS(committed={"widget.req.md": REQ_OLD})).cascade(p, FakeUI())
    assert result.success
    assert result.updated_files == []


def test_cancel_on_unstaged_changes(make, write_spec, tmp_path):
    p = write_spec(REQ, REQ_NEW)
    write_spec(DES, DESIGN)
    gen = FakeGenerator()
    vcs = FakeVCS(committed={"widget.req.md": REQ_OLD}, unstaged=True)
    result = make(gen, vcs).cascade(p, FakeUI(vcs_action="cancel"))
    assert result.success
    assert result.state is CascadeState.CANCELLED
    assert gen.calls == []
    assert (tmp_path / DES).read_text(encoding="utf-8") == DESIGN
    assert not (tmp_path / ".promptpress").exists()


def test_staging_failure_is_not_fatal(make, write_spec, caplog):
    p = write_spec(REQ, REQ_NEW)
    write_spec(DES, DESIGN)
    vcs = FakeVCS(committed={"widget.req.md": REQ_OLD}, unstaged=True, stage_error=StagingError("index locked"))
    with caplog.at_level(logging.WARNING):
        result = make(FakeGenerator(["NONE", NEW_DESIGN]), vcs).cascade(p, FakeUI(vcs_action="stage"))
    assert vcs.stage_calls == 1
    assert result.success
    assert "index locked" in caplog.text


def test_confirmation_gate(make, write_spec):
    p = write_spec(REQ, REQ_NEW)
    gen = FakeGenerator()
    ui = FakeUI(confirm=False)
    orch = make(gen, FakeVCS(committed={"widget.req.md": REQ_OLD}), confirm_before_cascade=True)
    result = orch.cascade(p, ui)
    assert result.state is CascadeState.CANCELLED
    assert gen.calls == []
    assert "widget.req.md" in ui.questions[0]


def test_missing_metadata_fails(make, write_spec):
    p = write_spec(REQ, "# nothing here\n")
    ui = FakeUI()
    result = make(FakeGenerator()).cascade(p, ui)
    assert not result.success
    assert result.errors == ["Invalid markdown file - missing metadata header"]


def test_prompts_are_logged(make, write_spec, tmp_path):
    p = write_spec(REQ, REQ_NEW)
    write_spec(DES, DESIGN)
    orch = make(FakeGenerator(["NONE", NEW_DESIGN]), FakeVCS(committed={"widget.req.md": REQ_OLD}), log_prompts=True)
    assert orch.cascade(p, FakeUI()).success
    requests = sorted((tmp_path / "logs" / "request").iterdir())
    responses = sorted((tmp_path / "logs" / "response").iterdir())
    assert len(requests) == 2
    assert len(responses) == 2
    assert requests[0].read_text(encoding="utf-8").startswith("# System Prompt\n\n")


# ---------- Tersify ----------

BASE = spec_text("base", "requirement", body="## Overview\n\nShared rule.\n")
SOURCE = spec_text("widget", "design", depends_on=["widget.req"], references=["base.req"],
                   body="## Overview\n\nBuilt from @widget.req and @base.req.\nDuplicated line.\n")
TABLE = """Here are the edits:

| Document | Action | Details | Reason |
|---|---|---|---|
| widget.design.md | Remove from Overview | Duplicated line. | stated in base |
| base.req.md | Add to AI-CLARIFY section | Is this shared? | - |
| widget.impl.md | None | - | - |
| stranger.req.md | Remove from Overview | x | - |
"""


def test_tersify_without_references(make, write_spec):
    p = write_spec(DES, DESIGN)
    gen = FakeGenerator()
    ui = FakeUI()
    result = make(gen).tersify(p, ui)
    assert result.success
    assert gen.calls == []
    assert ui.infos == ["No references found in this document. Nothing to tersify."]


def test_tersify_applies_edits(make, write_spec, tmp_path):
    write_spec(REQ, REQ_NEW)
    write_spec("specs/requirements/base.req.md", BASE)
    p = write_spec(DES, SOURCE)
    write_spec(IMP, IMPL)
    gen = FakeGenerator([TABLE])
    ui = FakeUI()

    result = make(gen).tersify(p, ui)

    assert result.success, result.errors
    root = tmp_path.resolve()
    assert result.updated_files == [str(root / DES), str(root / "specs/requirements/base.req.md")]
    assert "Duplicated line." not in (tmp_path / DES).read_text(encoding="utf-8")
    assert "## Questions & Clarifications\n\nIs this shared?\n" in \
        (tmp_path / "specs/requirements/base.req.md").read_text(encoding="utf-8")
    assert (tmp_path / IMP).read_text(encoding="utf-8") == IMPL

    prompt = gen.prompt(0)
    assert "## base.req.md" in prompt
    assert "## widget.impl.md" in prompt
    assert ui.infos[-1] == "Successfully tersified 2 file(s)"


def test_tersify_excludes_documents_that_are_both_reference_and_dependent(make, write_spec, caplog):
    p = write_spec(REQ, spec_text("widget", "requirement", references=["widget.design"],
                                  body="## Overview\n\nSee @widget.design.\n"))
    write_spec(DES, DESIGN)
    gen = FakeGenerator(["| Document | Action | Details |\n|---|---|---|\n| widget.req.md | None | - |\n"])
    with caplog.at_level(logging.WARNING):
        result = make(gen).tersify(p, FakeUI())
    assert result.success
    assert result.updated_files == []
    assert "both references and depends on" in caplog.text
    assert "(none)" in gen.prompt(0)
