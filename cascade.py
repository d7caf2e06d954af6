# cascade.py
"""
Cascade orchestrator.

Given one edited spec document, decide whether anything changed since the
last baseline, optionally refine the document, regenerate the downstream
phase documents in order (requirement -> design -> implementation) and move
the baseline forward. Also drives the Tersify workflow, which redistributes
duplicated information between a document, its references and its
dependents through a table of structured edits.

Both workflows report through CascadeResult; partial success is recorded,
not rolled back.
"""

import logging
import re
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional

from change_detector import compare
from collaborators import CascadeUI, FileStore, Generator, PathLike, PromptLogger, VersionControl
from config import DEFAULTS, AppConfig, PromptTemplates
from content_editor import ContentEditor
from models import (
    CascadeResult,
    CascadeState,
    ChangeDetectionResult,
    MissingSiblingError,
    Phase,
    ReferencedArtifact,
    SpecCascadeError,
    SpecMetadata,
    StagingError,
)
from reference_graph import ReferenceGraph
from spec_parser import SpecParser
from utils import artifact_title, canonical_ref, clip, dedupe, excerpt, render_prompt, split_ref

logger = logging.getLogger(__name__)

DOCUMENT_SEPARATOR = "\n\n---\n\n"
# @artifact or @artifact.req / @artifact.design in headings and summaries
_CONTEXT_MENTION_RE = re.compile(r"(?<!\w)@([a-z0-9-]+)(?:\.(req|design)(?!\w))?(?!\w)")


class CascadeOrchestrator:
    def __init__(
        self,
        root: PathLike,
        generator: Generator,
        vcs: VersionControl,
        templates: PromptTemplates,
        config: Optional[AppConfig] = None,
        store: Optional[FileStore] = None,
        prompt_logger: Optional[PromptLogger] = None,
    ):
        self.config = config or DEFAULTS
        self.store = store or FileStore(root)
        self.generator = generator
        self.vcs = vcs
        self.templates = templates
        self.parser = SpecParser(self.config.paths)
        self.graph = ReferenceGraph(self.store, self.parser, self.config.paths)
        self.editor = ContentEditor(self.config.paths)
        if prompt_logger is None and self.config.cascade.log_prompts:
            prompt_logger = PromptLogger(self.store, self.config.paths.logs_dir)
        self.prompt_logger = prompt_logger

    # ---------- Baseline ----------

    def baseline_path(self, path: PathLike) -> Path:
        return self.store.root / self.config.paths.cache_dir / f"{Path(path).name}.baseline"

    def resolve_baseline(self, path: PathLike) -> Optional[str]:
        """Committed content, else staged content, else the cached baseline, else None."""
        p = self.store.path(path)
        content = self.vcs.committed_content(p)
        if content is not None:
            logger.debug("[Cascade] Baseline for %s: last commit", p.name)
            return content
        content = self.vcs.staged_content(p)
        if content is not None:
            logger.debug("[Cascade] Baseline for %s: staged content", p.name)
            return content
        content = self.store.read_text(self.baseline_path(p))
        if content is not None:
            logger.debug("[Cascade] Baseline for %s: cache", p.name)
        return content

    def update_baseline(self, path: PathLike, content: str) -> None:
        try:
            self.store.write_text(self.baseline_path(path), content)
        except (OSError, ValueError) as e:
            logger.warning("[Cascade] Failed to update baseline for %s: %s", Path(path).name, e)

    def detect_changes(self, path: PathLike, current_text: str) -> ChangeDetectionResult:
        return compare(
            self.resolve_baseline(path),
            current_text,
            absent_policy=self.config.cascade.absent_baseline_policy,
        )

    # ---------- Cascade ----------

    def cascade(self, path: PathLike, ui: CascadeUI) -> CascadeResult:
        result = CascadeResult()
        try:
            path = self.store.path(path)
            text = self.store.read_text(path)
            if text is None:
                return self._fail(result, ui, f"File not found: {path}")
            metadata = self.parser.parse(text).metadata
            if metadata is None:
                return self._fail(result, ui, "Invalid markdown file - missing metadata header")

            result.state = CascadeState.DETECTING
            change = self.detect_changes(path, text)
            if not change.has_changes:
                logger.info("[Cascade] %s: %s", path.name, change.summary)
                ui.notify_info(f"No changes detected in {path.name}")
                result.success = True
                result.state = CascadeState.NO_CHANGE
                return result
            logger.info("[Cascade] %s: %s [%s]", path.name, change.summary, ", ".join(change.modified_sections))

            result.state = CascadeState.CONFIRMING
            if not self._confirm_vcs(ui) or not self._confirm_cascade(ui, path, change):
                logger.info("[Cascade] Cancelled by user")
                result.success = True
                result.state = CascadeState.CANCELLED
                return result

            result.state = CascadeState.REFINING
            refined = self._refine(path, metadata, text, change)
            if refined is not None:
                text = refined
                result.updated_files.append(str(path))

            result.state = CascadeState.PROPAGATING
            self._propagate(path, metadata, text, change, result)
        except Exception as e:
            logger.exception("[Cascade] Unexpected failure")
            result.errors.append(str(e))
            result.success = False
            result.state = CascadeState.FAILED
            ui.notify_error(f"Cascade failed: {e}")
            return result

        result.success = not result.errors
        if result.success:
            self.update_baseline(path, text)
            result.state = CascadeState.COMMITTED
            ui.notify_info(f"Successfully cascaded changes to {len(result.updated_files)} file(s)")
        else:
            result.state = CascadeState.FAILED
            ui.notify_error("Cascade failed: " + "; ".join(result.errors))
        return result

    def _propagate(self, path: Path, metadata: SpecMetadata, text: str,
                   change: ChangeDetectionResult, result: CascadeResult) -> None:
        phase = metadata.phase
        if phase is None:
            logger.info("[Cascade] %s is the concept document; nothing to propagate", path.name)
            return
        if phase is Phase.IMPLEMENTATION:
            logger.info("[Cascade] Implementation documents do not cascade further")
            return

        ref = self.graph.ref_for_path(path)
        artifact = split_ref(ref)[0] if ref else metadata.artifact
        try:
            if phase is Phase.REQUIREMENT:
                self._cascade_from_requirement(artifact, text, change, result)
            else:
                self._cascade_from_design(artifact, text, change, result)
        except MissingSiblingError as e:
            logger.error("[Cascade] %s", e)
            result.errors.append(str(e))
        except Exception as e:
            logger.exception("[Cascade] Propagation from %s failed", path.name)
            result.errors.append(f"Failed to cascade: {e}")

    def _cascade_from_requirement(self, artifact: str, requirement: str,
                                  change: ChangeDetectionResult, result: CascadeResult) -> None:
        design_path = self.graph.sibling(artifact, Phase.DESIGN)
        if not self.store.exists(design_path):
            logger.info("[Cascade] No design file found for %s, skipping cascade", artifact)
            return

        design = self._generate_design(artifact, requirement, change)
        self.store.write_text(design_path, design)
        result.updated_files.append(str(design_path))
        logger.info("[Cascade] Regenerated %s", design_path.name)

        impl_path = self.graph.sibling(artifact, Phase.IMPLEMENTATION)
        if self.store.exists(impl_path):
            impl = self._sync_implementation(artifact, requirement, design, change)
            self.store.write_text(impl_path, impl)
            result.updated_files.append(str(impl_path))
            logger.info("[Cascade] Regenerated %s", impl_path.name)

    def _cascade_from_design(self, artifact: str, design: str,
                             change: ChangeDetectionResult, result: CascadeResult) -> None:
        requirement = self.store.read_text(self.graph.sibling(artifact, Phase.REQUIREMENT))
        if requirement is None:
            raise MissingSiblingError("Cannot cascade from design without requirement file")

        impl_path = self.graph.sibling(artifact, Phase.IMPLEMENTATION)
        if not self.store.exists(impl_path):
            logger.info("[Cascade] No implementation file found for %s, nothing to sync", artifact)
            return

        impl = self._sync_implementation(artifact, requirement, design, change)
        self.store.write_text(impl_path, impl)
        result.updated_files.append(str(impl_path))
        logger.info("[Cascade] Regenerated %s", impl_path.name)

    # ---------- Generation steps ----------

    def _refine(self, path: Path, metadata: SpecMetadata, text: str,
                change: ChangeDetectionResult) -> Optional[str]:
        """
        Ask for a structured rewrite of the edited document.

        Short responses mean "nothing to refine". Any failure leaves the
        document as it is; the cascade carries on either way.
        """
        try:
            refs = self._context_mentions(" ".join(change.modified_sections) + " " + change.summary)
            context = self._format_referenced_artifacts(self._load_referenced_artifacts(refs))

            template = self.templates.refine_for(metadata.phase.value if metadata.phase else None)
            values = dict(
                artifact_name=metadata.artifact,
                modified_sections=", ".join(change.modified_sections),
                change_summary=change.summary,
                current_content=text,
            )
            user = render_prompt(template.user, **values)
            if context:
                user += "\n\nReferenced artifacts (for context):\n" + context
            response = self._generate("refine", render_prompt(template.system, **values), user)

            if len(response.strip()) <= self.config.cascade.min_refinement_chars:
                logger.info("[Cascade] No refinement needed for %s", path.name)
                return None
            self.store.write_text(path, response)
        except Exception as e:
            logger.warning("[Cascade] Refinement of %s failed, continuing: %s", path.name, e)
            return None
        logger.info("[Cascade] Refined %s", path.name)
        return response

    def _generate_design(self, artifact: str, requirement: str, change: ChangeDetectionResult) -> str:
        cc = self.config.cascade
        template = self.templates.get("generate_design")
        values = dict(
            artifact_name=artifact,
            artifact_title=artifact_title(artifact),
            last_updated=date.today().isoformat(),
            modified_sections=", ".join(change.modified_sections),
            change_summary=change.summary,
            requirement_content=excerpt(requirement, cc.requirement_excerpt_chars),
        )
        return self._generate_document(
            "generate-design", render_prompt(template.system, **values), render_prompt(template.user, **values)
        )

    def _sync_implementation(self, artifact: str, requirement: str, design: str,
                             change: ChangeDetectionResult) -> str:
        cc = self.config.cascade
        template = self.templates.get("sync_implementation")
        values = dict(
            artifact_name=artifact,
            artifact_title=artifact_title(artifact),
            last_updated=date.today().isoformat(),
            modified_sections=", ".join(change.modified_sections),
            change_summary=change.summary,
            requirement_content=excerpt(requirement, cc.impl_requirement_excerpt_chars),
            design_content=excerpt(design, cc.impl_design_excerpt_chars),
        )
        return self._generate_document(
            "sync-implementation", render_prompt(template.system, **values), render_prompt(template.user, **values)
        )

    def _generate_document(self, operation: str, system: str, user: str) -> str:
        text = self._generate(operation, system, user)
        if not text.strip():
            raise SpecCascadeError(f"Empty response from generation service ({operation})")
        return text

    def _generate(self, operation: str, system: str, user: str) -> str:
        log_id = self.prompt_logger.log_request(operation, system, user) if self.prompt_logger else ""
        response = self.generator.generate(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            max_tokens=self.config.cascade.max_tokens,
        )
        response = response or ""
        if self.prompt_logger:
            self.prompt_logger.log_response(log_id, operation, response)
        return response

    # ---------- Tersify ----------

    def tersify(self, path: PathLike, ui: CascadeUI) -> CascadeResult:
        result = CascadeResult()
        try:
            path = self.store.path(path)
            text = self.store.read_text(path)
            if text is None:
                return self._fail(result, ui, f"File not found: {path}")
            metadata = self.parser.parse(text).metadata
            if metadata is None:
                return self._fail(result, ui, "Invalid markdown file - missing metadata header")

            references = dedupe(canonical_ref(r) for r in metadata.references or [])
            if not references:
                ui.notify_info("No references found in this document. Nothing to tersify.")
                result.success = True
                result.state = CascadeState.NO_CHANGE
                return result

            referenced = self._load_documents(references)
            if not referenced:
                ui.notify_info("None of the referenced documents could be found. Nothing to tersify.")
                result.success = True
                result.state = CascadeState.NO_CHANGE
                return result

            source_ref = self.graph.ref_for_path(path) or metadata.ref
            dependent_refs = []
            for ref in self.graph.dependents_of(source_ref):
                if ref in referenced:
                    logger.warning("[Tersify] %s both references and depends on %s; treating it as a reference only",
                                   ref, source_ref)
                    continue
                dependent_refs.append(ref)
            dependents = self._load_documents(dependent_refs)
            logger.info("[Tersify] %s: %d reference(s), %d dependent(s)", path.name, len(referenced), len(dependents))

            result.state = CascadeState.CONFIRMING
            if not self._confirm_vcs(ui):
                logger.info("[Tersify] Cancelled by user")
                result.success = True
                result.state = CascadeState.CANCELLED
                return result

            result.state = CascadeState.PROPAGATING
            template = self.templates.get("tersify")
            values = dict(
                source_filename=path.name,
                content=text,
                referenced_documents=self._format_documents(referenced),
                dependent_documents=self._format_documents(dependents) or "(none)",
            )
            response = self._generate(
                "tersify", render_prompt(template.system, **values), render_prompt(template.user, **values)
            )

            grouped = self.parser.group_changes_by_document(self.parser.parse_change_table(response))
            targets: Dict[str, Path] = {source_ref: path}
            for ref in list(referenced) + list(dependents):
                targets[ref] = self.graph.resolve(ref)

            for name, edits in grouped.items():
                target = targets.get(name)
                if target is None:
                    logger.warning("[Tersify] Skipping %d edit(s) for %s, which is not part of this operation",
                                   len(edits), name)
                    continue
                current = self.store.read_text(target) or ""
                updated = self.editor.apply_all(current, edits)
                if updated != current:
                    self.store.write_text(target, updated)
                    result.updated_files.append(str(target))
                    logger.info("[Tersify] Applied %d edit(s) to %s", len(edits), target.name)
        except Exception as e:
            logger.exception("[Tersify] Unexpected failure")
            result.errors.append(str(e))
            result.success = False
            result.state = CascadeState.FAILED
            ui.notify_error(f"Tersify failed: {e}")
            return result

        result.success = True
        result.state = CascadeState.COMMITTED
        ui.notify_info(f"Successfully tersified {len(result.updated_files)} file(s)")
        return result

    # ---------- Helpers ----------

    def _confirm_vcs(self, ui: CascadeUI) -> bool:
        if not self.vcs.has_unstaged_changes():
            return True
        action = ui.confirm_vcs_status(True)
        if action == "cancel":
            return False
        if action == "stage":
            try:
                self.vcs.stage_all()
                logger.info("[Git] Staged all changes")
            except StagingError as e:
                logger.warning("[Git] %s; continuing without staging", e)
        return True

    def _confirm_cascade(self, ui: CascadeUI, path: Path, change: ChangeDetectionResult) -> bool:
        if not self.config.cascade.confirm_before_cascade:
            return True
        return ui.confirm(
            f"Cascade changes from {path.name}? {change.summary} ({', '.join(change.modified_sections)})"
        )

    @staticmethod
    def _context_mentions(text: str) -> List[str]:
        """'auth' for a bare @auth, 'auth.req' for @auth.req; first occurrence order."""
        return dedupe(
            name + ("." + suffix if suffix else "") for name, suffix in _CONTEXT_MENTION_RE.findall(text)
        )

    def _load_referenced_artifacts(self, refs: List[str]) -> List[ReferencedArtifact]:
        """Requirement/design text per referenced artifact; a bare artifact name loads both."""
        out = []
        for ref in refs:
            artifact, suffix = split_ref(ref)
            item = ReferencedArtifact(name=artifact)
            if suffix in (None, Phase.REQUIREMENT.suffix):
                item.requirement = self.store.read_text(self.graph.sibling(artifact, Phase.REQUIREMENT))
            if suffix in (None, Phase.DESIGN.suffix):
                item.design = self.store.read_text(self.graph.sibling(artifact, Phase.DESIGN))
            if item.requirement is None and item.design is None:
                logger.warning("[Cascade] Referenced artifact not found: %s", ref)
                continue
            out.append(item)
        return out

    def _format_referenced_artifacts(self, artifacts: List[ReferencedArtifact]) -> str:
        limit = self.config.cascade.reference_context_chars
        blocks = []
        for a in artifacts:
            block = f"Artifact: {a.name}"
            if a.requirement is not None:
                block += f"\n\n**Requirement:**\n{clip(a.requirement, limit)}"
            if a.design is not None:
                block += f"\n\n**Design:**\n{clip(a.design, limit)}"
            blocks.append(block)
        return DOCUMENT_SEPARATOR.join(blocks)

    def _load_documents(self, refs: List[str]) -> Dict[str, str]:
        docs: Dict[str, str] = {}
        for ref in refs:
            text = self.store.read_text(self.graph.resolve(ref))
            if text is None:
                logger.warning("[Tersify] Document not found: %s", ref)
                continue
            docs[ref] = text
        return docs

    def _format_documents(self, docs: Dict[str, str]) -> str:
        return DOCUMENT_SEPARATOR.join(
            f"## {self.graph.resolve(ref).name}\n\n{text}" for ref, text in docs.items()
        )

    @staticmethod
    def _fail(result: CascadeResult, ui: CascadeUI, message: str) -> CascadeResult:
        logger.error("[Cascade] %s", message)
        result.errors.append(message)
        result.success = False
        result.state = CascadeState.FAILED
        ui.notify_error(message)
        return result
