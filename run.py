import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from cascade import CascadeOrchestrator
from collaborators import AutoApproveUI, FileStore, GenaiGenerator, GitVersionControl, NullVersionControl
from config import DEFAULTS, AppConfig, load_prompt_templates
from metadata_sync import convert_overspecified_references, update_metadata
from models import PromptTemplateError
from reference_graph import ReferenceGraph
from utils import render_table_markdown


class ConsoleUI:
    """Prompts on stdin; notifications go to stdout/stderr."""

    VCS_CHOICES = {"s": "stage", "stage": "stage", "c": "continue", "continue": "continue",
                   "x": "cancel", "cancel": "cancel", "": "cancel"}

    def confirm(self, message: str) -> bool:
        return input(f"{message} [y/N] ").strip().lower() in ("y", "yes")

    def confirm_vcs_status(self, has_unstaged: bool) -> str:
        print("[WARN] The workspace has unstaged changes.")
        while True:
            ans = input("Stage all, continue without staging, or cancel? [s/c/X] ").strip().lower()
            if ans in self.VCS_CHOICES:
                return self.VCS_CHOICES[ans]

    def notify_info(self, message: str) -> None:
        print(f"[INFO] {message}")

    def notify_error(self, message: str) -> None:
        print(f"[ERROR] {message}", file=sys.stderr)


def build_orchestrator(args) -> CascadeOrchestrator:
    root = Path(args.root).expanduser().resolve()
    config = AppConfig(
        paths=DEFAULTS.paths,
        cascade=replace(
            DEFAULTS.cascade,
            absent_baseline_policy=args.absent_baseline,
            confirm_before_cascade=args.confirm,
            log_prompts=not args.no_prompt_log,
        ),
        generation=replace(DEFAULTS.generation, model=args.model),
    )
    return CascadeOrchestrator(
        root,
        generator=GenaiGenerator(cfg=config.generation),
        vcs=NullVersionControl() if args.no_git else GitVersionControl(root),
        templates=load_prompt_templates(args.prompts),
        config=config,
    )


def make_ui(args):
    return AutoApproveUI() if args.yes else ConsoleUI()


def cmd_cascade(args) -> int:
    result = build_orchestrator(args).cascade(Path(args.file).resolve(), make_ui(args))
    for p in result.updated_files:
        print(f"  updated {p}")
    return 0 if result.success else 1


def cmd_tersify(args) -> int:
    result = build_orchestrator(args).tersify(Path(args.file).resolve(), make_ui(args))
    for p in result.updated_files:
        print(f"  updated {p}")
    return 0 if result.success else 1


def cmd_validate(args) -> int:
    graph = ReferenceGraph(FileStore(args.root))
    rows = []
    for f in args.files:
        for d in graph.validate_file(Path(f).resolve()):
            rows.append([f, d.line + 1, d.column + 1, d.code, d.message])
    if not rows:
        print(f"[INFO] No problems found in {len(args.files)} file(s)")
        return 0
    print(render_table_markdown(["File", "Line", "Column", "Code", "Message"], rows))
    return 1


def cmd_sync(args) -> int:
    store = FileStore(args.root)
    rc = 0
    for f in args.files:
        p = Path(f).resolve()
        text = store.read_text(p)
        if text is None:
            print(f"[ERROR] File not found: {f}", file=sys.stderr)
            rc = 1
            continue
        updated = update_metadata(convert_overspecified_references(text), p.name)
        if updated != text:
            store.write_text(p, updated)
            print(f"[INFO] Updated {f}")
    return rc


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Spec graph maintenance: cascade, tersify, validate, sync.")
    ap.add_argument("--root", default=".", help="workspace root containing specs/")
    ap.add_argument("-v", "--verbose", action="store_true")
    sub = ap.add_subparsers(dest="command", required=True)

    def add_generation_args(p):
        p.add_argument("file")
        p.add_argument("--yes", action="store_true", help="do not prompt; continue without staging")
        p.add_argument("--confirm", action="store_true", help="ask before refining and propagating")
        p.add_argument("--model", default=DEFAULTS.generation.model)
        p.add_argument("--prompts", default=None, help="prompt template JSON (defaults to prompts.json)")
        p.add_argument("--absent-baseline", choices=["conservative", "aggressive"],
                       default=DEFAULTS.cascade.absent_baseline_policy)
        p.add_argument("--no-git", action="store_true", help="ignore version control for baselines")
        p.add_argument("--no-prompt-log", action="store_true")

    p = sub.add_parser("cascade", help="propagate changes of one document to its downstream phases")
    add_generation_args(p)
    p.set_defaults(func=cmd_cascade)

    p = sub.add_parser("tersify", help="deduplicate a document against its references and dependents")
    add_generation_args(p)
    p.set_defaults(func=cmd_tersify)

    p = sub.add_parser("validate", help="check references, dependencies and mentions")
    p.add_argument("files", nargs="+")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("sync", help="refresh frontmatter from filename and mentions")
    p.add_argument("files", nargs="+")
    p.set_defaults(func=cmd_sync)
    return ap


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except PromptTemplateError as e:
        raise SystemExit(f"[ConfigError] {e}")


if __name__ == "__main__":
    sys.exit(main())
