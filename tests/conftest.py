import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import pytest

from collaborators import FileStore


class FakeGenerator:
    """Records every call; replies come from a queue, then from `default`."""

    def __init__(self, replies=None, default="", error=None):
        self.replies = list(replies or [])
        self.default = default
        self.error = error
        self.calls = []

    def generate(self, messages, *, max_tokens=4000):
        self.calls.append({"messages": messages, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return self.default

    def prompt(self, i):
        return "\n".join(m["content"] for m in self.calls[i]["messages"])


class FakeVCS:
    def __init__(self, committed=None, staged=None, unstaged=False, stage_error=None):
        self.committed = committed or {}
        self.staged = staged or {}
        self.unstaged = unstaged
        self.stage_error = stage_error
        self.stage_calls = 0

    def has_unstaged_changes(self):
        return self.unstaged

    def stage_all(self):
        self.stage_calls += 1
        if self.stage_error is not None:
            raise self.stage_error

    def committed_content(self, path):
        return self.committed.get(Path(path).name)

    def staged_content(self, path):
        return self.staged.get(Path(path).name)


class FakeUI:
    def __init__(self, vcs_action="continue", confirm=True):
        self.vcs_action = vcs_action
        self.confirm_answer = confirm
        self.infos = []
        self.errors = []
        self.questions = []

    def confirm(self, message):
        self.questions.append(message)
        return self.confirm_answer

    def confirm_vcs_status(self, has_unstaged):
        self.questions.append("vcs")
        return self.vcs_action

    def notify_info(self, message):
        self.infos.append(message)

    def notify_error(self, message):
        self.errors.append(message)


def spec_text(artifact, phase=None, depends_on=None, references=None, body="## Overview\n\nText.\n"):
    lines = ["---", f"artifact: {artifact}"]
    if phase:
        lines.append(f"phase: {phase}")
    if depends_on is not None:
        lines.append("depends-on: [" + ", ".join(f'"{d}"' for d in depends_on) + "]")
    if references is not None:
        lines.append("references: [" + ", ".join(f'"{r}"' for r in references) + "]")
    lines.append("---")
    return "\n".join(lines) + "\n" + body


@pytest.fixture
def store(tmp_path):
    return FileStore(tmp_path)


@pytest.fixture
def write_spec(tmp_path):
    """write_spec('specs/requirements/foo.req.md', text) -> absolute path"""
    def _write(rel, text):
        p = tmp_path / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        return p
    return _write
