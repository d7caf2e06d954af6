import shutil
import subprocess
from types import SimpleNamespace

import pytest

from collaborators import GenaiGenerator, GitVersionControl, NullVersionControl, PromptLogger
from config import GenerationConfig


def test_file_store_round_trip(store, tmp_path):
    p = store.write_text("specs/design/x.design.md", "hello\r\nworld")
    assert p == tmp_path.resolve() / "specs/design/x.design.md"
    assert store.read_text("specs/design/x.design.md") == "hello\r\nworld"
    assert store.exists(p)
    assert store.read_text("specs/missing.md") is None


def test_file_store_rejects_paths_outside_root(store):
    with pytest.raises(ValueError):
        store.read_text("../outside.md")


def test_file_store_listing(store):
    store.write_text("specs/requirements/b.req.md", "")
    store.write_text("specs/requirements/a.req.md", "")
    store.write_text("specs/requirements/notes.txt", "")
    assert [p.name for p in store.list_files("specs/requirements")] == ["a.req.md", "b.req.md"]
    assert store.list_files("specs/nowhere") == []


def test_prompt_logger(store, tmp_path):
    logger = PromptLogger(store)
    log_id = logger.log_request("generate design", "SYS", "USER")
    logger.log_response(log_id, "generate design", "ANSWER")
    (req,) = (tmp_path / "logs" / "request").iterdir()
    (resp,) = (tmp_path / "logs" / "response").iterdir()
    assert req.name.startswith("generate-design-")
    assert req.read_text(encoding="utf-8") == "# System Prompt\n\nSYS\n\n---\n\n# User Prompt\n\nUSER"
    assert resp.read_text(encoding="utf-8") == "ANSWER"


def test_prompt_logger_skips_blank_prompts(store, tmp_path):
    assert PromptLogger(store).log_request("op", " ", "user") == ""
    assert not (tmp_path / "logs").exists()


class _FakeModels:
    def __init__(self):
        self.kwargs = None

    def generate_content(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(text="generated")


def test_genai_generator_maps_roles():
    models = _FakeModels()
    gen = GenaiGenerator(client=SimpleNamespace(models=models), cfg=GenerationConfig(model="m-1", temperature=0.3))
    out = gen.generate([
        {"role": "system", "content": "be terse"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ], max_tokens=123)
    assert out == "generated"
    assert models.kwargs["model"] == "m-1"
    assert [c["role"] for c in models.kwargs["contents"]] == ["user", "model"]
    cfg = models.kwargs["config"]
    assert "be terse" in str(cfg.system_instruction)
    assert cfg.max_output_tokens == 123
    assert cfg.temperature == 0.3


def test_null_version_control():
    vcs = NullVersionControl()
    assert not vcs.has_unstaged_changes()
    vcs.stage_all()
    assert vcs.committed_content("x") is None
    assert vcs.staged_content("x") is None


def _git(root, *args):
    subprocess.run(["git", "-c", "user.email=t@example.com", "-c", "user.name=t", *args],
                   cwd=root, check=True, capture_output=True)


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_version_control(tmp_path):
    _git(tmp_path, "init", "-q")
    f = tmp_path / "specs" / "a.req.md"
    f.parent.mkdir()
    f.write_text("v1\n")
    _git(tmp_path, "add", "-A")
    _git(tmp_path, "commit", "-q", "-m", "init")

    vcs = GitVersionControl(tmp_path)
    assert not vcs.has_unstaged_changes()
    f.write_text("v2\n")
    assert vcs.has_unstaged_changes()
    assert vcs.committed_content(f) == "v1\n"

    vcs.stage_all()
    assert not vcs.has_unstaged_changes()
    assert vcs.staged_content(f) == "v2\n"
    assert vcs.committed_content(tmp_path / "specs" / "new.req.md") is None

