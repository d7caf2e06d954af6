# collaborators.py
"""
Interfaces the cascade engine consumes, plus the concrete adapters used by
the command line: root-scoped file store, git shell-out, Gemini generation
and prompt request/response logging.
"""

import logging
import os
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

import google.genai as genai
from google.genai.types import GenerateContentConfig

from config import DEFAULTS, GenerationConfig
from models import StagingError
from utils import slugify

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
ChatMessage = Dict[str, str]     # {"role": "system" | "user" | "assistant", "content": ...}


# ==========================
# Protocols
# ==========================

class Generator(Protocol):
    def generate(self, messages: List[ChatMessage], *, max_tokens: int = 4000) -> str: ...


class VersionControl(Protocol):
    def has_unstaged_changes(self) -> bool: ...
    def stage_all(self) -> None: ...
    def committed_content(self, path: PathLike) -> Optional[str]: ...
    def staged_content(self, path: PathLike) -> Optional[str]: ...


class CascadeUI(Protocol):
    def confirm(self, message: str) -> bool: ...
    def confirm_vcs_status(self, has_unstaged: bool) -> str: ...     # "stage" | "continue" | "cancel"
    def notify_info(self, message: str) -> None: ...
    def notify_error(self, message: str) -> None: ...


# ==========================
# Storage
# ==========================

class FileStore:
    """UTF-8 text files under a single root; paths outside the root are rejected."""

    def __init__(self, root: PathLike):
        self.root = Path(root).expanduser().resolve()

    def path(self, path: PathLike) -> Path:
        p = Path(path)
        if not p.is_absolute():
            p = self.root / p
        p = p.resolve()
        if p != self.root and self.root not in p.parents:
            raise ValueError(f"Path escapes store root {self.root}: {p}")
        return p

    def exists(self, path: PathLike) -> bool:
        return self.path(path).is_file()

    def read_text(self, path: PathLike) -> Optional[str]:
        try:
            with self.path(path).open("r", encoding="utf-8", newline="") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def write_text(self, path: PathLike, text: str) -> Path:
        p = self.path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("w", encoding="utf-8", newline="") as f:
            f.write(text)
        return p

    def list_files(self, directory: PathLike, suffix: str = ".md") -> List[Path]:
        d = self.path(directory)
        if not d.is_dir():
            return []
        return sorted(p for p in d.iterdir() if p.is_file() and p.name.endswith(suffix))


# ==========================
# Version control
# ==========================

class GitVersionControl:
    """Shells out to git in the workspace root."""

    def __init__(self, root: PathLike):
        self.root = Path(root).expanduser().resolve()

    def _git(self, *args: str) -> str:
        return subprocess.check_output(
            ["git", *args], cwd=self.root, text=True, encoding="utf-8", stderr=subprocess.DEVNULL
        )

    def has_unstaged_changes(self) -> bool:
        try:
            status = self._git("status", "--porcelain")
        except (OSError, subprocess.CalledProcessError):
            # not a repository or git missing: nothing to guard
            return False
        # " M", " A", " D": modified in the work tree; "??": untracked
        return any(line[:2] in (" M", " A", " D") or line.startswith("??")
                   for line in status.splitlines())

    def stage_all(self) -> None:
        try:
            self._git("add", "-A")
        except (OSError, subprocess.CalledProcessError) as e:
            raise StagingError(f"Failed to stage changes: {e}") from e

    def _show(self, spec: str) -> Optional[str]:
        try:
            return self._git("show", spec)
        except (OSError, subprocess.CalledProcessError):
            return None

    def _relative(self, path: PathLike) -> str:
        p = Path(path).resolve()
        return p.relative_to(self.root).as_posix() if self.root in p.parents else p.as_posix()

    def committed_content(self, path: PathLike) -> Optional[str]:
        return self._show(f"HEAD:{self._relative(path)}")

    def staged_content(self, path: PathLike) -> Optional[str]:
        return self._show(f":{self._relative(path)}")


class NullVersionControl:
    """Stand-in for workspaces without version control."""

    def has_unstaged_changes(self) -> bool:
        return False

    def stage_all(self) -> None:
        pass

    def committed_content(self, path: PathLike) -> Optional[str]:
        return None

    def staged_content(self, path: PathLike) -> Optional[str]:
        return None


# ==========================
# Generation
# ==========================

class GenaiGenerator:
    """Chat-style generation through the Google Gen AI SDK."""

    def __init__(self, client=None, cfg: Optional[GenerationConfig] = None):
        self.cfg = cfg or DEFAULTS.generation
        self.client = client or genai.Client(api_key=os.environ.get(self.cfg.api_key_env))

    def generate(self, messages: List[ChatMessage], *, max_tokens: int = 4000) -> str:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in messages if m["role"] != "system"
        ]
        cfg = GenerateContentConfig(
            system_instruction=system or None,
            temperature=self.cfg.temperature,
            max_output_tokens=max_tokens,
        )
        logger.info("[AI] Sending %d message(s) to %s (max_tokens=%d)", len(messages), self.cfg.model, max_tokens)
        resp = self.client.models.generate_content(model=self.cfg.model, config=cfg, contents=contents)
        return resp.text or ""


# ==========================
# Prompt logging
# ==========================

class PromptLogger:
    """Writes each generation request/response pair under <root>/<logs_dir>/{request,response}/."""

    def __init__(self, store: FileStore, logs_dir: str = DEFAULTS.paths.logs_dir):
        self.store = store
        self.logs_dir = logs_dir

    def log_request(self, operation: str, system_prompt: str, user_prompt: str) -> str:
        if not system_prompt.strip() or not user_prompt.strip():
            return ""
        stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
        try:
            p = self.store.write_text(
                Path(self.logs_dir) / "request" / f"{slugify(operation)}-{stamp}.md",
                f"# System Prompt\n\n{system_prompt}\n\n---\n\n# User Prompt\n\n{user_prompt}",
            )
        except (OSError, ValueError) as e:
            logger.warning("[AI] Failed to log %s request: %s", operation, e)
            return ""
        logger.debug("[AI] Logged %s request to %s", operation, p)
        return stamp

    def log_response(self, log_id: str, operation: str, response: str) -> None:
        if not log_id or not (response or "").strip():
            return
        try:
            p = self.store.write_text(
                Path(self.logs_dir) / "response" / f"{slugify(operation)}-{log_id}.md", response
            )
        except (OSError, ValueError) as e:
            logger.warning("[AI] Failed to log %s response: %s", operation, e)
            return
        logger.debug("[AI] Logged %s response to %s", operation, p)


# ==========================
# Non-interactive UI
# ==========================

class AutoApproveUI:
    """Answers every question without prompting; notifications go to the log."""

    def __init__(self, vcs_action: str = "continue"):
        self.vcs_action = vcs_action

    def confirm(self, message: str) -> bool:
        return True

    def confirm_vcs_status(self, has_unstaged: bool) -> str:
        return self.vcs_action

    def notify_info(self, message: str) -> None:
        logger.info(message)

    def notify_error(self, message: str) -> None:
        logger.error(message)
