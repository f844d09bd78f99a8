"""
Version control client used to install artifacts.
"""
from __future__ import annotations

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from ..errors import RepoError
from .process_runner import ProcessLaunchError, ProcessRunner, redact

logger = logging.getLogger(__name__)


@dataclass
class RepoHandle:
    """A cloned working tree."""

    path: Path


class RepoClient(ABC):
    """Clone / list references / checkout."""

    @abstractmethod
    def clone(
        self, url: str, dest: Path, username: str = "", token: str = ""
    ) -> RepoHandle:
        pass

    @abstractmethod
    def list_references(self, repo: RepoHandle) -> List[str]:
        """Full reference names, e.g. refs/remotes/origin/production."""

    @abstractmethod
    def checkout(self, repo: RepoHandle, ref: str) -> None:
        """Force-checkout ``ref`` discarding any local changes."""


def authenticated_url(url: str, username: str, token: str) -> str:
    """Embed basic-auth credentials into an http(s) clone URL."""
    if not token:
        return url
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    userinfo = f"{quote(username or 'oauth2', safe='')}:{quote(token, safe='')}"
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))


class GitCliRepoClient(RepoClient):
    """RepoClient that drives the ``git`` binary."""

    def __init__(self, runner: ProcessRunner, git_bin: Optional[str] = None):
        self.runner = runner
        self.git_bin = git_bin or shutil.which("git") or "git"

    def _git(self, *args: str, token: str = "") -> str:
        argv = [self.git_bin, *args]
        # the clone URL carries the percent-encoded form
        secrets = (quote(token, safe=""), token) if token else ()
        shown = redact(" ".join(argv), secrets)
        try:
            exit_code, output = self.runner.capture(argv, secrets=secrets)
        except ProcessLaunchError as e:
            raise RepoError(e.message) from e
        if exit_code != 0:
            output = redact(output, secrets)
            logger.error(f"{shown} failed with status code {exit_code}: {output.strip()}")
            raise RepoError(
                f"git {args[0]} failed with status code {exit_code}: {output.strip()}"
            )
        return output

    def clone(self, url, dest, username="", token="") -> RepoHandle:
        dest = Path(dest)
        logger.info(f"Cloning {url} into {dest}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        self._git(
            "clone",
            "--no-single-branch",
            authenticated_url(url, username, token),
            str(dest),
            token=token,
        )
        return RepoHandle(path=dest)

    def list_references(self, repo) -> List[str]:
        output = self._git("-C", str(repo.path), "for-each-ref", "--format=%(refname)")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def checkout(self, repo, ref) -> None:
        branch = ref.rsplit("/", 1)[-1]
        self._git("-C", str(repo.path), "checkout", "-f", "-B", branch, ref)
