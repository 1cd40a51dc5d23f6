"""Git repository access using GitPython.

A single bare mirror is kept per repository url. Revision references are
resolved cheaply against the remote with `git ls-remote`; content is only
fetched into the mirror when a revision has not been seen before, and each
revision is checked out into its own detached worktree, so a reader of an
older revision is not disturbed by a checkout of a newer one. Worktrees no
longer needed are removed with `remove_worktree`.

All methods block and are expected to be called from a worker thread.
"""

import logging
from pathlib import Path
import re

import git

from gitops_sync.exceptions import RevisionNotFound, SourceUnreachable
from gitops_sync.manifest import Revision

_LOGGER = logging.getLogger(__name__)

__all__ = ["GitMirror"]

HEAD = "HEAD"
FULL_SHA = re.compile(r"^[0-9a-f]{40}$")
ABBREV_SHA = re.compile(r"^[0-9a-f]{4,39}$")
REFSPECS = ("+refs/heads/*:refs/heads/*", "+refs/tags/*:refs/tags/*")


def _parse_ls_remote(output: str) -> dict[str, str]:
    refs: dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            continue
        sha, _, name = line.partition("\t")
        refs[name.strip()] = sha.strip()
    return refs


class GitMirror:
    """A bare mirror of a remote repository with a worktree per revision."""

    def __init__(self, url: str, path: Path) -> None:
        """Initialize GitMirror storing its content under path."""
        self._url = url
        self._mirror_path = path / "mirror.git"
        self._worktrees = path / "worktrees"

    def ls_remote(self) -> dict[str, str]:
        """Return the refs advertised by the remote mapped to their commit sha."""
        try:
            output = git.cmd.Git().ls_remote(self._url)
        except git.exc.GitCommandError as err:
            raise SourceUnreachable(
                f"Unable to list refs of {self._url}: {err.stderr.strip() or err}"
            ) from err
        return _parse_ls_remote(output)

    def resolve(self, ref: str) -> Revision:
        """Resolve a branch, tag, HEAD or commit sha to a Revision.

        Raises RevisionNotFound if the reference does not exist.
        """
        ref = ref or HEAD
        if FULL_SHA.match(ref):
            return Revision(sha=ref, ref=ref)
        refs = self.ls_remote()
        if ref == HEAD:
            candidates = [HEAD]
        elif ref.startswith("refs/"):
            candidates = [f"{ref}^{{}}", ref]
        else:
            candidates = [
                f"refs/heads/{ref}",
                f"refs/tags/{ref}^{{}}",
                f"refs/tags/{ref}",
            ]
        for candidate in candidates:
            if (sha := refs.get(candidate)) is not None:
                _LOGGER.debug("Resolved %s@%s to %s", self._url, ref, sha)
                return Revision(sha=sha, ref=ref)
        if ABBREV_SHA.match(ref):
            self.fetch()
            if (sha := self._rev_parse(ref)) is not None:
                return Revision(sha=sha, ref=ref)
        raise RevisionNotFound(self._url, ref)

    def _repo(self) -> git.Repo:
        if not self._mirror_path.exists():
            _LOGGER.info("Creating mirror of %s at %s", self._url, self._mirror_path)
            return git.Repo.init(str(self._mirror_path), bare=True, mkdir=True)
        return git.Repo(str(self._mirror_path))

    def _rev_parse(self, ref: str) -> str | None:
        try:
            return str(self._repo().git.rev_parse("--verify", "--quiet", f"{ref}^{{commit}}"))
        except git.exc.GitCommandError:
            return None

    def fetch(self, sha: str | None = None) -> None:
        """Update the mirror with all branches and tags, plus sha if given."""
        repo = self._repo()
        try:
            repo.git.fetch("--force", "--prune", self._url, *REFSPECS)
            if sha is not None and self._rev_parse(sha) is None:
                repo.git.fetch(self._url, sha)
        except git.exc.GitCommandError as err:
            if sha is not None and self._rev_parse(sha) is None:
                raise RevisionNotFound(self._url, sha) from err
            raise SourceUnreachable(
                f"Unable to fetch {self._url}: {err.stderr.strip() or err}"
            ) from err

    def checkout(self, revision: Revision) -> Path:
        """Return a directory holding the content of the repository at revision."""
        worktree = self._worktrees / revision.sha
        if (worktree / ".git").exists():
            _LOGGER.debug("Reusing worktree %s", worktree)
            return worktree
        if self._rev_parse(revision.sha) is None:
            self.fetch(revision.sha)
        if self._rev_parse(revision.sha) is None:
            raise RevisionNotFound(self._url, revision.ref or revision.sha)
        _LOGGER.info("Checking out %s at %s", self._url, revision)
        self._worktrees.mkdir(parents=True, exist_ok=True)
        repo = self._repo()
        try:
            repo.git.worktree("prune")
            repo.git.worktree("add", "--detach", "--force", str(worktree), revision.sha)
        except git.exc.GitCommandError as err:
            raise SourceUnreachable(
                f"Unable to check out {revision} of {self._url}: {err.stderr.strip() or err}"
            ) from err
        return worktree

    def remove_worktree(self, sha: str) -> None:
        """Delete the checkout of a revision, if there is one."""
        worktree = self._worktrees / sha
        if not worktree.exists():
            return
        _LOGGER.info("Removing worktree %s", worktree)
        try:
            self._repo().git.worktree("remove", "--force", str(worktree))
        except git.exc.GitCommandError as err:
            raise SourceUnreachable(
                f"Unable to remove worktree {worktree}: {err.stderr.strip() or err}"
            ) from err
