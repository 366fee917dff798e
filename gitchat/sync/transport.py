"""Transports that replicate the chat log between participants.

GitTransport shells out to the git binary in a working copy. MemoryTransport
and MemoryRemote model the same operations in memory so the sync logic can be
exercised without a network or a git installation, including injected
conflicts and failures.
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """A transport operation could not complete."""


class IntegrationConflict(TransportError):
    """Integrating remote changes stopped on a conflict."""


class PublishRejected(TransportError):
    """The remote refused a publish because it has advanced past our base."""


class Transport(ABC):
    """Version-controlled storage for the shared log file."""

    @abstractmethod
    def is_repository(self) -> bool:
        """Whether the transport is usable at all."""
        pass

    @abstractmethod
    def integrate(self, rebase: bool = True) -> None:
        """Fetch remote changes and integrate them into the local replica.

        Args:
            rebase: Replay local commits on top of the remote history instead
                of creating a merge.

        Raises:
            IntegrationConflict: If integration stopped on a conflict. The
                integration is left in progress for abort_integration().
            TransportError: For any other failure.
        """
        pass

    @abstractmethod
    def abort_integration(self) -> None:
        """Abandon an in-progress integration, restoring the prior state."""
        pass

    @abstractmethod
    def stage(self) -> None:
        """Stage the log file, and only the log file."""
        pass

    @abstractmethod
    def commit(self, message: str) -> bool:
        """Commit staged changes.

        Returns:
            False if there was nothing to commit.
        """
        pass

    @abstractmethod
    def publish(self) -> None:
        """Publish local commits.

        Raises:
            PublishRejected: If the remote has commits we have not integrated.
            TransportError: For any other failure.
        """
        pass

    @abstractmethod
    def has_unpublished(self) -> bool:
        """Whether the log has local changes the remote does not have.

        Covers commits not yet published and log edits not yet committed.
        """
        pass

    @abstractmethod
    def unpublished_lines(self) -> list[str]:
        """Lines of the local log missing from the last-known remote copy."""
        pass


# Markers git prints when an integration stops on conflicting changes
_CONFLICT_MARKERS = (
    "CONFLICT",
    "could not apply",
    "Automatic merge failed",
    "Resolve all conflicts",
)

# Markers git prints when a push is refused because the remote moved on
_REJECTED_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "Updates were rejected",
)


class GitTransport(Transport):
    """Transport backed by a git working copy and its upstream remote."""

    def __init__(
        self,
        repo_path: str | Path,
        log_file: str = "chat.txt",
        timeout: float = 60.0,
    ):
        """Initialize the git transport.

        Args:
            repo_path: Root of the git working copy.
            log_file: Log file path relative to repo_path.
            timeout: Seconds before a single git invocation is abandoned.
        """
        self.repo_path = Path(repo_path).expanduser()
        self.log_file = log_file
        self.timeout = timeout
        self._merge_mode: str | None = None
        self._attributes_ready = False

    def _git(self, *args: str) -> subprocess.CompletedProcess:
        """Run a git command in the working copy.

        Raises:
            TransportError: If git is missing or the command times out.
        """
        cmd = ["git", *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                cwd=self.repo_path,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except FileNotFoundError as e:
            raise TransportError("git executable not found") from e
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"git {args[0]} timed out after {self.timeout}s") from e

    def _check(self, *args: str) -> subprocess.CompletedProcess:
        result = self._git(*args)
        if result.returncode != 0:
            raise TransportError(
                f"git {args[0]} failed ({result.returncode}): {_output(result)}"
            )
        return result

    def is_repository(self) -> bool:
        try:
            result = self._git("rev-parse", "--is-inside-work-tree")
        except TransportError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def ensure_union_merge(self) -> None:
        """Register the union merge driver for the log file.

        Concurrent appends both add lines at the end of the file, which a
        line-based merge reports as a conflict. The union driver keeps both
        sides. The attribute lives in .git/info/attributes so no tracked file
        is touched.
        """
        if self._attributes_ready:
            return

        git_dir = Path(self._check("rev-parse", "--git-dir").stdout.strip())
        if not git_dir.is_absolute():
            git_dir = self.repo_path / git_dir

        attributes = git_dir / "info" / "attributes"
        line = f"/{self.log_file} merge=union"
        existing = attributes.read_text().splitlines() if attributes.exists() else []
        if line not in existing:
            attributes.parent.mkdir(parents=True, exist_ok=True)
            with open(attributes, "a") as f:
                if existing and existing[-1] != "":
                    f.write("\n")
                f.write(line + "\n")
            logger.info(f"Registered union merge for {self.log_file} in {attributes}")

        self._attributes_ready = True

    def integrate(self, rebase: bool = True) -> None:
        self.ensure_union_merge()

        mode = "--rebase" if rebase else "--no-rebase"
        extra = () if rebase else ("--no-edit",)
        result = self._git("pull", mode, *extra)
        if result.returncode == 0:
            self._merge_mode = None
            return

        output = _output(result)
        if any(marker in output for marker in _CONFLICT_MARKERS):
            self._merge_mode = "rebase" if rebase else "merge"
            raise IntegrationConflict(f"git pull {mode} stopped on a conflict: {output}")

        raise TransportError(f"git pull {mode} failed ({result.returncode}): {output}")

    def abort_integration(self) -> None:
        mode = self._merge_mode or "rebase"
        result = self._git(mode, "--abort")
        if result.returncode != 0:
            # Nothing in progress is not an error
            logger.debug(f"git {mode} --abort: {_output(result)}")
        self._merge_mode = None

    def stage(self) -> None:
        self._check("add", "--", self.log_file)

    def commit(self, message: str) -> bool:
        staged = self._git("diff", "--cached", "--quiet", "--", self.log_file)
        if staged.returncode == 0:
            return False

        self._check("commit", "-m", message, "--", self.log_file)
        return True

    def publish(self) -> None:
        result = self._git("push")
        if result.returncode == 0:
            return

        output = _output(result)
        if any(marker in output for marker in _REJECTED_MARKERS):
            raise PublishRejected(f"git push rejected: {output}")
        raise TransportError(f"git push failed ({result.returncode}): {output}")

    def has_unpublished(self) -> bool:
        # A log edit that never made it into a commit, e.g. after stage() failed
        if self._check("status", "--porcelain", "--", self.log_file).stdout.strip():
            return True

        result = self._git("rev-list", "--count", "@{upstream}..HEAD")
        if result.returncode != 0:
            # No upstream yet: every local commit is unpublished
            head = self._git("rev-parse", "--verify", "--quiet", "HEAD")
            return head.returncode == 0
        return int(result.stdout.strip() or 0) > 0

    def unpublished_lines(self) -> list[str]:
        try:
            local = (self.repo_path / self.log_file).read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            raise TransportError(f"Could not read {self.log_file}: {e}") from e

        result = self._git("show", f"@{{upstream}}:{self.log_file}")
        published = result.stdout.splitlines() if result.returncode == 0 else []
        return _missing_from(local, published)


def _output(result: subprocess.CompletedProcess) -> str:
    return " ".join(part.strip() for part in (result.stdout, result.stderr) if part.strip())


def _missing_from(local: list[str], published: list[str]) -> list[str]:
    """Non-blank local lines not accounted for in published, in file order."""
    remaining = Counter(published)
    missing = []
    for line in local:
        if not line.strip():
            continue
        if remaining[line] > 0:
            remaining[line] -= 1
        else:
            missing.append(line)
    return missing


@dataclass
class MemoryRemote:
    """Shared in-memory remote: the published log lines and a version."""

    lines: list[str] = field(default_factory=list)
    version: int = 0


class MemoryTransport(Transport):
    """In-memory participant working copy of a MemoryRemote.

    Failures are injected per operation with fail_next(); each queued
    exception is raised by the next call of that operation.
    """

    def __init__(self, remote: MemoryRemote, log_path: str | Path):
        """Initialize the fake transport.

        Args:
            remote: Remote shared with other participants.
            log_path: Local replica file managed by a LogStore.
        """
        self.remote = remote
        self.log_path = Path(log_path)
        self.base_lines: list[str] = []
        self.base_version = 0
        self.committed_lines: list[str] = []
        self.staged_lines: list[str] | None = None
        self.calls: list[str] = []
        self._failures: dict[str, list[Exception]] = {}
        self._backup: str | None = None

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Queue an exception for the next `times` calls of `operation`."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _read_lines(self) -> list[str]:
        if not self.log_path.exists():
            return []
        return self.log_path.read_text(encoding="utf-8").splitlines()

    def _write_lines(self, lines: list[str]) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")

    def is_repository(self) -> bool:
        return True

    def integrate(self, rebase: bool = True) -> None:
        self._backup = self.log_path.read_text(encoding="utf-8") if self.log_path.exists() else None
        self._maybe_fail("integrate")

        if self.remote.version == self.base_version:
            return

        # Local commits sit on top of the last integrated base. Replaying them
        # after the remote lines models both a rebase and a union merge of an
        # append-only file.
        local_lines = self._read_lines()
        local_only = local_lines[len(self.base_lines):]
        committed_only = self.committed_lines[len(self.base_lines):]

        self.base_lines = list(self.remote.lines)
        self.base_version = self.remote.version
        self.committed_lines = self.base_lines + committed_only
        self._write_lines(self.base_lines + local_only)
        self._backup = None

    def abort_integration(self) -> None:
        self.calls.append("abort_integration")
        if self._backup is not None:
            self.log_path.write_text(self._backup, encoding="utf-8")
        self._backup = None

    def stage(self) -> None:
        self._maybe_fail("stage")
        self.staged_lines = self._read_lines()

    def commit(self, message: str) -> bool:
        self._maybe_fail("commit")
        if self.staged_lines is None or self.staged_lines == self.committed_lines:
            return False
        self.committed_lines = self.staged_lines
        self.staged_lines = None
        return True

    def publish(self) -> None:
        self._maybe_fail("publish")
        if self.remote.version != self.base_version:
            raise PublishRejected("remote has advanced")
        if self.committed_lines == self.remote.lines:
            return

        self.remote.lines = list(self.committed_lines)
        self.remote.version += 1
        self.base_lines = list(self.committed_lines)
        self.base_version = self.remote.version

    def has_unpublished(self) -> bool:
        return self._read_lines() != self.committed_lines or self.committed_lines != self.base_lines

    def unpublished_lines(self) -> list[str]:
        return _missing_from(self._read_lines(), self.base_lines)
