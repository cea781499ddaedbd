"""Version control signals for planning.

Two things are read from git:
- the files changed since a ref, mapped onto units as a ChangeSet
- per-unit change events inside a trailing window, which become the
  change-frequency risk signal
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import structlog

from ..core.models import ChangeSet

logger = structlog.get_logger()

# One line per commit: "<sha> <unix commit time>"
CHANGE_FORMAT = "--pretty=format:%H %ct"


@dataclass(frozen=True)
class UnitChange:
    """A commit that touched a unit's source path."""
    sha: str
    committed_at: datetime


class GitHistory:
    """Reads change sets and per-unit change events from a git checkout."""

    def __init__(self, repo_path: str = ".", timeout: float = 30.0, max_events: int = 500):
        self.repo_path = Path(repo_path).resolve()
        self.timeout = timeout
        self.max_events = max_events
        self.log = logger.bind(component="git_history", repo=str(self.repo_path))
        if not (self.repo_path / ".git").exists():
            self.log.warning("Not a git checkout; history queries will come back empty")

    async def _run_git_command(self, args: list[str]) -> tuple[str, str, int]:
        """Run git with the given arguments; returns (stdout, stderr, exit code)."""
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=str(self.repo_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.log.error("git timed out", args=args, timeout_seconds=self.timeout)
            return "", "timed out", 1
        except OSError as e:
            self.log.error("git could not be started", error=str(e))
            return "", str(e), 1

        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            process.returncode or 0,
        )

    # =========================================================================
    # CHANGE SETS
    # =========================================================================

    async def changed_files_since(self, ref: str) -> list[str]:
        """Files changed between ref and HEAD."""
        stdout, stderr, code = await self._run_git_command(["diff", "--name-only", ref, "HEAD"])
        if code != 0:
            self.log.warning("git diff failed", ref=ref, stderr=stderr.strip())
            return []
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    async def changed_units_since(self, ref: str, graph) -> ChangeSet:
        """Build a ChangeSet for everything changed since ref.

        Files no unit claims keep their path as identifier; the impact
        analyzer then treats them as unknown, maximum-risk units.
        """
        unit_ids = []
        for path in await self.changed_files_since(ref):
            unit = graph.unit_for_path(path)
            unit_ids.append(unit.unit_id if unit else path)

        return ChangeSet(unit_ids=unit_ids, ref=ref)

    # =========================================================================
    # CHANGE FREQUENCY
    # =========================================================================

    async def commit_history_for(self, unit, window_days: int = 30) -> list[UnitChange]:
        """Change events on the unit's source path, newest first."""
        if not unit.path:
            return []

        stdout, stderr, code = await self._run_git_command([
            "log",
            f"--since={window_days}.days.ago",
            f"-n{self.max_events}",
            CHANGE_FORMAT,
            "--",
            unit.path,
        ])
        if code != 0:
            self.log.warning("git log failed", unit_id=unit.unit_id, stderr=stderr.strip())
            return []
        return parse_changes(stdout)

    async def change_frequency(self, unit, window_days: int = 30) -> int:
        return len(await self.commit_history_for(unit, window_days))


def parse_changes(output: str) -> list[UnitChange]:
    """Parse "<sha> <unix time>" lines, skipping anything malformed."""
    changes = []
    for line in output.splitlines():
        sha, _, stamp = line.strip().partition(" ")
        if not sha or not stamp.isdigit():
            continue
        changes.append(UnitChange(sha=sha, committed_at=datetime.fromtimestamp(int(stamp), tz=UTC)))
    return changes
