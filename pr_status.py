"""Fetch a best-effort PR snapshot through the GitHub CLI."""
from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

__all__ = [
    "GitHubError",
    "PRStatusFetcher",
    "build_pr_record",
    "count_failing_checks",
    "count_unresolved_threads",
]

logger = structlog.get_logger()

PR_VIEW_FIELDS = "title,headRefName,mergeable,mergeStateStatus,reviewDecision,statusCheckRollup"

REVIEW_THREADS_QUERY = """
query($owner: String!, $repo: String!, $number: Int!, $after: String) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $number) {
      reviewThreads(first: 100, after: $after) {
        pageInfo { hasNextPage endCursor }
        nodes { isResolved isOutdated }
      }
    }
  }
}
"""

# statusCheckRollup mixes CheckRun (conclusion) and StatusContext (state) entries.
_FAILING_CONCLUSIONS = {"FAILURE", "TIMED_OUT", "CANCELLED", "ACTION_REQUIRED", "STARTUP_FAILURE"}
_FAILING_STATES = {"FAILURE", "ERROR"}


class GitHubError(RuntimeError):
    """Raised when a GitHub CLI command fails."""


def count_failing_checks(rollup: Optional[Iterable[Dict[str, Any]]]) -> int:
    failing = 0
    for item in rollup or []:
        if not isinstance(item, dict):
            continue
        conclusion = str(item.get("conclusion") or "").upper()
        state = str(item.get("state") or "").upper()
        if conclusion in _FAILING_CONCLUSIONS or state in _FAILING_STATES:
            failing += 1
    return failing


def count_unresolved_threads(nodes: Optional[Iterable[Dict[str, Any]]]) -> int:
    return sum(
        1
        for node in nodes or []
        if isinstance(node, dict) and node.get("isResolved") is False and node.get("isOutdated") is False
    )


def build_pr_record(repo: str, number: int, view: Dict[str, Any], unresolved: int) -> Dict[str, Any]:
    mergeable_raw = view.get("mergeable")
    # gh reports MERGEABLE / CONFLICTING / UNKNOWN.
    if mergeable_raw in (True, "MERGEABLE"):
        mergeable: Optional[bool] = True
    elif mergeable_raw in (False, "CONFLICTING"):
        mergeable = False
    else:
        mergeable = None
    return {
        "repo": repo,
        "number": number,
        "title": view.get("title") or f"PR #{number}",
        "branch": view.get("headRefName") or "",
        "failingChecks": count_failing_checks(view.get("statusCheckRollup")),
        "unresolved": unresolved,
        "mergeable": mergeable,
        "mergeStateStatus": view.get("mergeStateStatus") or "",
        "reviewDecision": view.get("reviewDecision") or "",
    }


class PRStatusFetcher:
    """Status-fetch collaborator used by the correlator and ``GET /api/pr``."""

    def __init__(self, gh_bin: str = "gh", timeout: float = 30.0) -> None:
        self.gh_bin = gh_bin
        self.timeout = timeout

    async def __call__(self, repo: str, number: int) -> Optional[Dict[str, Any]]:
        return await self.fetch(repo, number)

    async def fetch(self, repo: str, number: int) -> Optional[Dict[str, Any]]:
        try:
            view = await self._view(repo, number)
            unresolved = await self._unresolved(repo, number)
        except (GitHubError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
            logger.warning("pr_fetch_failed", repo=repo, number=number, error=str(exc))
            return None
        return build_pr_record(repo, number, view, unresolved)

    async def _view(self, repo: str, number: int) -> Dict[str, Any]:
        raw = await self._run_gh(["pr", "view", str(number), "--repo", repo, "--json", PR_VIEW_FIELDS])
        data = json.loads(raw or "{}")
        if not isinstance(data, dict):
            raise GitHubError(f"unexpected gh pr view output for {repo}#{number}")
        return data

    async def _unresolved(self, repo: str, number: int) -> int:
        owner, _, name = repo.partition("/")
        if not owner or not name:
            raise GitHubError(f"invalid repo slug: {repo!r}")
        total = 0
        cursor: Optional[str] = None
        while True:
            args: List[str] = [
                "api",
                "graphql",
                "-f",
                f"query={REVIEW_THREADS_QUERY}",
                "-f",
                f"owner={owner}",
                "-f",
                f"repo={name}",
                "-F",
                f"number={number}",
            ]
            if cursor:
                args.extend(["-f", f"after={cursor}"])
            data = json.loads(await self._run_gh(args) or "{}")
            if not isinstance(data, dict):
                raise GitHubError(f"unexpected gh api graphql output for {repo}#{number}")
            threads = (
                ((data.get("data") or {}).get("repository") or {}).get("pullRequest") or {}
            ).get("reviewThreads") or {}
            total += count_unresolved_threads(threads.get("nodes"))
            page = threads.get("pageInfo") or {}
            cursor = page.get("endCursor")
            if not page.get("hasNextPage") or not cursor:
                return total

    async def _run_gh(self, args: Sequence[str]) -> str:
        env = dict(os.environ)
        env.setdefault("GH_PAGER", "cat")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.gh_bin,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise GitHubError(f"GitHub CLI {self.gh_bin!r} could not be started: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            message = stderr.decode(errors="ignore").strip() or stdout.decode(errors="ignore").strip()
            raise GitHubError(message or f"gh {' '.join(args[:2])} failed")
        return stdout.decode(errors="ignore")
