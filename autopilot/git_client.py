"""
Git Client

Version-control collaborator backed by the `git` and `gh` command-line
tools, run as asyncio subprocesses.
"""

import asyncio
import logging
import shutil
from typing import List, Tuple

from .collaborators import VersionControl, VersionControlError

logger = logging.getLogger("git_client")


class GitCliVersionControl(VersionControl):
    """Commits with `git`, opens pull requests with `gh`."""

    def __init__(self, git_binary: str = "git", gh_binary: str = "gh"):
        self.git_binary = git_binary
        self.gh_binary = gh_binary

    async def _run(self, args: List[str], cwd: str) -> Tuple[int, str, str]:
        if shutil.which(args[0]) is None:
            raise VersionControlError(f"'{args[0]}' is not installed")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise VersionControlError(f"Cannot run {args[0]} in {cwd}: {e}")

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
        return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def commit(self, repo_ref: str, message: str) -> str:
        code, _, stderr = await self._run([self.git_binary, "add", "-A"], repo_ref)
        if code != 0:
            raise VersionControlError(f"git add failed: {stderr.strip()[:300]}")

        code, stdout, stderr = await self._run([self.git_binary, "commit", "-m", message], repo_ref)
        if code != 0:
            output = (stdout + stderr).lower()
            if "nothing to commit" in output:
                logger.info(f"Nothing to commit in {repo_ref}")
            else:
                raise VersionControlError(f"git commit failed: {stderr.strip()[:300]}")

        code, stdout, stderr = await self._run([self.git_binary, "rev-parse", "HEAD"], repo_ref)
        if code != 0:
            raise VersionControlError(f"git rev-parse failed: {stderr.strip()[:300]}")
        commit_id = stdout.strip()
        logger.info(f"Committed {commit_id[:12]} in {repo_ref}")
        return commit_id

    async def create_pull_request(self, repo_ref: str, branch: str, title: str, body: str) -> str:
        code, _, stderr = await self._run([self.git_binary, "push", "-u", "origin", "HEAD"], repo_ref)
        if code != 0:
            raise VersionControlError(f"git push failed: {stderr.strip()[:300]}", transient=True)

        code, stdout, stderr = await self._run(
            [self.gh_binary, "pr", "create", "--base", branch, "--title", title, "--body", body],
            repo_ref,
        )
        if code != 0:
            raise VersionControlError(f"gh pr create failed: {stderr.strip()[:300]}")
        url = stdout.strip().splitlines()[-1] if stdout.strip() else ""
        logger.info(f"Opened pull request {url}")
        return url
