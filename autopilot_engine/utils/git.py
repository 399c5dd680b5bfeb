"""Git operations wrapper."""

import logging
from pathlib import Path

from .subprocess import SubprocessError, SubprocessManager

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Git operation error."""

    pass


class GitOps:
    """Git operations wrapper."""

    def __init__(self, repo_root: Path, timeout_sec: int = 30):
        """Initialize Git operations.

        Args:
            repo_root: Repository root directory
            timeout_sec: Default timeout for operations
        """
        self.repo_root = repo_root
        self.timeout_sec = timeout_sec
        self.manager = SubprocessManager(timeout_sec=timeout_sec)

    async def run_git(self, args: list[str], check: bool = True) -> dict:
        """Run git command.

        Args:
            args: Git arguments
            check: Whether to check exit code

        Returns:
            Result dict

        Raises:
            GitError: On failure
        """
        command = ["git"] + args
        try:
            result = await self.manager.run(command, cwd=self.repo_root)
        except SubprocessError as e:
            raise GitError(f"Git subprocess error: {e}")

        if check and not result["success"]:
            raise GitError(f"Git command failed: {' '.join(args)}\n{result['output']}")
        return result

    async def get_diff(self, cached: bool = False, paths: list[str] | None = None) -> str:
        """Get git diff, optionally limited to ``paths``.

        Failures yield an empty string; a diff is an artifact, never a gate.
        """
        args = ["diff"]
        if cached:
            args.append("--cached")
        if paths:
            args.append("--")
            args.extend(paths)

        try:
            result = await self.run_git(args, check=False)
        except GitError as e:
            logger.warning("git diff unavailable: %s", e)
            return ""
        if not result["success"]:
            return ""
        return result["output"]

    async def get_current_branch(self) -> str:
        result = await self.run_git(["rev-parse", "--abbrev-ref", "HEAD"])
        return result["output"].strip()

    async def branch_exists(self, branch: str) -> bool:
        result = await self.run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
        )
        return result["success"]

    async def create_branch(self, branch_name: str, start_point: str | None = None) -> None:
        """Create and check out a new branch.

        Raises:
            GitError: If the branch already exists or git fails
        """
        if await self.branch_exists(branch_name):
            raise GitError(f"Branch {branch_name} already exists")
        args = ["checkout", "-b", branch_name]
        if start_point:
            args.append(start_point)
        await self.run_git(args)
        logger.info("Created branch: %s", branch_name)

    async def checkout(self, ref: str) -> None:
        await self.run_git(["checkout", ref])
        logger.info("Checked out: %s", ref)

    async def add(self, paths: list[str] | None = None) -> None:
        """Stage ``paths``, or everything when no paths are given."""
        args = ["add", "--"] + paths if paths else ["add", "-A"]
        await self.run_git(args)

    async def commit(self, message: str, allow_empty: bool = False) -> str:
        """Commit staged changes.

        Returns:
            Commit hash
        """
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        await self.run_git(args)

        result = await self.run_git(["rev-parse", "HEAD"])
        commit_hash = result["output"].strip()
        logger.info("Committed: %s - %s", commit_hash[:8], message.split("\n")[0])
        return commit_hash

    async def merge(self, branch: str, into: str, message: str | None = None) -> str:
        """Merge ``branch`` into ``into`` with a merge commit.

        Returns:
            Resulting HEAD hash
        """
        await self.checkout(into)
        args = ["merge", "--no-ff", branch]
        args.extend(["-m", message or f"Merge branch '{branch}'"])
        await self.run_git(args)
        result = await self.run_git(["rev-parse", "HEAD"])
        logger.info("Merged %s into %s", branch, into)
        return result["output"].strip()

    async def discard_changes(self) -> None:
        """Reset tracked files to HEAD and drop untracked files."""
        await self.run_git(["reset", "--hard", "HEAD"])
        await self.run_git(["clean", "-fd"])

    async def delete_branch(self, branch: str) -> None:
        await self.run_git(["branch", "-D", branch])
        logger.info("Deleted branch: %s", branch)
