from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import httpx

from orchestrator.config import Settings
from orchestrator.core.git import (
    GitProvider,
    create_pull_request,
    get_remote_url,
    parse_git_url,
    redact_git_url,
    run_git,
)
from orchestrator.core.logging import get_logger
from orchestrator.shared import DeployError

logger = get_logger(__name__)

DeployMode = Literal["pr", "merge"]

DEFAULT_COMMIT_MESSAGE = "AI Editor: Apply changes"
DEFAULT_PR_TITLE = "AI Editor Changes"
DEFAULT_PR_BODY = "Changes made via AI Editor"
BRANCH_PREFIX = "ai-changes-"


@dataclass
class DeployResult:
    mode: DeployMode
    branch: str | None = None
    pr_url: str | None = None
    message: str | None = None
    warnings: list[str] = field(default_factory=list)


def make_branch_name() -> str:
    return f"{BRANCH_PREFIX}{int(time.time() * 1000)}"


class DeployService:
    """Commits workspace changes and promotes them to the source repository."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def _git(self, workspace: Path, args: list[str], step: str) -> str:
        result = await run_git(workspace, args, timeout=self._settings.git_timeout_seconds)
        if not result.ok:
            message = redact_git_url(result.error_text())
            logger.error(f"Deploy step '{step}' failed in {workspace}: {message}")
            raise DeployError(f"Git {step} failed: {message}")
        return result.stdout

    async def commit(self, workspace: Path, message: str) -> None:
        await self._git(workspace, ["add", "-A"], step="add")
        await self._git(
            workspace,
            [
                "-c",
                f"user.name={self._settings.git_author_name}",
                "-c",
                f"user.email={self._settings.git_author_email}",
                "commit",
                "-m",
                message,
            ],
            step="commit",
        )

    async def deploy(
        self,
        workspace: Path,
        mode: DeployMode = "pr",
        title: str | None = None,
        body: str | None = None,
    ) -> DeployResult:
        """Commit all working tree changes and push them.

        ``merge`` pushes the commit straight to the trunk branch. ``pr``
        pushes a new ``ai-changes-<millis>`` branch and, for GitHub remotes
        with a configured token, opens a pull request against trunk.

        Afterwards the workspace is checked out on trunk, and local trunk
        never keeps a commit that was only pushed for review. If trunk can
        not be restored, that is reported as a warning.

        Raises:
            DeployError: If staging, committing or pushing fails.
        """
        trunk = self._settings.trunk_branch
        start_branch = (
            await self._git(workspace, ["rev-parse", "--abbrev-ref", "HEAD"], step="rev-parse")
        ).strip()
        base = (await self._git(workspace, ["rev-parse", "HEAD"], step="rev-parse")).strip()
        await self.commit(workspace, title or DEFAULT_COMMIT_MESSAGE)

        if mode == "merge":
            try:
                await self._git(workspace, ["push", "origin", f"HEAD:{trunk}"], step="push")
            except DeployError:
                if start_branch == trunk:
                    # The remote rejected the commit, take it back off local trunk.
                    await self._restore_trunk(workspace, start_branch, base)
                raise
            logger.info(f"Pushed {workspace.name} changes to {trunk}")
            result = DeployResult(mode="merge", message=f"Changes pushed to {trunk}")
            if start_branch != trunk:
                result.warnings.extend(
                    await self._restore_trunk(workspace, start_branch, base)
                )
            return result

        branch = make_branch_name()
        try:
            await self._git(workspace, ["checkout", "-b", branch], step="checkout")
            await self._git(
                workspace, ["push", "origin", f"{branch}:{branch}"], step="push"
            )
            logger.info(f"Pushed {workspace.name} changes to branch {branch}")
            result = await self._open_pull_request(workspace, branch, title, body)
        finally:
            restore_warnings = await self._restore_trunk(workspace, start_branch, base)
        result.warnings.extend(restore_warnings)
        return result

    async def _restore_trunk(
        self, workspace: Path, start_branch: str, base: str
    ) -> list[str]:
        """Check trunk back out and return warnings for anything that failed.

        When the deploy started on trunk, trunk is moved back to ``base`` with
        a soft reset so the deployed edits stay staged in the working tree.
        Otherwise there may be no local trunk (single-branch clone of another
        branch), so it is fetched and recreated from the remote.
        """
        trunk = self._settings.trunk_branch
        timeout = self._settings.git_timeout_seconds

        if start_branch == trunk:
            outcome = await run_git(workspace, ["checkout", trunk], timeout=timeout)
            if outcome.ok:
                outcome = await run_git(workspace, ["reset", "--soft", base], timeout=timeout)
                if outcome.ok:
                    return []
        else:
            remote_ref = f"refs/remotes/origin/{trunk}"
            outcome = await run_git(
                workspace,
                ["fetch", "--depth", "1", "origin", f"+refs/heads/{trunk}:{remote_ref}"],
                timeout=timeout,
            )
            if outcome.ok:
                outcome = await run_git(
                    workspace, ["checkout", "--force", "-B", trunk, remote_ref], timeout=timeout
                )
                if outcome.ok:
                    return []

        message = (
            f"Workspace could not be switched back to {trunk}: "
            f"{redact_git_url(outcome.error_text(300))}"
        )
        logger.error(f"{workspace.name}: {message}")
        return [message]

    async def _open_pull_request(
        self,
        workspace: Path,
        branch: str,
        title: str | None,
        body: str | None,
    ) -> DeployResult:
        result = DeployResult(mode="pr", branch=branch)
        token = self._settings.github_token
        parsed = parse_git_url(await get_remote_url(workspace))

        if parsed is None or parsed.provider != GitProvider.GITHUB or not token:
            result.message = "Branch pushed, create PR manually"
            return result

        try:
            data = await create_pull_request(
                parsed,
                token,
                head=branch,
                base=self._settings.trunk_branch,
                title=title or DEFAULT_PR_TITLE,
                body=body or DEFAULT_PR_BODY,
                api_base_url=self._settings.github_api_url,
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Pull request creation failed for {branch}: {exc}")
            result.warnings.append(f"Pull request creation failed: {exc}")
            return result

        pr_url = data.get("html_url")
        if isinstance(pr_url, str) and pr_url:
            result.pr_url = pr_url
            logger.info(f"Opened pull request {pr_url}")
        else:
            result.warnings.append("Pull request response did not include a URL")
        return result
