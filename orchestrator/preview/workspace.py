from __future__ import annotations

import asyncio
import re
import shlex
from pathlib import Path

from orchestrator.config import Settings
from orchestrator.core.git import build_authenticated_git_url, redact_git_url, run_git
from orchestrator.core.logging import get_logger
from orchestrator.core.shell import CommandResult, run_command
from orchestrator.shared import InvalidRequestError, WorkspaceError

logger = get_logger(__name__)

# npm package specifier: optional scope, name, optional version/range/tag.
_PACKAGE_SPEC_PATTERN = re.compile(
    r"^(@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*(@[A-Za-z0-9._^~<>=*|-]+)?$"
)
_BRANCH_PATTERN = re.compile(r"^(?!-)(?!.*\.\.)[A-Za-z0-9._/-]+$")


def validate_package_spec(spec: str) -> str:
    value = (spec or "").strip()
    if not _PACKAGE_SPEC_PATTERN.match(value):
        raise InvalidRequestError(f"Invalid package name: {spec!r}")
    return value


def validate_branch(branch: str) -> str:
    value = (branch or "").strip()
    if not value or not _BRANCH_PATTERN.match(value):
        raise InvalidRequestError(f"Invalid branch name: {branch!r}")
    return value


class WorkspaceManager:
    """Keeps one git working copy with installed dependencies per site."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._root = Path(settings.workspaces_dir).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def workspace_path(self, site_id: str) -> Path:
        return self._root / site_id

    def has_workspace(self, site_id: str) -> bool:
        return (self.workspace_path(site_id) / ".git").is_dir()

    async def ensure_workspace(self, site_id: str, repo_url: str, branch: str) -> Path:
        """Make the site's workspace reflect the remote tip of ``branch``.

        Existing working copies are fetched and hard-reset (local edits and
        untracked files are discarded); missing ones are shallow-cloned.
        Dependencies are installed when the marker directory is absent.

        Raises:
            WorkspaceError: If any git or install step fails.
        """
        branch = validate_branch(branch)
        workspace = self.workspace_path(site_id)

        if (workspace / ".git").is_dir():
            logger.info(f"Workspace exists for {site_id}, fetching {branch}...")
            await self._refresh(workspace, branch)
        else:
            logger.info(
                f"Cloning {redact_git_url(repo_url)} ({branch}) for {site_id}..."
            )
            await self._clone(workspace, repo_url, branch)

        await self.install_dependencies(site_id, workspace)
        return workspace

    async def _clone(self, workspace: Path, repo_url: str, branch: str) -> None:
        workspace.mkdir(parents=True, exist_ok=True)
        clone_url = build_authenticated_git_url(repo_url, self._settings.github_token)
        await self._git(
            workspace,
            [
                "clone",
                "--depth",
                "1",
                "--single-branch",
                "--branch",
                branch,
                clone_url,
                ".",
            ],
            step="clone",
        )

    async def _refresh(self, workspace: Path, branch: str) -> None:
        remote_ref = f"refs/remotes/origin/{branch}"
        await self._git(
            workspace,
            ["fetch", "--depth", "1", "origin", f"+refs/heads/{branch}:{remote_ref}"],
            step="fetch",
        )
        await self._git(
            workspace, ["checkout", "--force", "-B", branch, remote_ref], step="checkout"
        )
        await self._git(workspace, ["reset", "--hard", remote_ref], step="reset")
        # Removes files created by earlier patches; ignored files (installed
        # dependencies) survive.
        await self._git(workspace, ["clean", "-fd"], step="clean")

    async def _git(self, workspace: Path, args: list[str], step: str) -> CommandResult:
        result = await run_git(workspace, args, timeout=self._settings.git_timeout_seconds)
        if not result.ok:
            message = redact_git_url(result.error_text())
            logger.error(f"Git {step} failed in {workspace}: {message}")
            raise WorkspaceError(f"Git {step} failed: {message}")
        return result

    async def install_dependencies(self, site_id: str, workspace: Path) -> bool:
        """Run the install command unless the dependency marker exists.

        Returns:
            True if an install was performed.
        """
        marker = workspace / self._settings.dependency_marker
        if marker.exists():
            return False
        logger.info(f"Installing dependencies for {site_id}...")
        await self._run_install(workspace, shlex.split(self._settings.install_command))
        return True

    async def install_packages(
        self, workspace: Path, packages: list[str], dev: bool = False
    ) -> list[str]:
        """Install additional packages into the workspace.

        Returns:
            The validated package specifiers that were installed.
        """
        specs = [validate_package_spec(package) for package in packages]
        if not specs:
            return []
        args = shlex.split(self._settings.install_command)
        if dev:
            args.append("--save-dev")
        logger.info(f"Installing {' '.join(specs)} in {workspace.name}")
        await self._run_install(workspace, [*args, *specs])
        return specs

    async def _run_install(self, workspace: Path, args: list[str]) -> None:
        timeout = self._settings.install_timeout_seconds
        result = await run_command(args, cwd=workspace, timeout=timeout)
        if result.timed_out:
            logger.error(f"Install timed out after {timeout}s in {workspace}")
            raise WorkspaceError(f"Install timed out after {timeout}s")
        if not result.ok:
            message = result.error_text()
            logger.error(f"Install failed in {workspace}: {message}")
            raise WorkspaceError(f"Install failed: {message}")

    async def write_config_files(
        self, workspace: Path, files: dict[str, str]
    ) -> list[str]:
        """Write config files that do not exist yet; existing files are kept.

        Returns:
            Workspace-relative paths of the files that were created.
        """
        created: list[str] = []
        for rel_path, content in files.items():
            target = workspace / rel_path
            if target.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_text, content, encoding="utf-8")
            created.append(rel_path)
        return created
