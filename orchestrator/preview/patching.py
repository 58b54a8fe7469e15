from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from orchestrator.core.git import run_git
from orchestrator.core.logging import get_logger
from orchestrator.core.shell import CommandResult, run_command

logger = get_logger(__name__)

# Changes to these force a dev server restart; everything else hot-reloads.
RESTART_NAME_FRAGMENTS = (
    "tailwind.config",
    "postcss.config",
    "next.config",
    "vite.config",
)
RESTART_EXACT_PATHS = {"package.json", ".env.local"}

_PATCH_TIMEOUT_SECONDS = 60


@dataclass
class ApplyResult:
    files_changed: list[str] = field(default_factory=list)
    needs_restart: bool = False
    strategy: str | None = None
    warnings: list[str] = field(default_factory=list)


def _header_path(line: str, prefix: str) -> str | None:
    """Extract the path from a ``---``/``+++`` header line.

    Returns None for ``/dev/null`` sides.
    """
    raw = line[len(prefix):].split("\t", 1)[0].strip()
    if not raw or raw == "/dev/null":
        return None
    if raw.startswith('"') and raw.endswith('"') and len(raw) >= 2:
        raw = raw[1:-1]
    if raw.startswith(("a/", "b/")):
        raw = raw[2:]
    return raw or None


def parse_diff_files(unified_diff: str) -> list[str]:
    """List the files a unified diff touches, in order of first appearance.

    Only the ``---``/``+++`` headers are inspected; deletions are reported
    under their old path.
    """
    files: list[str] = []
    old_path: str | None = None
    for line in unified_diff.splitlines():
        if line.startswith("--- "):
            old_path = _header_path(line, "--- ")
            continue
        if line.startswith("+++ "):
            path = _header_path(line, "+++ ") or old_path
            old_path = None
            if path and path not in files:
                files.append(path)
    return files


def requires_restart(path: str) -> bool:
    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    if normalized in RESTART_EXACT_PATHS:
        return True
    name = normalized.rsplit("/", 1)[-1]
    return any(fragment in name for fragment in RESTART_NAME_FRAGMENTS)


class PatchApplier:
    """Applies unified diffs to a workspace, least destructive strategy first."""

    STRATEGIES = ("git-3way", "git", "patch")

    async def apply_diff(self, workspace_path: Path, unified_diff: str) -> ApplyResult:
        files_changed = parse_diff_files(unified_diff)
        if not files_changed:
            return ApplyResult()

        result = ApplyResult(
            files_changed=files_changed,
            needs_restart=any(requires_restart(path) for path in files_changed),
        )

        patch_text = unified_diff if unified_diff.endswith("\n") else unified_diff + "\n"
        # Outside the working tree so it can never be staged by a deploy.
        fd, patch_name = tempfile.mkstemp(prefix="preview-", suffix=".patch")
        patch_path = Path(patch_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                await asyncio.to_thread(handle.write, patch_text)

            errors: list[str] = []
            for strategy in self.STRATEGIES:
                outcome = await self._run_strategy(strategy, workspace_path, patch_path)
                if outcome.ok:
                    result.strategy = strategy
                    break
                errors.append(f"{strategy}: {outcome.error_text(300)}")
        finally:
            with contextlib.suppress(FileNotFoundError):
                patch_path.unlink()

        if result.strategy is None:
            logger.error(
                f"Failed to apply diff in {workspace_path} with every strategy: "
                + " | ".join(errors)
            )
            result.warnings.append(
                "Diff could not be applied cleanly; workspace may not reflect filesChanged"
            )
        else:
            logger.info(
                f"Applied diff to {workspace_path.name} via {result.strategy}: "
                f"{', '.join(files_changed)}"
            )
        return result

    async def _run_strategy(
        self, strategy: str, workspace_path: Path, patch_path: Path
    ) -> CommandResult:
        if strategy == "git-3way":
            return await run_git(
                workspace_path,
                ["apply", "--3way", "--whitespace=fix", str(patch_path)],
                timeout=_PATCH_TIMEOUT_SECONDS,
            )
        if strategy == "git":
            return await run_git(
                workspace_path,
                ["apply", "--whitespace=fix", str(patch_path)],
                timeout=_PATCH_TIMEOUT_SECONDS,
            )
        return await run_command(
            [
                "patch",
                "-p1",
                "--forward",
                "--batch",
                "--no-backup-if-mismatch",
                "--reject-file=-",
                "-i",
                str(patch_path),
            ],
            cwd=workspace_path,
            timeout=_PATCH_TIMEOUT_SECONDS,
        )
