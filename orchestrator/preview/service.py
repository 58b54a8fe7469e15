from __future__ import annotations

from functools import lru_cache

from orchestrator.config import Settings, settings as default_settings
from orchestrator.core.logging import get_logger
from orchestrator.preview.deploy import DeployService
from orchestrator.preview.models import (
    ApplyDiffResponse,
    DeployResponse,
    HealthResponse,
    InstallResponse,
    PreviewStatusResponse,
    StartPreviewResponse,
    StopPreviewResponse,
)
from orchestrator.preview.patching import PatchApplier
from orchestrator.preview.presets import PRESETS, get_preset
from orchestrator.preview.registry import PreviewRecord, PreviewRegistry
from orchestrator.preview.supervisor import ProcessSupervisor
from orchestrator.preview.workspace import WorkspaceManager
from orchestrator.shared import InvalidRequestError, normalize_site_id

logger = get_logger(__name__)


class PreviewService:
    """Context object owning the registry and every preview component.

    ``start``, ``apply``, ``install`` and ``deploy`` hold the site's lock for
    their whole duration so operations on one site never interleave on its
    workspace; different sites proceed independently.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings
        self.registry = PreviewRegistry(base_port=self.settings.base_port)
        self.workspaces = WorkspaceManager(self.settings)
        self.supervisor = ProcessSupervisor(self.registry, self.settings)
        self.patcher = PatchApplier()
        self.deployer = DeployService(self.settings)

    def preview_url(self, site_id: str) -> str:
        return f"{self.settings.preview_url_scheme}://{site_id}.{self.settings.preview_domain}"

    def _require_running(self, site_id: str) -> PreviewRecord:
        record = self.registry.get(site_id)
        if record is None or record.status != "running":
            raise InvalidRequestError("Preview not running. Call /preview/start first.")
        return record

    async def start(
        self, site_id: str, repo_url: str, branch: str = "main"
    ) -> StartPreviewResponse:
        site_id = normalize_site_id(site_id)
        if not (repo_url or "").strip():
            raise InvalidRequestError("Missing repoUrl")

        async with self.registry.lock(site_id):
            existing = self.registry.get(site_id)
            if existing is not None and existing.status == "running":
                existing.touch()
                return StartPreviewResponse(
                    preview_url=self.preview_url(site_id),
                    status=existing.status,
                    port=existing.port,
                )

            workspace = await self.workspaces.ensure_workspace(
                site_id, repo_url.strip(), branch
            )
            record, warnings = await self.supervisor.start_devserver(site_id, workspace)
            return StartPreviewResponse(
                preview_url=self.preview_url(site_id),
                status=record.status,
                port=record.port,
                warnings=warnings,
            )

    async def apply(self, site_id: str, unified_diff: str) -> ApplyDiffResponse:
        site_id = normalize_site_id(site_id)
        if not (unified_diff or "").strip():
            raise InvalidRequestError("Missing unifiedDiff")

        async with self.registry.lock(site_id):
            record = self._require_running(site_id)
            result = await self.patcher.apply_diff(record.workspace_path, unified_diff)
            record.touch()
            warnings = list(result.warnings)

            # Nothing is written when every strategy fails.
            if result.needs_restart and result.strategy is not None:
                logger.info(f"Restarting dev server for {site_id} due to config changes...")
                _, restart_warnings = await self.supervisor.restart_devserver(
                    site_id, record.workspace_path
                )
                warnings.extend(restart_warnings)

            return ApplyDiffResponse(
                files_changed=result.files_changed,
                needs_restart=result.needs_restart,
                strategy=result.strategy,
                warnings=warnings,
            )

    def status(self, site_id: str) -> PreviewStatusResponse:
        site_id = normalize_site_id(site_id)
        record = self.registry.get(site_id)
        if record is None:
            return PreviewStatusResponse(status="not_found", preview_url=None)
        return PreviewStatusResponse(
            status=record.status,
            preview_url=self.preview_url(site_id) if record.is_live else None,
            port=record.port,
            last_activity=record.last_activity,
            exit_code=record.exit_code,
        )

    async def install(
        self,
        site_id: str,
        packages: list[str] | None = None,
        preset_name: str | None = None,
    ) -> InstallResponse:
        site_id = normalize_site_id(site_id)
        packages = [package for package in (packages or []) if package.strip()]
        preset = None
        if preset_name:
            preset = get_preset(preset_name)
            if preset is None:
                available = ", ".join(sorted(PRESETS))
                raise InvalidRequestError(
                    f"Unknown preset '{preset_name}'. Available presets: {available}"
                )
        if not packages and preset is None:
            raise InvalidRequestError("Provide packages or a preset to install")

        async with self.registry.lock(site_id):
            record = self.registry.get(site_id)
            if record is None or not self.workspaces.has_workspace(site_id):
                raise InvalidRequestError("Preview not found. Call /preview/start first.")
            workspace = record.workspace_path

            installed: list[str] = []
            configs_created: list[str] = []
            if preset is not None:
                installed += await self.workspaces.install_packages(
                    workspace, list(preset.dependencies)
                )
                installed += await self.workspaces.install_packages(
                    workspace, list(preset.dev_dependencies), dev=True
                )
                configs_created = await self.workspaces.write_config_files(
                    workspace, preset.config_files
                )
            installed += await self.workspaces.install_packages(workspace, packages)
            record.touch()

            _, warnings = await self.supervisor.restart_devserver(site_id, workspace)
            return InstallResponse(
                installed=installed,
                configs_created=configs_created,
                preset=preset.name if preset else None,
                warnings=warnings,
            )

    def stop(self, site_id: str) -> StopPreviewResponse:
        site_id = normalize_site_id(site_id)
        warnings = self.supervisor.stop_devserver(site_id)
        return StopPreviewResponse(warnings=warnings)

    async def deploy(
        self,
        site_id: str,
        mode: str = "pr",
        title: str | None = None,
        body: str | None = None,
    ) -> DeployResponse:
        site_id = normalize_site_id(site_id)
        if mode not in ("pr", "merge"):
            raise InvalidRequestError(f"Invalid mode '{mode}': use 'pr' or 'merge'")

        async with self.registry.lock(site_id):
            if not self.workspaces.has_workspace(site_id):
                raise InvalidRequestError("Workspace not found. Call /preview/start first.")
            result = await self.deployer.deploy(
                self.workspaces.workspace_path(site_id), mode, title, body
            )
            self.registry.touch(site_id)
            return DeployResponse(
                mode=result.mode,
                pr_url=result.pr_url,
                message=result.message,
                branch=result.branch,
                warnings=result.warnings,
            )

    def health(self) -> HealthResponse:
        return HealthResponse(active_previews=self.registry.active_count())

    async def shutdown(self) -> None:
        await self.supervisor.shutdown()


@lru_cache(maxsize=1)
def get_preview_service() -> PreviewService:
    return PreviewService()
