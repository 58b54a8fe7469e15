from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from orchestrator.shared import PreviewStatus


class _CamelModel(BaseModel):
    """Accepts and emits camelCase field names (``siteId``, ``repoUrl``...)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _SiteRequest(_CamelModel):
    site_id: str = Field(min_length=1, description="Site identifier")


class StartPreviewRequest(_SiteRequest):
    repo_url: str = Field(min_length=1, description="Git URL of the site repository")
    branch: str = Field(default="main", description="Branch to check out")


class StartPreviewResponse(_CamelModel):
    ok: bool = Field(default=True)
    preview_url: str = Field(description="Public preview URL")
    status: PreviewStatus = Field(description="Preview lifecycle status")
    port: int = Field(description="Local dev server port")
    warnings: list[str] = Field(default_factory=list)


class ApplyDiffRequest(_SiteRequest):
    unified_diff: str = Field(min_length=1, description="Unified diff to apply")


class ApplyDiffResponse(_CamelModel):
    ok: bool = Field(default=True)
    files_changed: list[str] = Field(default_factory=list)
    needs_restart: bool = Field(default=False)
    strategy: str | None = Field(
        default=None, description="Strategy that applied the diff, if any"
    )
    warnings: list[str] = Field(default_factory=list)


class PreviewStatusRequest(_SiteRequest):
    pass


class PreviewStatusResponse(_CamelModel):
    ok: bool = Field(default=True)
    status: PreviewStatus | Literal["not_found"]
    preview_url: str | None = None
    port: int | None = None
    last_activity: datetime | None = None
    exit_code: int | None = None


class InstallRequest(_SiteRequest):
    packages: list[str] = Field(default_factory=list)
    preset: str | None = None


class InstallResponse(_CamelModel):
    ok: bool = Field(default=True)
    installed: list[str] = Field(default_factory=list)
    configs_created: list[str] = Field(default_factory=list)
    preset: str | None = None
    warnings: list[str] = Field(default_factory=list)


class StopPreviewRequest(_SiteRequest):
    pass


class StopPreviewResponse(_CamelModel):
    ok: bool = Field(default=True)
    status: Literal["stopped"] = "stopped"
    warnings: list[str] = Field(default_factory=list)


class DeployRequest(_SiteRequest):
    mode: Literal["pr", "merge"] = Field(default="pr")
    title: str | None = None
    body: str | None = None


class DeployResponse(_CamelModel):
    ok: bool = Field(default=True)
    mode: Literal["pr", "merge"]
    pr_url: str | None = None
    message: str | None = None
    branch: str | None = None
    warnings: list[str] = Field(default_factory=list)


class HealthResponse(_CamelModel):
    ok: bool = Field(default=True)
    active_previews: int = Field(
        description="Previews that are starting or running; stopped records stay in the registry but are not counted"
    )
