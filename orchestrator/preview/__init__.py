"""Preview lifecycle: workspaces, dev servers, patches, proxying and deploys."""

from orchestrator.preview.api import create_app
from orchestrator.preview.service import PreviewService, get_preview_service

__all__ = ["create_app", "PreviewService", "get_preview_service"]
