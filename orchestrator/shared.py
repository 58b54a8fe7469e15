"""Shared types, errors and validators used across the preview components."""

from __future__ import annotations

import re
from typing import Literal

PreviewStatus = Literal["starting", "running", "stopped"]

LIVE_STATES: set[str] = {"starting", "running"}

# Site ids double as DNS labels (preview subdomain) and directory names.
_SITE_ID_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


class PreviewError(Exception):
    """Base error for preview operations; ``status_code`` maps it onto HTTP."""

    status_code = 500


class InvalidRequestError(PreviewError):
    """Missing/invalid input or an operation requested in the wrong state."""

    status_code = 400


class WorkspaceError(PreviewError):
    """Clone, fetch, reset or dependency install failed."""


class DevServerError(PreviewError):
    """The dev server could not be launched or died during warm-up."""


class DeployError(PreviewError):
    """Commit or push of workspace changes failed."""


def normalize_site_id(site_id: str | None) -> str:
    """Validate a site identifier and return its canonical (lower-case) form.

    Raises:
        InvalidRequestError: If the id is empty or not a valid DNS label.
    """
    value = (site_id or "").strip().lower()
    if not value:
        raise InvalidRequestError("Missing siteId")
    if not _SITE_ID_PATTERN.match(value):
        raise InvalidRequestError(
            f"Invalid siteId '{site_id}': use lowercase letters, digits and hyphens"
        )
    return value
