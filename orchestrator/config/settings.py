"""
Application settings loaded from environment variables.

Preview state itself is never persisted; everything here is infrastructure
configuration injected by the deployment (container env or a local .env file).
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Infrastructure settings loaded from environment variables.
    """

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3001, alias="PORT")

    # Debug mode
    debug_mode: bool = Field(default=False, alias="DEBUG_MODE")

    # -------------------------------------------------------------------------
    # Workspaces & dev servers
    # -------------------------------------------------------------------------

    workspaces_dir: str = Field(default="/workspaces", alias="WORKSPACES_DIR")
    base_port: int = Field(default=3100, alias="BASE_PORT")
    dev_command: str = Field(
        default="npm run dev -- --port {port}",
        alias="DEV_COMMAND",
        description="Dev server command; {port} is replaced with the assigned port",
    )
    install_command: str = Field(default="npm install", alias="INSTALL_COMMAND")
    dependency_marker: str = Field(default="node_modules", alias="DEPENDENCY_MARKER")
    install_timeout_seconds: int = Field(default=600, alias="INSTALL_TIMEOUT_SECONDS")
    git_timeout_seconds: int = Field(default=120, alias="GIT_TIMEOUT_SECONDS")
    devserver_ready_timeout_seconds: float = Field(
        default=60.0, alias="DEVSERVER_READY_TIMEOUT_SECONDS"
    )
    devserver_probe_interval_seconds: float = Field(
        default=0.25, alias="DEVSERVER_PROBE_INTERVAL_SECONDS"
    )

    # -------------------------------------------------------------------------
    # Preview routing
    # -------------------------------------------------------------------------

    preview_domain: str = Field(
        default="preview.automatelb.com", alias="PREVIEW_DOMAIN"
    )
    preview_url_scheme: str = Field(default="https", alias="PREVIEW_URL_SCHEME")
    # Comma-separated labels that are never treated as site ids
    reserved_subdomains: str = Field(
        default="www,orchestrator", alias="RESERVED_SUBDOMAINS"
    )
    upstream_host: str = Field(default="localhost", alias="UPSTREAM_HOST")

    # -------------------------------------------------------------------------
    # Source host (GitHub)
    # -------------------------------------------------------------------------

    github_token: str = Field(default="", alias="GITHUB_TOKEN")
    github_api_url: str = Field(default="https://api.github.com", alias="GITHUB_API_URL")
    trunk_branch: str = Field(default="main", alias="TRUNK_BRANCH")
    git_author_name: str = Field(default="AI Editor", alias="GIT_AUTHOR_NAME")
    git_author_email: str = Field(
        default="ai-editor@users.noreply.github.com", alias="GIT_AUTHOR_EMAIL"
    )

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    @property
    def reserved_subdomain_set(self) -> set[str]:
        return {
            label.strip().lower()
            for label in self.reserved_subdomains.split(",")
            if label.strip()
        }


settings = Settings()
