"""Shared test fixtures for the preview orchestrator."""

from __future__ import annotations

import asyncio
import shlex
import socket
import subprocess
import sys
from pathlib import Path

import pytest

from orchestrator.config import Settings
from orchestrator.preview.service import PreviewService

APP_TSX = """export default function App() {
  return <h1>Hello</h1>;
}
"""

PACKAGE_JSON = """{
  "name": "site",
  "private": true
}
"""

APP_DIFF = """diff --git a/src/App.tsx b/src/App.tsx
--- a/src/App.tsx
+++ b/src/App.tsx
@@ -1,3 +1,3 @@
 export default function App() {
-  return <h1>Hello</h1>;
+  return <h1>Hello, preview</h1>;
 }
"""

PACKAGE_DIFF = """diff --git a/package.json b/package.json
--- a/package.json
+++ b/package.json
@@ -1,4 +1,5 @@
 {
   "name": "site",
+  "version": "1.0.0",
   "private": true
 }
"""

BROKEN_DIFF = """--- a/src/Missing.tsx
+++ b/src/Missing.tsx
@@ -1,3 +1,3 @@
 this line does not exist
-neither does this one
+but we try anyway
 nor this
"""

GIT_IDENTITY = ["-c", "user.name=Test User", "-c", "user.email=test@example.com"]


def git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *GIT_IDENTITY, *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


def http_server_command() -> str:
    return f"{shlex.quote(sys.executable)} -m http.server {{port}} --bind 127.0.0.1"


async def wait_for_status(service: PreviewService, site_id: str, status: str, timeout: float = 5.0) -> str:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    current = service.status(site_id).status
    while current != status and loop.time() < deadline:
        await asyncio.sleep(0.05)
        current = service.status(site_id).status
    return current


@pytest.fixture
def origin_repo(tmp_path: Path) -> Path:
    """Bare repository with a single commit on ``main``."""
    source = tmp_path / "source"
    (source / "src").mkdir(parents=True)
    git(source, "init")
    git(source, "symbolic-ref", "HEAD", "refs/heads/main")
    (source / "package.json").write_text(PACKAGE_JSON, encoding="utf-8")
    (source / "src" / "App.tsx").write_text(APP_TSX, encoding="utf-8")
    (source / "index.html").write_text("<h1>site</h1>\n", encoding="utf-8")
    (source / ".gitignore").write_text("node_modules/\n", encoding="utf-8")
    git(source, "add", "-A")
    git(source, "commit", "-m", "Initial commit")

    origin = tmp_path / "origin.git"
    git(tmp_path, "clone", "--bare", str(source), str(origin))
    return origin


@pytest.fixture
def origin_url(origin_repo: Path) -> str:
    return origin_repo.as_uri()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        workspaces_dir=str(tmp_path / "workspaces"),
        base_port=free_port(),
        dev_command=http_server_command(),
        install_command="mkdir node_modules",
        devserver_ready_timeout_seconds=10,
        devserver_probe_interval_seconds=0.05,
        upstream_host="127.0.0.1",
        preview_domain="preview.example.com",
        github_token="",
        git_timeout_seconds=30,
        install_timeout_seconds=30,
    )


@pytest.fixture
async def service(settings: Settings):
    preview_service = PreviewService(settings)
    yield preview_service
    await preview_service.shutdown()
