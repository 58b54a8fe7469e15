"""End-to-end tests of the HTTP API against real git repos and dev servers."""

from __future__ import annotations

import asyncio
import os
import signal
from datetime import timedelta

import httpx
import pytest

from orchestrator.config import Settings
from orchestrator.preview.api import create_app
from orchestrator.preview.service import PreviewService

from .conftest import APP_DIFF, BROKEN_DIFF, PACKAGE_DIFF, git, wait_for_status

BROKEN_PACKAGE_DIFF = """--- a/package.json
+++ b/package.json
@@ -1,3 +1,3 @@
 {
-  "name": "not-this-site",
+  "name": "renamed",
   "private": true
"""


@pytest.fixture
async def client(service: PreviewService):
    app = create_app(service)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as http_client:
        yield http_client


async def _start(client: httpx.AsyncClient, origin_url: str, site_id: str = "alpha") -> dict:
    response = await client.post(
        "/preview/start", json={"siteId": site_id, "repoUrl": origin_url}
    )
    assert response.status_code == 200, response.text
    return response.json()


async def _status(client: httpx.AsyncClient, site_id: str = "alpha") -> dict:
    response = await client.post("/preview/status", json={"siteId": site_id})
    assert response.status_code == 200
    return response.json()


@pytest.mark.parametrize(
    ("path", "payload", "fragment"),
    [
        ("/preview/start", {"siteId": "alpha"}, "repoUrl"),
        ("/preview/start", {"repoUrl": "x"}, "siteId"),
        ("/preview/start", {"siteId": "Not A Site!", "repoUrl": "x"}, "Invalid siteId"),
        ("/preview/apply", {"siteId": "alpha"}, "unifiedDiff"),
        ("/preview/status", {}, "siteId"),
        ("/preview/stop", {"siteId": ""}, "siteId"),
        ("/preview/deploy", {"siteId": "alpha", "mode": "squash"}, "mode"),
    ],
)
async def test_invalid_requests_return_400(client: httpx.AsyncClient, path, payload, fragment):
    response = await client.post(path, json=payload)

    assert response.status_code == 400
    assert fragment in response.json()["error"]


async def test_health_reports_no_previews(client: httpx.AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "activePreviews": 0}


async def test_status_of_unknown_site(client: httpx.AsyncClient):
    body = await _status(client, "ghost")

    assert body["status"] == "not_found"
    assert body["previewUrl"] is None


async def test_preview_lifecycle(client: httpx.AsyncClient, service: PreviewService, origin_url: str):
    started = await _start(client, origin_url)

    assert started == {
        "ok": True,
        "previewUrl": "https://alpha.preview.example.com",
        "status": "running",
        "port": service.settings.base_port,
        "warnings": [],
    }

    # Idempotent while running
    again = await _start(client, origin_url)
    assert again["port"] == started["port"]

    status = await _status(client)
    assert status["status"] == "running"
    assert status["port"] == started["port"]
    assert status["previewUrl"] == "https://alpha.preview.example.com"
    assert status["lastActivity"] is not None

    applied = await client.post(
        "/preview/apply", json={"siteId": "alpha", "unifiedDiff": APP_DIFF}
    )
    assert applied.status_code == 200
    assert applied.json()["filesChanged"] == ["src/App.tsx"]
    assert applied.json()["needsRestart"] is False
    assert (await _status(client))["port"] == started["port"]

    broken = await client.post(
        "/preview/apply", json={"siteId": "alpha", "unifiedDiff": BROKEN_DIFF}
    )
    assert broken.status_code == 200
    assert broken.json()["ok"] is True
    assert broken.json()["filesChanged"] == ["src/Missing.tsx"]
    assert broken.json()["warnings"]

    restarted = await client.post(
        "/preview/apply", json={"siteId": "alpha", "unifiedDiff": PACKAGE_DIFF}
    )
    assert restarted.json()["needsRestart"] is True
    new_port = (await _status(client))["port"]
    assert new_port == started["port"] + 1

    health = (await client.get("/health")).json()
    assert health["activePreviews"] == 1

    stopped = await client.post("/preview/stop", json={"siteId": "alpha"})
    assert stopped.json() == {"ok": True, "status": "stopped", "warnings": []}

    status = await _status(client)
    assert status["status"] == "stopped"
    assert status["previewUrl"] is None
    assert (await client.get("/health")).json()["activePreviews"] == 0

    after_stop = await client.post(
        "/preview/apply", json={"siteId": "alpha", "unifiedDiff": APP_DIFF}
    )
    assert after_stop.status_code == 400
    assert after_stop.json() == {"error": "Preview not running. Call /preview/start first."}


async def test_restart_after_stop_refreshes_workspace(
    client: httpx.AsyncClient, service: PreviewService, origin_url: str
):
    first = await _start(client, origin_url)
    await client.post("/preview/apply", json={"siteId": "alpha", "unifiedDiff": APP_DIFF})
    await client.post("/preview/stop", json={"siteId": "alpha"})

    second = await _start(client, origin_url)

    assert second["port"] == first["port"] + 1
    workspace = service.workspaces.workspace_path("alpha")
    assert "Hello, preview" not in (workspace / "src" / "App.tsx").read_text()


async def test_apply_before_start_is_rejected(client: httpx.AsyncClient):
    response = await client.post(
        "/preview/apply", json={"siteId": "alpha", "unifiedDiff": APP_DIFF}
    )

    assert response.status_code == 400


async def test_stop_of_unknown_site_succeeds(client: httpx.AsyncClient):
    response = await client.post("/preview/stop", json={"siteId": "ghost"})

    assert response.status_code == 200
    assert response.json()["status"] == "stopped"


async def test_ports_are_never_reused(client: httpx.AsyncClient, service: PreviewService, origin_url: str):
    base = service.settings.base_port
    ports = [(await _start(client, origin_url, site))["port"] for site in ("one", "two")]
    await client.post("/preview/stop", json={"siteId": "one"})
    ports.append((await _start(client, origin_url, "three"))["port"])

    assert ports == [base, base + 1, base + 2]


async def test_concurrent_starts_share_one_dev_server(
    client: httpx.AsyncClient, service: PreviewService, origin_url: str
):
    first, second = await asyncio.gather(
        _start(client, origin_url), _start(client, origin_url)
    )

    assert first["port"] == second["port"] == service.settings.base_port
    assert service.registry.active_count() == 1


async def test_dev_server_exit_is_reflected_in_status(
    client: httpx.AsyncClient, service: PreviewService, origin_url: str
):
    await _start(client, origin_url)
    record = service.registry.get("alpha")

    os.killpg(os.getpgid(record.pid), signal.SIGTERM)

    assert await wait_for_status(service, "alpha", "stopped") == "stopped"
    body = await _status(client)
    assert body["exitCode"] is not None
    assert body["previewUrl"] is None


async def test_start_with_bad_repo_returns_500(client: httpx.AsyncClient, tmp_path):
    response = await client.post(
        "/preview/start",
        json={"siteId": "alpha", "repoUrl": (tmp_path / "missing.git").as_uri()},
    )

    assert response.status_code == 500
    assert "clone" in response.json()["error"]


async def test_install_requires_packages_or_preset(client: httpx.AsyncClient):
    response = await client.post("/preview/install", json={"siteId": "alpha"})

    assert response.status_code == 400


async def test_install_rejects_unknown_preset(client: httpx.AsyncClient):
    response = await client.post(
        "/preview/install", json={"siteId": "alpha", "preset": "jquery"}
    )

    assert response.status_code == 400
    assert "tailwind" in response.json()["error"]


async def test_install_before_start_is_rejected(client: httpx.AsyncClient):
    response = await client.post(
        "/preview/install", json={"siteId": "alpha", "packages": ["zod"]}
    )

    assert response.status_code == 400


async def test_install_preset_writes_configs_and_restarts(settings: Settings, origin_url: str):
    service = PreviewService(settings.model_copy(update={"install_command": "true"}))
    app = create_app(service)
    try:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://testserver"
        ) as client:
            started = await _start(client, origin_url)
            response = await client.post(
                "/preview/install",
                json={"siteId": "alpha", "preset": "tailwind", "packages": ["clsx"]},
            )

            assert response.status_code == 200, response.text
            body = response.json()
            assert body["preset"] == "tailwind"
            assert body["installed"] == ["tailwindcss@3", "postcss", "autoprefixer", "clsx"]
            assert body["configsCreated"] == ["tailwind.config.js", "postcss.config.js"]
            workspace = service.workspaces.workspace_path("alpha")
            assert (workspace / "tailwind.config.js").exists()
            assert (await _status(client))["port"] == started["port"] + 1
    finally:
        await service.shutdown()


async def test_deploy_merge_through_api(client: httpx.AsyncClient, origin_repo, origin_url: str):
    await _start(client, origin_url)
    await client.post("/preview/apply", json={"siteId": "alpha", "unifiedDiff": APP_DIFF})

    response = await client.post(
        "/preview/deploy", json={"siteId": "alpha", "mode": "merge", "title": "Greeting"}
    )

    assert response.status_code == 200
    assert response.json()["mode"] == "merge"
    assert git(origin_repo, "log", "-1", "--format=%s", "main") == "Greeting"


async def test_deploy_without_workspace_is_rejected(client: httpx.AsyncClient):
    response = await client.post("/preview/deploy", json={"siteId": "alpha"})

    assert response.status_code == 400


async def test_repeated_start_and_apply_refresh_activity(
    client: httpx.AsyncClient, service: PreviewService, origin_url: str
):
    started = await _start(client, origin_url)
    record = service.registry.get("alpha")
    pid = record.pid

    record.last_activity -= timedelta(hours=1)
    stale = record.last_activity
    again = await _start(client, origin_url)

    assert again["port"] == started["port"]
    assert service.registry.get("alpha") is record
    assert record.pid == pid
    assert record.last_activity > stale

    record.last_activity -= timedelta(hours=1)
    stale = record.last_activity
    await client.post("/preview/apply", json={"siteId": "alpha", "unifiedDiff": APP_DIFF})

    assert record.last_activity > stale
    assert record.pid == pid


async def test_failed_config_diff_does_not_restart(
    client: httpx.AsyncClient, service: PreviewService, origin_url: str
):
    started = await _start(client, origin_url)
    pid = service.registry.get("alpha").pid

    response = await client.post(
        "/preview/apply", json={"siteId": "alpha", "unifiedDiff": BROKEN_PACKAGE_DIFF}
    )

    body = response.json()
    assert response.status_code == 200
    assert body["strategy"] is None
    assert body["filesChanged"] == ["package.json"]
    assert body["warnings"]
    record = service.registry.get("alpha")
    assert record.port == started["port"]
    assert record.pid == pid
