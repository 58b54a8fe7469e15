from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path

import httpx

from orchestrator.config import Settings
from orchestrator.core.logging import DEVSERVER_LOGGER_NAME, get_logger
from orchestrator.preview.registry import PreviewRecord, PreviewRegistry, utc_now
from orchestrator.shared import DevServerError

logger = get_logger(__name__)
devserver_logger = get_logger(DEVSERVER_LOGGER_NAME)


class ProcessSupervisor:
    """Starts, watches and terminates one dev server process per site."""

    def __init__(self, registry: PreviewRegistry, settings: Settings) -> None:
        self._registry = registry
        self._settings = settings
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _build_command(self, port: int) -> list[str]:
        return ["sh", "-c", self._settings.dev_command.format(port=port)]

    async def start_devserver(self, site_id: str, workspace_path: Path) -> tuple[PreviewRecord, list[str]]:
        """Launch the dev server for ``site_id`` on a freshly allocated port.

        The record is registered as ``starting`` right after spawn and moves
        to ``running`` once the port answers HTTP (or the probe budget runs
        out while the process is still alive, which is reported as a warning).

        Raises:
            DevServerError: If the process can not be spawned or exits
                before becoming ready.
        """
        port = self._registry.allocate_port()
        command = self._build_command(port)
        logger.info(f"Starting dev server for {site_id} on port {port}...")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workspace_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "PORT": str(port)},
                # Own process group so grandchildren (npm -> node) die with it
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            raise DevServerError(f"Failed to launch dev server: {exc}") from exc

        record = self._registry.put(
            PreviewRecord(
                site_id=site_id,
                port=port,
                workspace_path=workspace_path,
                status="starting",
                process=process,
                requested_at=utc_now(),
            )
        )

        if process.stdout is not None:
            self._spawn(self._pump_output(site_id, process.stdout, logging.INFO))
        if process.stderr is not None:
            self._spawn(self._pump_output(site_id, process.stderr, logging.WARNING))
        self._spawn(self._watch_exit(record, process))

        warnings: list[str] = []
        ready = await self._wait_devserver_ready(port, process)

        if record.process is process and process.returncode is not None:
            # The exit listener may not have run yet.
            record.mark_stopped(process.returncode)
        if record.process is not process:
            if record.exit_code is not None:
                raise DevServerError(
                    f"Dev server for {site_id} exited with code {record.exit_code} during startup"
                )
            # Explicitly stopped while warming up; do not resurrect it.
            warnings.append(f"Dev server for {site_id} was stopped during startup")
            return record, warnings

        if not ready:
            message = (
                f"Dev server on port {port} did not answer within "
                f"{self._settings.devserver_ready_timeout_seconds:g}s; it may still be starting"
            )
            logger.warning(f"[{site_id}] {message}")
            warnings.append(message)

        record.mark_running()
        record.touch()
        logger.info(f"Dev server for {site_id} is running on port {port} (pid {record.pid})")
        return record, warnings

    async def _wait_devserver_ready(
        self, port: int, process: asyncio.subprocess.Process
    ) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.devserver_ready_timeout_seconds
        probe_url = f"http://{self._settings.upstream_host}:{port}/"
        timeout = httpx.Timeout(connect=0.5, read=1.0, write=1.0, pool=0.5)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as client:
            while loop.time() < deadline:
                if process.returncode is not None:
                    return False
                try:
                    response = await client.get(probe_url)
                    if response.status_code < 500:
                        return True
                except httpx.HTTPError:
                    pass
                await asyncio.sleep(self._settings.devserver_probe_interval_seconds)
        return False

    async def _pump_output(
        self, site_id: str, stream: asyncio.StreamReader, level: int
    ) -> None:
        while True:
            try:
                line = await stream.readline()
            except (ValueError, asyncio.LimitOverrunError):
                # Over-long line without newline; drop what is buffered.
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                devserver_logger.log(level, f"[{site_id}] {text}")

    async def _watch_exit(
        self, record: PreviewRecord, process: asyncio.subprocess.Process
    ) -> None:
        returncode = await process.wait()
        if record.process is not process:
            return
        record.mark_stopped(returncode)
        logger.info(f"Dev server for {record.site_id} exited with code {returncode}")

    def stop_devserver(self, site_id: str) -> list[str]:
        """Signal the site's dev server and mark the record stopped.

        Signal failures are swallowed and reported as warnings; the record is
        marked stopped regardless, without waiting for the OS process to exit.
        """
        warnings: list[str] = []
        record = self._registry.get(site_id)
        if record is None:
            return warnings

        process = record.process
        if process is not None and process.returncode is None:
            try:
                os.killpg(os.getpgid(process.pid), signal.SIGTERM)
            except (ProcessLookupError, PermissionError, OSError):
                try:
                    process.terminate()
                except ProcessLookupError as exc:
                    warnings.append(f"Failed to signal dev server pid {process.pid}: {exc}")

        if record.is_live or process is not None:
            logger.info(f"Stopped dev server for {site_id}")
            record.mark_stopped()
        return warnings

    async def restart_devserver(
        self, site_id: str, workspace_path: Path
    ) -> tuple[PreviewRecord, list[str]]:
        logger.info(f"Restarting dev server for {site_id}...")
        warnings = self.stop_devserver(site_id)
        record, start_warnings = await self.start_devserver(site_id, workspace_path)
        return record, warnings + start_warnings

    async def shutdown(self) -> None:
        for record in self._registry.values():
            if record.process is not None:
                self.stop_devserver(record.site_id)
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task


