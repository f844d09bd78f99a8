"""
Self-update manager.

Asks the workspace service which components (ui, guard, engine) have a newer
version, then downloads, verifies, unpacks and applies each of them. The UI
bundle is copied over ``<engine_path>/wui``. Engine and guard updates are
handed to a supervisor script that swaps the binary and stops the process;
the external supervisor restarts it.
"""
from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
import zipfile
import zlib
from pathlib import Path
from typing import List, Optional, Tuple

import httpx
import structlog

from ..context import EngineContext
from ..errors import (
    FAILED_TO_APPLY_UPDATE,
    FAILED_TO_DOWNLOAD_UPDATE,
    ArchivePathError,
    EngineError,
    IntegrityError,
    UpdateError,
)
from ..schemas import UpdateCheckRequest, UpdateManifest
from .process_runner import ProcessLaunchError

logger = structlog.get_logger()

# engine last: its supervisor script stops this process
COMPONENTS = ("ui", "guard", "engine")
VERSION_KEYS = {
    "ui": "frontend.version",
    "engine": "engine.version",
    "guard": "guard.version",
}
SUPERVISOR_SCRIPTS = {
    "engine": "updateAndStopEngine.sh",
    "guard": "updateAndStopGuard.sh",
}
DEFAULT_WORKSPACE_TYPE = "base"
CHUNK_SIZE = 64 * 1024


def copy_and_replace(src: Path, dest: Path) -> None:
    """Copy the staged ``src`` tree over ``dest``.

    A directory ``dest`` receives every non-hidden entry of ``src``
    recursively. Otherwise ``dest`` is treated as a single file and ``src``
    must hold exactly one non-hidden file.
    """
    src = Path(src)
    dest = Path(dest)
    if dest.is_dir():
        for entry in sorted(src.iterdir()):
            if entry.name.startswith("."):
                continue
            target = dest / entry.name
            if entry.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                copy_and_replace(entry, target)
            else:
                shutil.copy2(entry, target)
        return

    files = [e for e in src.iterdir() if e.is_file() and not e.name.startswith(".")]
    if len(files) != 1:
        raise UpdateError(
            FAILED_TO_APPLY_UPDATE,
            f"Expected a single file in the update source directory {src}, found {len(files)}",
        )
    shutil.copy2(files[0], dest)


def validate_archive(archive: zipfile.ZipFile, dest: Path) -> None:
    """Raise ArchivePathError if any entry resolves outside ``dest``."""
    root = Path(dest).resolve()
    for name in archive.namelist():
        target = (root / name).resolve()
        if target != root and root not in target.parents:
            raise ArchivePathError(name)


def extract_archive(archive_path: Path, dest: Path) -> List[str]:
    """Validate every entry, then unpack ``archive_path`` into ``dest``."""
    dest = Path(dest)
    try:
        with zipfile.ZipFile(archive_path) as archive:
            validate_archive(archive, dest)
            dest.mkdir(parents=True, exist_ok=True)
            archive.extractall(dest)
            return archive.namelist()
    except zipfile.BadZipFile as e:
        raise UpdateError(FAILED_TO_APPLY_UPDATE, f"Invalid update archive: {e}") from e


class UpdateManager:
    """Checks for and applies component updates."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self.engine_path = Path(ctx.settings.engine_path)
        self.logger = logger.bind(component="update_manager")

    def staging_dir(self, kind: str) -> Path:
        return self.engine_path / "update" / kind

    def version_report(self) -> UpdateCheckRequest:
        """Current component versions as recorded in workspace.yml."""
        workspace = self.ctx.workspace
        return UpdateCheckRequest(
            engine_version=workspace.engine.version,
            guard_version=workspace.guard.version,
            ui_version=workspace.frontend.version,
            wsp_type=workspace.workspace.type or DEFAULT_WORKSPACE_TYPE,
        )

    def check_and_update(
        self,
        workspace_id: Optional[str] = None,
        report: Optional[UpdateCheckRequest] = None,
    ) -> List[str]:
        """Run one update cycle and return the components that were applied."""
        workspace_id = workspace_id or self.ctx.workspace.workspace.id
        report = report or self.version_report()
        try:
            manifest = self.ctx.workspace_service.check_update(workspace_id, report)
        except EngineError as e:
            self.logger.error("update_check_failed", error=e.message)
            return []

        applied = []
        for kind in COMPONENTS:
            if not getattr(manifest, f"{kind}_update_available"):
                continue
            url, version = self._target(manifest, kind)
            self.logger.info("update_available", kind=kind, version=version)
            try:
                self.download_and_apply_update(url, kind, version)
            except EngineError as e:
                self.logger.error("update_failed", kind=kind, code=e.code, error=e.message)
                continue
            applied.append(kind)
        return applied

    @staticmethod
    def _target(manifest: UpdateManifest, kind: str) -> Tuple[str, str]:
        return getattr(manifest, f"{kind}_download_url"), getattr(manifest, f"{kind}_version")

    def download_and_apply_update(self, url: str, kind: str, version: str) -> None:
        if kind not in VERSION_KEYS:
            raise UpdateError(FAILED_TO_APPLY_UPDATE, f"Unknown update kind: {kind}")

        fd, name = tempfile.mkstemp(prefix="update-", suffix=".zip")
        archive_path = Path(name)
        try:
            with os.fdopen(fd, "wb") as fh:
                written, crc = self.download(url, fh)
            self.logger.info("update_downloaded", url=url, size=written, crc32=f"{crc:08x}")

            names = extract_archive(archive_path, self.staging_dir(kind))
            self.logger.info("update_unpacked", kind=kind, entries=len(names))
            self.ctx.config_manager.update(VERSION_KEYS[kind], version)
            if kind == "ui":
                self.apply_ui_update()
            else:
                self.run_supervisor_script(kind)
        finally:
            archive_path.unlink(missing_ok=True)

    def download(self, url: str, fh) -> Tuple[int, int]:
        """Stream ``url`` into ``fh``; return (bytes written, CRC32).

        Raises IntegrityError when the byte count differs from Content-Length.
        """
        try:
            with self.ctx.http_client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise UpdateError(
                        FAILED_TO_DOWNLOAD_UPDATE,
                        f"Failed to download update from {url}: {response.status_code}",
                    )
                try:
                    expected = int(response.headers["Content-Length"])
                except (KeyError, ValueError) as e:
                    raise UpdateError(
                        FAILED_TO_DOWNLOAD_UPDATE, f"Failed to parse content length: {e}"
                    ) from e

                written = 0
                crc = 0
                for chunk in response.iter_raw(CHUNK_SIZE):
                    fh.write(chunk)
                    crc = zlib.crc32(chunk, crc)
                    written += len(chunk)
        except httpx.HTTPError as e:
            raise UpdateError(FAILED_TO_DOWNLOAD_UPDATE, f"Failed to download update: {e}") from e

        if written != expected:
            raise IntegrityError(expected, written)
        return written, crc

    def apply_ui_update(self) -> None:
        src = self.staging_dir("ui") / "build"
        dest = self.engine_path / "wui"
        self.logger.info("applying_ui_update", src=str(src), dest=str(dest))
        try:
            copy_and_replace(src, dest)
        except OSError as e:
            raise UpdateError(FAILED_TO_APPLY_UPDATE, f"Failed to apply UI update: {e}") from e

    def run_supervisor_script(self, kind: str) -> None:
        """Hand over to the supervisor script; it is expected to stop this process."""
        script = self.engine_path / SUPERVISOR_SCRIPTS[kind]
        self.logger.info("running_supervisor_script", kind=kind, script=str(script))
        try:
            exit_code = self.ctx.process_runner.run("/bin/bash", [str(script)], self.engine_path)
        except ProcessLaunchError as e:
            raise UpdateError(FAILED_TO_APPLY_UPDATE, e.message) from e
        if exit_code != 0:
            raise UpdateError(
                FAILED_TO_APPLY_UPDATE,
                f"Failed to trigger supervisor script {script.name}: exit status {exit_code}",
            )


class UpdateChecker:
    """Runs an update cycle every ``interval_seconds`` until stopped."""

    def __init__(self, manager: UpdateManager, interval_seconds: float):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.is_running = False
        self.cycles = 0
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        logger.info("update_checker_start", interval_seconds=self.interval_seconds)
        self.is_running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        logger.info("update_checker_stop")
        self.is_running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.info("update_checker_cancelled")
        self._task = None

    async def run_once(self) -> List[str]:
        applied = await asyncio.to_thread(self.manager.check_and_update)
        self.cycles += 1
        return applied

    async def _run(self) -> None:
        while self.is_running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as e:
                logger.error("update_cycle_error", error=str(e))
