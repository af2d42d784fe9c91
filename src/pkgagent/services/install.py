"""Package installer: fetch, mount, install and clean up one disk image."""

import asyncio
import logging
import os
import plistlib
import re
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Optional
from xml.parsers.expat import ExpatError

from pkgagent.errors import AgentError, InstallError, MountAmbiguousError, MountError, kind_for
from pkgagent.models.command import CommandInvocation, CommandResult
from pkgagent.models.config import AgentConfig
from pkgagent.models.job import InstallJob
from pkgagent.models.manifest import ResolvedPackage
from pkgagent.models.status import StageEnum
from pkgagent.services.command import CommandDriver
from pkgagent.services.download import DownloadResult, DownloadService
from pkgagent.services.state_manager import StateManager

# Payload selection: the first match by sorted file name at the image root.
PAYLOAD_SUFFIXES = (".pkg", ".mpkg")
NO_RECEIPT_MARKER = "no receipt for"
# Last tab-separated column of a plain-text hdiutil attach line
TABLE_MOUNT_POINT = re.compile(r"\t(/Volumes/[^\t\r\n]*[^\s])[ \t]*$", re.MULTILINE)


def _tail(output: str, lines: int = 5) -> str:
    return " | ".join(output.strip().splitlines()[-lines:])


class PackageInstaller:
    """Installs one manifest entry end to end.

    Stages per job: init → fetched → mounted → installed → done. Each stage
    registers its cleanup on an AsyncExitStack, so on success or failure the
    image is detached before the scratch file is discarded. Cleanup failures
    are logged and never replace the original error.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        command_driver: Optional[CommandDriver] = None,
        download_service: Optional[DownloadService] = None,
        state_manager: Optional[StateManager] = None,
    ):
        """Initialize package installer.

        Args:
            config: Agent configuration (defaults if None)
            command_driver: CommandDriver for hdiutil/pkgutil/installer
            download_service: DownloadService for the disk image
            state_manager: StateManager instance (uses singleton if None)
        """
        self.logger = logging.getLogger("pkgagent.install")
        self.config = config or AgentConfig()
        self.command_driver = command_driver or CommandDriver(self.config)
        self.download_service = download_service or DownloadService(self.config)
        self.state_manager = state_manager or StateManager()

    async def install(
        self,
        package: ResolvedPackage,
        target_volume: Optional[str] = None,
        receipt_name: Optional[str] = None,
    ) -> InstallJob:
        """Download, verify, mount and install one package.

        Args:
            package: Resolved manifest entry
            target_volume: Install target (config default if None)
            receipt_name: Receipt to forget (package id if None)

        Returns:
            The completed InstallJob

        Raises:
            DownloadError: Download failed after retries (no mount attempted)
            MountError: Image could not be attached
            MountAmbiguousError: Attach did not yield exactly one mount point
            InstallError: No payload, forget failed, or installer failed
        """
        job = InstallJob(
            package=package,
            target_volume=target_volume or self.config.target_volume,
            receipt_name=receipt_name or package.package_id,
        )
        self.logger.info(f"Installing {job.package_id} from {package.url} to {job.target_volume}")
        self._update(job, StageEnum.INIT, f"Downloading {job.package_id}")

        try:
            async with AsyncExitStack() as cleanup:
                download = await self.download_service.fetch(
                    package.url,
                    package.sha256,
                    timeout=self.config.download_timeout_seconds,
                    max_attempts=self.config.download_attempts_max,
                )
                cleanup.callback(self._discard, download)
                self._update(job, StageEnum.FETCHED, f"Downloaded {job.package_id}")

                await self._mount_and_install(job, download.path, cleanup)
        except (Exception, asyncio.CancelledError) as e:
            self._fail(job, e)
            raise

        self._update(job, StageEnum.DONE, f"Installed {job.package_id}")
        self.logger.info(f"Installed {job.package_id}")
        return job

    async def install_from_path(
        self,
        package_path: Path,
        receipt_name: str,
        target_volume: Optional[str] = None,
    ) -> InstallJob:
        """Install from a disk image already on local storage.

        The image is mounted, installed and detached but not deleted; it
        belongs to the caller.
        """
        package_path = Path(package_path).resolve()
        job = InstallJob(
            package=ResolvedPackage(
                package_id=receipt_name, url=package_path.as_uri(), sha256=""
            ),
            target_volume=target_volume or self.config.target_volume,
            receipt_name=receipt_name,
        )
        self.logger.info(f"Installing {receipt_name} from local image {package_path}")
        self._update(job, StageEnum.FETCHED, f"Using local image for {receipt_name}")

        try:
            async with AsyncExitStack() as cleanup:
                await self._mount_and_install(job, package_path, cleanup)
        except (Exception, asyncio.CancelledError) as e:
            self._fail(job, e)
            raise

        self._update(job, StageEnum.DONE, f"Installed {receipt_name}")
        return job

    async def _mount_and_install(
        self, job: InstallJob, image_path: Path, cleanup: AsyncExitStack
    ) -> None:
        mount_point = await self._attach(image_path, cleanup)
        self._update(job, StageEnum.MOUNTED, f"Mounted {job.package_id} at {mount_point}")

        payload = self._find_payload(mount_point)
        await self._forget_receipt(job.receipt_name)
        await self._run_installer(payload, job.target_volume)
        self._update(job, StageEnum.INSTALLED, f"Installer finished for {job.package_id}")

    async def _attach(self, image_path: Path, cleanup: AsyncExitStack) -> str:
        """Attach the image; register a detach for every mount point seen."""
        result = await self._run(
            self.config.hdiutil_path,
            "attach", str(image_path),
            "-nobrowse", "-noverify", "-noautoopen", "-readonly", "-plist",
        )
        if not result.succeeded:
            raise MountError(f"hdiutil attach {image_path.name} failed: {_tail(result.output)}")

        try:
            mount_points = self._parse_mount_points(result.output)
        except MountError:
            stray = self._scan_mount_points(result.output)
            if stray:
                self.logger.error(f"Unparsable attach output for {image_path.name}; detaching {stray}")
            else:
                self.logger.error(
                    f"Unparsable attach output for {image_path.name} names no mount point; "
                    f"the image may remain attached"
                )
            for mount_point in stray:
                cleanup.push_async_callback(self._detach, mount_point)
            raise

        for mount_point in mount_points:
            cleanup.push_async_callback(self._detach, mount_point)

        if len(mount_points) != 1:
            raise MountAmbiguousError(
                f"expected one mount point for {image_path.name}, got {mount_points}"
            )
        return mount_points[0]

    def _parse_mount_points(self, output: str) -> list[str]:
        start = output.find("<?xml")
        end = output.rfind("</plist>")
        if start < 0 or end < start:
            raise MountError(f"hdiutil attach output is not a plist: {_tail(output)}")
        try:
            plist = plistlib.loads(output[start:end + len("</plist>")].encode("utf-8"))
        except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
            raise MountError(f"cannot parse hdiutil attach output: {e}")

        entities = plist.get("system-entities", []) if isinstance(plist, dict) else []
        return [e["mount-point"] for e in entities if isinstance(e, dict) and e.get("mount-point")]

    @staticmethod
    def _scan_mount_points(output: str) -> list[str]:
        """Mount points named in plain-text (tab-separated) attach output."""
        return [m.group(1) for m in TABLE_MOUNT_POINT.finditer(output)]

    def _find_payload(self, mount_point: str) -> Path:
        try:
            names = sorted(os.listdir(mount_point))
        except OSError as e:
            raise InstallError(f"cannot list mounted image {mount_point}: {e}")

        payloads = [n for n in names if n.lower().endswith(PAYLOAD_SUFFIXES)]
        if not payloads:
            raise InstallError(f"no installable payload at root of {mount_point}")
        if len(payloads) > 1:
            self.logger.warning(f"Multiple payloads in {mount_point}: {payloads}, using {payloads[0]}")
        return Path(mount_point) / payloads[0]

    async def _forget_receipt(self, receipt_name: str) -> None:
        """Forget any prior receipt; a missing receipt is not an error."""
        result = await self._run(self.config.pkgutil_path, "--forget", receipt_name)
        if result.succeeded:
            self.logger.info(f"Forgot prior receipt {receipt_name}")
        elif not result.timed_out and NO_RECEIPT_MARKER in result.output.lower():
            self.logger.info(f"No prior receipt for {receipt_name}")
        else:
            raise InstallError(f"pkgutil --forget {receipt_name} failed: {_tail(result.output)}")

    async def _run_installer(self, payload: Path, target_volume: str) -> None:
        result = await self._run(
            self.config.installer_path,
            "-pkg", str(payload),
            "-target", target_volume,
            timeout=self.config.install_timeout_seconds,
        )
        if result.timed_out:
            raise InstallError(
                f"installer timed out after {self.config.install_timeout_seconds:g}s for {payload.name}"
            )
        if not result.succeeded:
            raise InstallError(
                f"installer exited {result.status} for {payload.name}: {_tail(result.output)}"
            )
        self.logger.info(f"installer succeeded for {payload.name}")

    async def _detach(self, mount_point: str) -> None:
        """Best-effort detach, retried once with -force."""
        result = await self._run(self.config.hdiutil_path, "detach", mount_point)
        if result.succeeded:
            self.logger.info(f"Detached {mount_point}")
            return

        self.logger.warning(f"hdiutil detach {mount_point} failed, forcing: {_tail(result.output)}")
        result = await self._run(self.config.hdiutil_path, "detach", mount_point, "-force")
        if result.succeeded:
            self.logger.info(f"Force-detached {mount_point}")
        else:
            self.logger.error(f"Could not detach {mount_point}: {_tail(result.output)}")

    def _discard(self, download: DownloadResult) -> None:
        download.discard()
        self.logger.debug(f"Removed scratch file {download.path}")

    async def _run(self, launch_path: str, *arguments: str, timeout: Optional[float] = None) -> CommandResult:
        invocation = CommandInvocation(
            launch_path=launch_path,
            arguments=arguments,
            timeout=self.config.command_timeout_seconds if timeout is None else timeout,
        )
        return await self.command_driver.run(invocation)

    def _update(self, job: InstallJob, stage: StageEnum, message: str) -> None:
        self.logger.debug(f"{job.package_id}: {stage.value}")
        self.state_manager.update_status(stage=stage, message=message, package_id=job.package_id)

    def _fail(self, job: InstallJob, error: BaseException) -> None:
        kind = kind_for(error)
        detail = error.message if isinstance(error, AgentError) else (str(error) or type(error).__name__)
        if isinstance(error, asyncio.CancelledError):
            self.logger.warning(f"Install of {job.package_id} cancelled")
        else:
            self.logger.error(f"Install of {job.package_id} failed ({kind.value}): {error}")
        self.state_manager.update_status(
            stage=StageEnum.FAILED,
            message=f"Failed to install {job.package_id}",
            package_id=job.package_id,
            error=f"{kind.value}: {detail}",
        )
