"""Agent orchestration: install every package of a track in order."""

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, Field

from pkgagent.errors import AgentError, kind_for
from pkgagent.models.config import AgentConfig
from pkgagent.models.status import StageEnum
from pkgagent.services.command import CommandDriver
from pkgagent.services.download import DownloadService
from pkgagent.services.install import PackageInstaller
from pkgagent.services.manifest import ManifestService
from pkgagent.services.state_manager import StateManager


class RunReport(BaseModel):
    """Outcome of a successful track run."""

    track: str = Field(..., description="Track that was installed")
    installed: list[str] = Field(default_factory=list, description="Package ids, in order")
    nothing_to_do: bool = Field(False, description="Track was absent or empty")


class InstallAgent:
    """Loads the manifest and installs a track strictly in listed order.

    The first failing package halts the run; later packages are not
    attempted and the error propagates after the installer's cleanup.
    """

    def __init__(
        self,
        manifest_service: ManifestService,
        installer: PackageInstaller,
        state_manager: Optional[StateManager] = None,
    ):
        self.logger = logging.getLogger("pkgagent.agent")
        self.manifest_service = manifest_service
        self.installer = installer
        self.state_manager = state_manager or StateManager()

    @classmethod
    def from_config(cls, config: AgentConfig, manifest_url: str) -> "InstallAgent":
        """Wire the default service graph for config."""
        state_manager = StateManager()
        download_service = DownloadService(config)
        installer = PackageInstaller(
            config=config,
            command_driver=CommandDriver(config),
            download_service=download_service,
            state_manager=state_manager,
        )
        return cls(
            manifest_service=ManifestService(manifest_url, download_service),
            installer=installer,
            state_manager=state_manager,
        )

    async def run(
        self,
        track: str,
        base_url: Optional[str] = None,
        target_volume: Optional[str] = None,
    ) -> RunReport:
        """Install all packages of track.

        Raises:
            AgentError: The first classified failure (manifest, download,
                mount or install)
            asyncio.CancelledError: If the run was cancelled
        """
        self.state_manager.begin_run(track)
        report = RunReport(track=track)

        try:
            await self.manifest_service.load()
            view = self.manifest_service.packages_for_track(track, base_url)
        except (Exception, asyncio.CancelledError) as e:
            self._record_failure(e, f"Could not load manifest for track {track}")
            raise

        if not view:
            self.logger.info(f"Nothing to do: track {track!r} lists no packages")
            report.nothing_to_do = True
            self.state_manager.update_status(
                stage=StageEnum.DONE, message=f"Nothing to do for track {track}"
            )
            return report

        total = len(view)
        self.state_manager.set_total(total)
        self.logger.info(f"Track {track!r}: {total} package(s): {view.package_ids}")

        for index, package in enumerate(view, start=1):
            self.logger.info(f"Package {index}/{total}: {package.package_id}")
            try:
                await self.installer.install(package, target_volume=target_volume)
            except (Exception, asyncio.CancelledError):
                skipped = view.package_ids[index:]
                if skipped:
                    self.logger.warning(f"Halting track {track!r}; not attempted: {skipped}")
                raise
            report.installed.append(package.package_id)
            self.state_manager.package_done()

        self.state_manager.update_status(
            stage=StageEnum.DONE,
            message=f"Installed {total} package(s) from track {track}",
        )
        self.logger.info(f"Track {track!r} complete: {report.installed}")
        return report

    def _record_failure(self, error: BaseException, message: str) -> None:
        kind = kind_for(error)
        detail = error.message if isinstance(error, AgentError) else str(error)
        self.logger.error(f"{message} ({kind.value}): {detail}")
        self.state_manager.update_status(
            stage=StageEnum.FAILED, message=message, error=f"{kind.value}: {detail}"
        )
