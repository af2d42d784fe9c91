"""Unit tests for PackageInstaller."""

import asyncio
import plistlib
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from pkgagent.errors import (
    DownloadIntegrityError,
    InstallError,
    MountAmbiguousError,
    MountError,
)
from pkgagent.models.command import CommandResult
from pkgagent.models.manifest import ResolvedPackage
from pkgagent.models.status import StageEnum
from pkgagent.services.download import DownloadResult
from pkgagent.services.install import PackageInstaller
from pkgagent.services.state_manager import StateManager

PACKAGE = ResolvedPackage(
    package_id="com.ex.app", url="https://h/pkg.dmg", sha256="ab" * 32
)


def attach_output(*mount_points: str) -> str:
    """hdiutil attach -plist output for the given mount points."""
    entities = [{"content-hint": "GUID_partition_scheme", "dev-entry": "/dev/disk4"}]
    entities += [
        {"dev-entry": f"/dev/disk4s{i}", "mount-point": mp}
        for i, mp in enumerate(mount_points, start=1)
    ]
    return plistlib.dumps({"system-entities": entities}).decode("utf-8")


class FakeCommandDriver:
    """Records invocations and answers by (tool name, first argument)."""

    def __init__(self, responses=None):
        self.calls = []
        self.responses = responses or {}

    async def run(self, invocation):
        self.calls.append(invocation)
        key = (Path(invocation.launch_path).name, invocation.arguments[0])
        response = self.responses.get(key, CommandResult(status=0))
        if callable(response):
            return await response(invocation)
        return response

    def tools(self):
        return [(Path(c.launch_path).name, c.arguments[0]) for c in self.calls]


@pytest.mark.unit
class TestPackageInstaller:
    """Test PackageInstaller with fake commands and downloads."""

    @pytest.fixture
    def mount_point(self, tmp_path):
        volume = tmp_path / "Volumes" / "X"
        volume.mkdir(parents=True)
        (volume / "app.pkg").write_bytes(b"payload")
        (volume / "README.txt").write_text("read me")
        return volume

    @pytest.fixture
    def download(self, scratch_root):
        scratch = scratch_root / "pkgagent-dl.test"
        scratch.mkdir()
        path = scratch / "pkg.dmg"
        path.write_bytes(b"image")
        return DownloadResult(path=path, url=PACKAGE.url, sha256=PACKAGE.sha256, attempts=1)

    @pytest.fixture
    def mock_download_service(self, download):
        service = MagicMock()
        service.fetch = AsyncMock(return_value=download)
        return service

    @pytest.fixture
    def driver(self, mount_point):
        return FakeCommandDriver({
            ("hdiutil", "attach"): CommandResult(status=0, output=attach_output(str(mount_point))),
        })

    @pytest.fixture
    def installer(self, config, driver, mock_download_service):
        return PackageInstaller(
            config=config,
            command_driver=driver,
            download_service=mock_download_service,
            state_manager=StateManager(),
        )

    @pytest.mark.asyncio
    async def test_happy_path(self, installer, driver, download, mount_point, mock_download_service, config):
        # Act
        job = await installer.install(PACKAGE)

        # Assert
        assert job.package_id == "com.ex.app"
        assert job.target_volume == "/"
        mock_download_service.fetch.assert_awaited_once_with(
            PACKAGE.url,
            PACKAGE.sha256,
            timeout=config.download_timeout_seconds,
            max_attempts=config.download_attempts_max,
        )
        assert driver.tools() == [
            ("hdiutil", "attach"),
            ("pkgutil", "--forget"),
            ("installer", "-pkg"),
            ("hdiutil", "detach"),
        ]
        attach, forget, install, detach = driver.calls
        assert attach.arguments[1] == str(download.path)
        assert "-nobrowse" in attach.arguments and "-noverify" in attach.arguments
        assert forget.arguments == ("--forget", "com.ex.app")
        assert install.arguments == ("-pkg", str(mount_point / "app.pkg"), "-target", "/")
        assert install.timeout == config.install_timeout_seconds
        assert detach.arguments == ("detach", str(mount_point))
        assert not download.path.exists()
        assert not download.path.parent.exists()
        assert StateManager().get_status().stage == StageEnum.DONE

    @pytest.mark.asyncio
    async def test_custom_target_and_receipt(self, installer, driver, mount_point):
        await installer.install(PACKAGE, target_volume="/Volumes/Data", receipt_name="com.ex.legacy")

        forget, install = driver.calls[1], driver.calls[2]
        assert forget.arguments == ("--forget", "com.ex.legacy")
        assert install.arguments[-1] == "/Volumes/Data"

    @pytest.mark.asyncio
    async def test_download_failure_skips_mount(self, installer, driver, mock_download_service):
        mock_download_service.fetch.side_effect = DownloadIntegrityError("SHA256_MISMATCH")

        with pytest.raises(DownloadIntegrityError):
            await installer.install(PACKAGE)

        assert driver.calls == []
        status = StateManager().get_status()
        assert status.stage == StageEnum.FAILED
        assert status.error.startswith("download-integrity")

    @pytest.mark.asyncio
    async def test_mount_failure(self, installer, driver, download):
        driver.responses[("hdiutil", "attach")] = CommandResult(
            status=1, output="hdiutil: attach failed - corrupt image"
        )

        with pytest.raises(MountError, match="corrupt image"):
            await installer.install(PACKAGE)

        assert driver.tools() == [("hdiutil", "attach")]
        assert not download.path.exists()

    @pytest.mark.asyncio
    async def test_mount_output_not_plist_still_detaches(self, installer, driver, download):
        """Mount points in plain-text attach output are detached before failing."""
        driver.responses[("hdiutil", "attach")] = CommandResult(
            status=0,
            output=(
                "/dev/disk4          \tGUID_partition_scheme\t\n"
                "/dev/disk4s1        \tApple_HFS                      \t/Volumes/My App\n"
            ),
        )

        with pytest.raises(MountError, match="not a plist"):
            await installer.install(PACKAGE)

        detached = [c.arguments for c in driver.calls if c.arguments[0] == "detach"]
        assert detached == [("detach", "/Volumes/My App")]
        assert not download.path.exists()

    @pytest.mark.asyncio
    async def test_mount_output_garbage_without_mount_point(self, installer, driver, download):
        driver.responses[("hdiutil", "attach")] = CommandResult(
            status=0, output="<?xml version=\"1.0\"?><plist><dict><key>x</plist>"
        )

        with pytest.raises(MountError, match="cannot parse"):
            await installer.install(PACKAGE)

        assert driver.tools() == [("hdiutil", "attach")]
        assert not download.path.exists()
        assert StateManager().get_status().error.startswith("mount:")

    @pytest.mark.asyncio
    async def test_mount_without_mount_point_is_ambiguous(self, installer, driver, download):
        driver.responses[("hdiutil", "attach")] = CommandResult(status=0, output=attach_output())

        with pytest.raises(MountAmbiguousError):
            await installer.install(PACKAGE)

        assert ("hdiutil", "detach") not in driver.tools()
        assert not download.path.exists()

    @pytest.mark.asyncio
    async def test_multiple_mount_points_are_ambiguous_and_detached(self, installer, driver, download):
        driver.responses[("hdiutil", "attach")] = CommandResult(
            status=0, output=attach_output("/Volumes/A", "/Volumes/B")
        )

        with pytest.raises(MountAmbiguousError, match="expected one mount point"):
            await installer.install(PACKAGE)

        detached = [c.arguments[1] for c in driver.calls if c.arguments[0] == "detach"]
        assert detached == ["/Volumes/B", "/Volumes/A"]
        assert StateManager().get_status().error.startswith("mount-ambiguous")

    @pytest.mark.asyncio
    async def test_install_failure_still_cleans_up(self, installer, driver, download, mount_point):
        driver.responses[("installer", "-pkg")] = CommandResult(
            status=1, output="installer: The install failed."
        )

        with pytest.raises(InstallError, match="exited 1"):
            await installer.install(PACKAGE)

        assert driver.tools()[-1] == ("hdiutil", "detach")
        assert not download.path.exists()
        assert StateManager().get_status().stage == StageEnum.FAILED

    @pytest.mark.asyncio
    async def test_install_timeout(self, installer, driver, download):
        driver.responses[("installer", "-pkg")] = CommandResult(
            status=-1, output="installer: timed out after 10 seconds", timed_out=True
        )

        with pytest.raises(InstallError, match="timed out"):
            await installer.install(PACKAGE)

        assert driver.tools()[-1] == ("hdiutil", "detach")
        assert not download.path.exists()

    @pytest.mark.asyncio
    async def test_missing_receipt_is_not_a_failure(self, installer, driver):
        driver.responses[("pkgutil", "--forget")] = CommandResult(
            status=1, output="No receipt for 'com.ex.app' found at '/'."
        )

        job = await installer.install(PACKAGE)

        assert job.package_id == "com.ex.app"
        assert ("installer", "-pkg") in driver.tools()

    @pytest.mark.asyncio
    async def test_forget_failure_aborts_before_install(self, installer, driver, download):
        driver.responses[("pkgutil", "--forget")] = CommandResult(
            status=1, output="Operation not permitted"
        )

        with pytest.raises(InstallError, match="forget"):
            await installer.install(PACKAGE)

        assert ("installer", "-pkg") not in driver.tools()
        assert driver.tools()[-1] == ("hdiutil", "detach")
        assert not download.path.exists()

    @pytest.mark.asyncio
    async def test_no_payload(self, installer, driver, mount_point):
        (mount_point / "app.pkg").unlink()

        with pytest.raises(InstallError, match="no installable payload"):
            await installer.install(PACKAGE)

        assert ("pkgutil", "--forget") not in driver.tools()
        assert driver.tools()[-1] == ("hdiutil", "detach")

    @pytest.mark.asyncio
    async def test_first_payload_by_sorted_name(self, installer, driver, mount_point):
        (mount_point / "Zeta.pkg").write_bytes(b"z")
        (mount_point / "Alpha.MPKG").write_bytes(b"a")

        await installer.install(PACKAGE)

        install = driver.calls[2]
        assert install.arguments[1] == str(mount_point / "Alpha.MPKG")

    @pytest.mark.asyncio
    async def test_detach_failure_forces_and_does_not_fail_job(self, installer, driver):
        outcomes = iter([CommandResult(status=16, output="resource busy"), CommandResult(status=0)])

        async def detach(invocation):
            return next(outcomes)

        driver.responses[("hdiutil", "detach")] = detach

        await installer.install(PACKAGE)

        detaches = [c.arguments for c in driver.calls if c.arguments[0] == "detach"]
        assert len(detaches) == 2
        assert detaches[1][-1] == "-force"
        assert StateManager().get_status().stage == StageEnum.DONE

    @pytest.mark.asyncio
    async def test_cancellation_runs_cleanup(self, installer, driver, download):
        started = asyncio.Event()

        async def hang(invocation):
            started.set()
            await asyncio.sleep(30)
            return CommandResult(status=0)

        driver.responses[("installer", "-pkg")] = hang
        task = asyncio.create_task(installer.install(PACKAGE))
        await started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert driver.tools()[-1] == ("hdiutil", "detach")
        assert not download.path.exists()
        assert StateManager().get_status().error.startswith("cancelled")

    @pytest.mark.asyncio
    async def test_install_from_path_keeps_image(self, installer, driver, tmp_path, mock_download_service):
        image = tmp_path / "local.dmg"
        image.write_bytes(b"image")

        job = await installer.install_from_path(image, "com.ex.local", "/")

        assert job.receipt_name == "com.ex.local"
        mock_download_service.fetch.assert_not_awaited()
        assert driver.tools() == [
            ("hdiutil", "attach"),
            ("pkgutil", "--forget"),
            ("installer", "-pkg"),
            ("hdiutil", "detach"),
        ]
        assert image.exists()
