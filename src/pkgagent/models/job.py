"""Per-package install job record."""

from pydantic import BaseModel, ConfigDict, Field

from pkgagent.models.manifest import ResolvedPackage


class InstallJob(BaseModel):
    """One package to install, created fresh per package and never persisted."""

    model_config = ConfigDict(frozen=True)

    package: ResolvedPackage = Field(..., description="Resolved manifest entry")
    target_volume: str = Field(..., min_length=1, description="Install target volume")
    receipt_name: str = Field(..., min_length=1, description="Receipt to forget before install")

    @property
    def package_id(self) -> str:
        return self.package.package_id
