"""Manifest data models: track catalog of installable packages."""

import json
from dataclasses import dataclass
from typing import Iterator, Optional
from urllib.parse import urljoin, urlparse

from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError
from pydantic import field_validator, model_validator

from pkgagent.errors import ManifestMalformedError

SHA256_PATTERN = r"^[0-9a-fA-F]{64}$"


class PackageEntry(BaseModel):
    """One installable artifact listed under a track.

    Accepted JSON forms:
        ["com.example.app", "pkg-stable.dmg", "<sha256>"]
        {"id": "com.example.app", "url": "pkg-stable.dmg", "sha256": "<sha256>"}
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    package_id: str = Field(..., min_length=1, description="Receipt key, reverse-DNS style")
    location: str = Field(..., min_length=1, description="Absolute URL or relative path")
    sha256: str = Field(..., pattern=SHA256_PATTERN, description="Expected SHA-256 hex")

    @model_validator(mode="before")
    @classmethod
    def accept_triple_or_object(cls, data):
        """Normalize both entry encodings into field names."""
        if isinstance(data, (list, tuple)):
            if len(data) != 3:
                raise ValueError(
                    f"entry must be [id, location, sha256], got {len(data)} items"
                )
            return {"package_id": data[0], "location": data[1], "sha256": data[2]}
        if isinstance(data, dict) and "id" in data:
            data = dict(data)
            data["package_id"] = data.pop("id")
            if "url" in data:
                data["location"] = data.pop("url")
        return data

    @field_validator("package_id", "location")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("sha256")
    @classmethod
    def lowercase_digest(cls, v: str) -> str:
        return v.lower()


class ManifestDocument(RootModel[dict[str, list[PackageEntry]]]):
    """Root manifest schema: track name -> ordered package entries."""

    def tracks(self) -> list[str]:
        return list(self.root)

    def entries(self, track: str) -> list[PackageEntry]:
        return self.root.get(track, [])


@dataclass(frozen=True)
class ResolvedPackage:
    """Package entry with its location resolved to an absolute URL."""

    package_id: str
    url: str
    sha256: str


@dataclass(frozen=True)
class TrackView:
    """Read-only, ordered view of the resolved packages of one track."""

    track: str
    packages: tuple[ResolvedPackage, ...] = ()

    def __iter__(self) -> Iterator[ResolvedPackage]:
        return iter(self.packages)

    def __len__(self) -> int:
        return len(self.packages)

    def __getitem__(self, index: int) -> ResolvedPackage:
        return self.packages[index]

    @property
    def package_ids(self) -> list[str]:
        return [p.package_id for p in self.packages]


def _reject_duplicate_keys(pairs):
    seen = {}
    for key, value in pairs:
        if key in seen:
            raise ManifestMalformedError(f"duplicate key in manifest: {key!r}")
        seen[key] = value
    return seen


def parse_manifest(body: bytes) -> ManifestDocument:
    """Parse a JSON manifest body.

    Raises:
        ManifestMalformedError: On invalid JSON, duplicate track names, a
            non-object top level, or any ill-formed entry in any track.
    """
    try:
        data = json.loads(body.decode("utf-8"), object_pairs_hook=_reject_duplicate_keys)
    except UnicodeDecodeError as e:
        raise ManifestMalformedError(f"manifest is not UTF-8: {e}")
    except json.JSONDecodeError as e:
        raise ManifestMalformedError(f"invalid manifest JSON: {e}")

    if not isinstance(data, dict):
        raise ManifestMalformedError(
            f"manifest must be an object of tracks, got {type(data).__name__}"
        )

    try:
        return ManifestDocument.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise ManifestMalformedError(
            f"invalid manifest entry at {where}: {first['msg']} "
            f"({e.error_count()} error(s))"
        )


def resolve_location(location: str, base_url: Optional[str]) -> str:
    """Resolve an entry location against base_url and require an http(s) URL.

    Raises:
        ManifestMalformedError: If the result is not an absolute http(s) URL.
    """
    resolved = urljoin(base_url, location) if base_url else location
    parsed = urlparse(resolved)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ManifestMalformedError(
            f"package location {location!r} does not resolve to an absolute URL "
            f"(base: {base_url!r})"
        )
    return resolved
