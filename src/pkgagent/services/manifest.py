"""Manifest service: fetch the track catalog and resolve package URLs."""

import logging
from typing import Optional

import aiofiles

from pkgagent.errors import DownloadError, ManifestMalformedError, ManifestUnavailableError
from pkgagent.models.manifest import (
    ManifestDocument,
    ResolvedPackage,
    TrackView,
    parse_manifest,
    resolve_location,
)
from pkgagent.services.download import DownloadService


class ManifestService:
    """Downloads and interprets the manifest at a fixed URL.

    The manifest URL is the root of trust, so the body is fetched without a
    digest check. The parsed document is owned by this object; TrackViews are
    derived from it on demand.
    """

    def __init__(self, manifest_url: str, download_service: Optional[DownloadService] = None):
        """Initialize manifest service.

        Args:
            manifest_url: http(s) URL of the JSON manifest
            download_service: DownloadService used for the fetch
        """
        self.logger = logging.getLogger("pkgagent.manifest")
        self.manifest_url = manifest_url
        self.download_service = download_service or DownloadService()
        self._document: Optional[ManifestDocument] = None

    @property
    def document(self) -> Optional[ManifestDocument]:
        return self._document

    async def load(self) -> ManifestDocument:
        """Download and parse the manifest.

        The whole load fails if any entry in any track is ill-formed; a
        previously loaded document is kept in that case.

        Raises:
            ManifestUnavailableError: If the manifest could not be downloaded
            ManifestMalformedError: If the body is not a valid manifest
        """
        self.logger.info(f"Loading manifest from {self.manifest_url}")
        try:
            result = await self.download_service.fetch(self.manifest_url)
        except DownloadError as e:
            self.logger.error(f"Manifest unavailable: {e}")
            raise ManifestUnavailableError(f"{self.manifest_url}: {e.message}") from e

        try:
            async with aiofiles.open(result.path, "rb") as f:
                body = await f.read()
        finally:
            result.discard()

        try:
            document = parse_manifest(body)
        except ManifestMalformedError as e:
            self.logger.error(f"Manifest rejected: {e}")
            raise
        self._document = document
        self.logger.info(
            f"Manifest loaded: tracks={document.tracks()}, "
            f"packages={sum(len(v) for v in document.root.values())}"
        )
        return document

    def packages_for_track(self, track: str, base_url: Optional[str] = None) -> TrackView:
        """Return the resolved, ordered packages of a track.

        Args:
            track: Track name, e.g. "stable"
            base_url: Base for relative locations (the manifest URL if None)

        Returns:
            TrackView, empty if the track is not in the manifest

        Raises:
            RuntimeError: If load() has not completed
            ManifestMalformedError: If a location does not resolve to an absolute URL
        """
        if self._document is None:
            raise RuntimeError("Manifest not loaded; call load() first")

        entries = self._document.entries(track)
        if not entries:
            self.logger.info(f"Track {track!r} has no packages")
            return TrackView(track=track)

        base = base_url or self.manifest_url
        packages = tuple(
            ResolvedPackage(
                package_id=entry.package_id,
                url=resolve_location(entry.location, base),
                sha256=entry.sha256,
            )
            for entry in entries
        )
        self.logger.debug(f"Track {track!r}: {[p.package_id for p in packages]}")
        return TrackView(track=track, packages=packages)
