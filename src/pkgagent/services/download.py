"""Download service with retries, backoff and SHA-256 verification."""

import asyncio
import hashlib
import logging
import os
import random
import shutil
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Optional
from urllib.parse import unquote, urlparse

import aiofiles
import httpx
from pydantic import BaseModel, Field

from pkgagent.errors import (
    DownloadError,
    DownloadIntegrityError,
    DownloadNetworkError,
    DownloadTimeoutError,
    InternalError,
)
from pkgagent.models.config import AgentConfig
from pkgagent.utils.verification import normalize_sha256


class DownloadResult(BaseModel):
    """A fully downloaded file on scratch storage.

    The caller owns the file and its per-download scratch directory and must
    call discard() when done with it.
    """

    path: Path = Field(..., description="Verified local file")
    url: str = Field(..., description="URL the file was fetched from")
    sha256: str = Field(..., description="SHA-256 of the file contents")
    attempts: int = Field(..., ge=1, description="Network attempts used")

    def discard(self) -> None:
        """Delete the file and its scratch directory."""
        self.path.unlink(missing_ok=True)
        shutil.rmtree(self.path.parent, ignore_errors=True)


def backoff_delay(
    retry: int,
    base: float,
    cap: float,
    uniform: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay before retry number `retry` (1-based): exponential with jitter.

    d = base * 2**(retry-1); delay = d + U(0, d), clamped to cap.
    """
    exponent = min(retry - 1, 32)
    delay = min(cap, base * (2 ** exponent))
    return min(cap, delay + uniform(0, delay))


def _file_name_for(url: str) -> str:
    name = Path(unquote(urlparse(url).path)).name
    return name or "download"


class _AttemptFailed(Exception):
    """One attempt failed with a retryable, classified reason."""

    def __init__(self, error_class: type[DownloadError], reason: str):
        super().__init__(reason)
        self.error_class = error_class
        self.reason = reason


class DownloadService:
    """Materializes remote objects as verified local files.

    Each fetch gets a fresh scratch directory (mode 0700). Bytes stream to
    `<name>.part` and are renamed into place only after the digest matches,
    so callers never observe partial files.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize download service.

        Args:
            config: Agent configuration (defaults if None)
            client: Shared HTTP client; a new one per fetch if None
            sleep: Awaitable used for backoff waits
        """
        self.logger = logging.getLogger("pkgagent.download")
        self.config = config or AgentConfig()
        self.client = client
        self.sleep = sleep
        self.chunk_size = self.config.chunk_size

    async def fetch(
        self,
        url: str,
        expected_sha256: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> DownloadResult:
        """Download url into a fresh scratch directory.

        Args:
            url: http(s) URL to download
            expected_sha256: Expected SHA-256 hex (None skips verification)
            timeout: Per-attempt timeout in seconds (config default if None)
            max_attempts: Attempt budget (config default if None)

        Returns:
            DownloadResult whose file matches expected_sha256

        Raises:
            ValueError: If expected_sha256 is not 64 hex chars or budget < 1
            DownloadNetworkError: Last attempt failed on HTTP status or transport
            DownloadTimeoutError: Last attempt exceeded the per-attempt timeout
            DownloadIntegrityError: Last attempt's digest did not match
            InternalError: Scratch storage could not be written
        """
        expected = normalize_sha256(expected_sha256) if expected_sha256 is not None else None
        timeout = timeout if timeout is not None else self.config.download_timeout_seconds
        max_attempts = max_attempts if max_attempts is not None else self.config.download_attempts_max
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        scratch_root = self.config.scratch_root
        if scratch_root is not None:
            Path(scratch_root).mkdir(parents=True, exist_ok=True)
        scratch_dir = Path(tempfile.mkdtemp(prefix="pkgagent-dl.", dir=scratch_root))
        final_path = scratch_dir / _file_name_for(url)
        part_path = scratch_dir / f"{final_path.name}.part"

        try:
            result = await self._fetch_with_retries(
                url, expected, timeout, max_attempts, part_path, final_path
            )
        except asyncio.CancelledError:
            self.logger.warning(f"Download of {url} cancelled, removing {scratch_dir}")
            shutil.rmtree(scratch_dir, ignore_errors=True)
            raise
        except Exception:
            shutil.rmtree(scratch_dir, ignore_errors=True)
            raise
        return result

    async def _fetch_with_retries(
        self,
        url: str,
        expected: Optional[str],
        timeout: float,
        max_attempts: int,
        part_path: Path,
        final_path: Path,
    ) -> DownloadResult:
        last_failure: Optional[_AttemptFailed] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = backoff_delay(
                    attempt - 1,
                    self.config.backoff_base_seconds,
                    self.config.backoff_cap_seconds,
                )
                self.logger.info(
                    f"Retrying {url} in {delay:.1f}s (attempt {attempt}/{max_attempts}) "
                    f"after: {last_failure.reason}"
                )
                await self.sleep(delay)

            self.logger.info(f"Download attempt {attempt}/{max_attempts}: {url}")
            try:
                digest, size = await self._attempt(url, expected, timeout, part_path)
            except _AttemptFailed as failure:
                part_path.unlink(missing_ok=True)
                last_failure = failure
                self.logger.warning(
                    f"Download attempt {attempt}/{max_attempts} failed: {failure.reason}"
                )
                continue

            os.replace(part_path, final_path)
            self.logger.info(
                f"Downloaded {url} ({size} bytes, sha256={digest}) "
                f"in {attempt} attempt(s)"
            )
            return DownloadResult(path=final_path, url=url, sha256=digest, attempts=attempt)

        error = last_failure.error_class(
            f"{url}: {last_failure.reason} (gave up after {max_attempts} attempt(s))",
            url=url,
            attempts=max_attempts,
        )
        self.logger.error(f"Download failed: {error}")
        raise error

    async def _attempt(
        self, url: str, expected: Optional[str], timeout: float, part_path: Path
    ) -> tuple[str, int]:
        """Run one attempt; return (digest, size) or raise _AttemptFailed."""
        try:
            digest, size = await asyncio.wait_for(
                self._stream_to_file(url, timeout, part_path), timeout
            )
        except asyncio.TimeoutError:
            raise _AttemptFailed(DownloadTimeoutError, f"no complete body within {timeout:g}s")
        except httpx.TimeoutException as e:
            raise _AttemptFailed(DownloadTimeoutError, f"timeout: {e!r}")
        except httpx.HTTPStatusError as e:
            raise _AttemptFailed(
                DownloadNetworkError, f"HTTP {e.response.status_code} from server"
            )
        except httpx.HTTPError as e:
            raise _AttemptFailed(DownloadNetworkError, f"transport error: {e!r}")
        except OSError as e:
            part_path.unlink(missing_ok=True)
            raise InternalError(f"cannot write scratch file {part_path}: {e}")

        if expected is not None and digest != expected:
            raise _AttemptFailed(
                DownloadIntegrityError,
                f"SHA256_MISMATCH: expected {expected}, got {digest}",
            )
        return digest, size

    async def _stream_to_file(self, url: str, timeout: float, part_path: Path) -> tuple[str, int]:
        if self.client is not None:
            return await self._consume(self.client, url, timeout, part_path)

        # trust_env (default) makes httpx honor HTTP(S)_PROXY / NO_PROXY
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            return await self._consume(client, url, timeout, part_path)

    async def _consume(
        self, client: httpx.AsyncClient, url: str, timeout: float, part_path: Path
    ) -> tuple[str, int]:
        sha256 = hashlib.sha256()
        size = 0
        async with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            async with aiofiles.open(part_path, "wb") as f:
                async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                    await f.write(chunk)
                    sha256.update(chunk)
                    size += len(chunk)
        return sha256.hexdigest(), size
