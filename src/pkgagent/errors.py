"""Error taxonomy for the install agent and its exit code mapping."""

import asyncio
from enum import Enum


class ErrorKind(str, Enum):
    """Distinct failure kinds observable at the agent boundary."""

    MANIFEST_UNAVAILABLE = "manifest-unavailable"
    MANIFEST_MALFORMED = "manifest-malformed"
    DOWNLOAD_NETWORK = "download-network"
    DOWNLOAD_TIMEOUT = "download-timeout"
    DOWNLOAD_INTEGRITY = "download-integrity"
    MOUNT = "mount"
    MOUNT_AMBIGUOUS = "mount-ambiguous"
    INSTALL = "install"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


EXIT_SUCCESS = 0
EXIT_MANIFEST = 1
EXIT_DOWNLOAD = 2
EXIT_INTEGRITY = 3
EXIT_INSTALL = 4
EXIT_CANCELLED = 5
EXIT_UNEXPECTED = 6

_EXIT_CODES = {
    ErrorKind.MANIFEST_UNAVAILABLE: EXIT_MANIFEST,
    ErrorKind.MANIFEST_MALFORMED: EXIT_MANIFEST,
    ErrorKind.DOWNLOAD_NETWORK: EXIT_DOWNLOAD,
    ErrorKind.DOWNLOAD_TIMEOUT: EXIT_DOWNLOAD,
    ErrorKind.DOWNLOAD_INTEGRITY: EXIT_INTEGRITY,
    ErrorKind.MOUNT: EXIT_INSTALL,
    ErrorKind.MOUNT_AMBIGUOUS: EXIT_INSTALL,
    ErrorKind.INSTALL: EXIT_INSTALL,
    ErrorKind.CANCELLED: EXIT_CANCELLED,
    ErrorKind.INTERNAL: EXIT_UNEXPECTED,
}


class AgentError(Exception):
    """Base class for all classified agent failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.kind]

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class ManifestUnavailableError(AgentError):
    kind = ErrorKind.MANIFEST_UNAVAILABLE


class ManifestMalformedError(AgentError):
    kind = ErrorKind.MANIFEST_MALFORMED


class DownloadError(AgentError):
    """Terminal download failure after the attempt budget is spent."""

    kind = ErrorKind.DOWNLOAD_NETWORK

    def __init__(self, message: str, url: str = "", attempts: int = 0):
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class DownloadNetworkError(DownloadError):
    kind = ErrorKind.DOWNLOAD_NETWORK


class DownloadTimeoutError(DownloadError):
    kind = ErrorKind.DOWNLOAD_TIMEOUT


class DownloadIntegrityError(DownloadError):
    kind = ErrorKind.DOWNLOAD_INTEGRITY


class MountError(AgentError):
    kind = ErrorKind.MOUNT


class MountAmbiguousError(MountError):
    kind = ErrorKind.MOUNT_AMBIGUOUS


class InstallError(AgentError):
    kind = ErrorKind.INSTALL


class InternalError(AgentError):
    kind = ErrorKind.INTERNAL


def kind_for(exc: BaseException) -> ErrorKind:
    """Classify any exception into an ErrorKind."""
    if isinstance(exc, AgentError):
        return exc.kind
    if isinstance(exc, (asyncio.CancelledError, KeyboardInterrupt)):
        return ErrorKind.CANCELLED
    return ErrorKind.INTERNAL


def exit_code_for(exc: BaseException) -> int:
    """Map any exception to the process exit code."""
    return _EXIT_CODES[kind_for(exc)]
