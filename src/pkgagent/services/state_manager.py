"""State manager for in-memory run status."""

import logging
from typing import Optional

from pkgagent.api.models import ProgressData
from pkgagent.models.status import RESTING_STAGES, StageEnum


class StateManager:
    """Singleton holding the status of the current (or last) install run.

    Nothing is persisted: receipts live in the host installer database and a
    restarted agent simply starts from idle.
    """

    _instance: Optional["StateManager"] = None

    def __new__(cls):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize state manager (only once due to singleton)."""
        if self._initialized:
            return

        self.logger = logging.getLogger("pkgagent.state_manager")
        self.reset()
        self._initialized = True
        self.logger.debug("StateManager initialized")

    def get_status(self) -> ProgressData:
        """Get current status for GET /progress endpoint."""
        return ProgressData(
            stage=self._stage,
            track=self._track,
            package_id=self._package_id,
            completed=self._completed,
            total=self._total,
            message=self._message,
            error=self._error,
        )

    def is_busy(self) -> bool:
        return self._stage not in RESTING_STAGES

    def begin_run(self, track: str) -> None:
        """Mark a new run as started for track."""
        self._stage = StageEnum.LOADING_MANIFEST
        self._track = track
        self._package_id = None
        self._completed = 0
        self._total = 0
        self._message = f"Loading manifest for track {track}"
        self._error = None
        self.logger.debug(f"Run started: track={track}")

    def set_total(self, total: int) -> None:
        self._total = total

    def package_done(self) -> None:
        self._completed += 1

    def update_status(
        self,
        stage: StageEnum,
        message: str,
        package_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Update in-memory status state.

        Args:
            stage: Current lifecycle stage
            message: Human-readable description
            package_id: Package the stage refers to (kept if None)
            error: Error description if stage == failed
        """
        self._stage = stage
        self._message = message
        if package_id is not None:
            self._package_id = package_id
        self._error = error
        self.logger.debug(
            f"Status updated: stage={stage.value}, package={self._package_id}, message={message}"
        )

    def reset(self) -> None:
        """Reset to idle state."""
        self._stage: StageEnum = StageEnum.IDLE
        self._track: Optional[str] = None
        self._package_id: Optional[str] = None
        self._completed: int = 0
        self._total: int = 0
        self._message: str = "Agent ready"
        self._error: Optional[str] = None
