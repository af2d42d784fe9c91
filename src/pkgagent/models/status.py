"""Status enums for install runs and jobs."""

from enum import Enum


class StageEnum(str, Enum):
    """Install job lifecycle stages.

    State transitions (per package):
    init → fetched → mounted → installed → done
              ↓         ↓          ↓
            failed ←──────────────────
    idle is the resting state between runs.
    """

    IDLE = "idle"
    LOADING_MANIFEST = "loadingManifest"
    INIT = "init"
    FETCHED = "fetched"
    MOUNTED = "mounted"
    INSTALLED = "installed"
    DONE = "done"
    FAILED = "failed"


# Stages in which no run is active and a new one may start.
RESTING_STAGES = (StageEnum.IDLE, StageEnum.DONE, StageEnum.FAILED)
