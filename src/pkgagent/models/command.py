"""Command invocation and result records for the command driver."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# Termination status reserved for "the host prevented execution" and for
# commands killed after exceeding their timeout (see CommandResult.timed_out).
HOST_FAULT_STATUS = -1


class CommandInvocation(BaseModel):
    """Immutable description of one external program run."""

    model_config = ConfigDict(frozen=True)

    launch_path: str = Field(..., description="Full path to the binary")
    arguments: tuple[str, ...] = Field(default=(), description="argv after the binary")
    environment: Optional[dict[str, str]] = Field(
        None, description="Complete child environment (None = inherit)"
    )
    standard_input: Optional[bytes] = Field(
        None, description="Payload written to stdin before it is closed"
    )
    timeout: float = Field(0, ge=0, description="Seconds before kill (0 = no timeout)")

    @property
    def argv(self) -> list[str]:
        return [self.launch_path, *self.arguments]


class CommandResult(BaseModel):
    """Termination status plus combined stdout/stderr of a run."""

    model_config = ConfigDict(frozen=True)

    status: int = Field(..., description="Exit status, -1 on host fault or timeout")
    output: str = Field("", description="Combined stdout and stderr")
    timed_out: bool = Field(False, description="Child was killed after its timeout")

    @property
    def succeeded(self) -> bool:
        return self.status == 0 and not self.timed_out

    @classmethod
    def host_fault(cls, diagnostic: str) -> "CommandResult":
        return cls(status=HOST_FAULT_STATUS, output=diagnostic)
