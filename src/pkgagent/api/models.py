"""Pydantic models for HTTP API requests and responses."""

from typing import Optional

from pydantic import BaseModel, Field

from pkgagent.models.status import StageEnum


class RunRequest(BaseModel):
    """POST /api/v1.0/run payload.

    Starts installing every package of a track in the background.

    Example:
        {
            "track": "stable",
            "base_url": "https://packages.example.com/mac/"
        }
    """

    track: str = Field(
        ...,
        min_length=1,
        description="Manifest track to install",
        examples=["stable", "testing", "unstable"],
    )
    base_url: Optional[str] = Field(
        None,
        pattern=r"^https?://.+",
        description="Base URL for relative package locations (manifest URL if omitted)",
    )
    target_volume: Optional[str] = Field(
        None, min_length=1, description="Install target volume (config default if omitted)"
    )


class ProgressData(BaseModel):
    """Progress data nested in response."""

    stage: StageEnum = Field(..., description="Current lifecycle stage")
    track: Optional[str] = Field(None, description="Track of the current or last run")
    package_id: Optional[str] = Field(None, description="Package currently being handled")
    completed: int = Field(0, ge=0, description="Packages installed in this run")
    total: int = Field(0, ge=0, description="Packages in the selected track")
    message: str = Field(..., description="Human-readable status description")
    error: Optional[str] = Field(
        None, description="Error kind and message if stage == failed"
    )


class ProgressResponse(BaseModel):
    """GET /api/v1.0/progress response.

    Returns current status state with application-level status code.
    """

    code: int = Field(..., description="Application-level status code (200/500)")
    msg: str = Field(..., description="Status message or error description")
    data: ProgressData = Field(..., description="Progress data")


class SuccessResponse(BaseModel):
    """Success response for command endpoints."""

    code: int = Field(default=200, description="Application-level status code (200)")
    msg: str = Field(default="success", description="Success message")
    data: Optional[dict] = Field(None, description="Optional response data")


class ErrorResponse(BaseModel):
    """Error response for all endpoints.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level error code (409/500)")
    msg: str = Field(..., description="Error message")
    stage: Optional[StageEnum] = Field(
        None, description="Current stage (for operation state errors)"
    )
