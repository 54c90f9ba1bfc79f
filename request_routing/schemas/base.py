"""Base schemas and common types for the Routing API."""

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# BASE SCHEMAS
# =============================================================================


class RoutingBaseModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,  # Enable ORM mode
        populate_by_name=True,
        use_enum_values=True,
    )


# =============================================================================
# ERROR RESPONSES
# =============================================================================


class ErrorDetail(RoutingBaseModel):
    """Detailed error information."""

    field: str | None = None
    message: str
    code: str


class ErrorResponse(RoutingBaseModel):
    """Standard error response format."""

    error: str
    message: str
    details: list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None = None
