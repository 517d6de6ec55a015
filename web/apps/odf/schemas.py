"""Pydantic schemas for the ODF API.

Request parameters are validated here before reaching the pipeline; the
views turn ``ValidationError`` into HTTP 400.
"""

from pydantic import BaseModel, Field, field_validator

from .domain import Step


class StepQuery(BaseModel):
    """Query parameters of ``GET /api/odf/check``."""

    step: Step
    pcdid: int = Field(gt=0)
    user: str = Field(default="", max_length=64)


class OrderRef(BaseModel):
    """Body of the validate / create-order requests."""

    pcdid: int = Field(gt=0)
    user: str = Field(default="", max_length=64)


class PollQuery(BaseModel):
    """Poll parameters; ``attempt`` is 1-based and carried by the caller."""

    attempt: int = Field(default=1, ge=1)
    user: str = Field(default="", max_length=64)


class PasscodesQuery(PollQuery):
    pcdid: int = Field(gt=0)
    order_number: str = Field(min_length=1, max_length=64)

    @field_validator("order_number")
    @classmethod
    def strip_order_number(cls, v: str) -> str:
        """Reject blank or placeholder order numbers.

        Raises:
            ValueError: When the value is blank or ``NA``.
        """
        v2 = v.strip()
        if not v2 or v2.upper() == "NA":
            raise ValueError("Invalid order number")
        return v2


class ManufacturingOrderIn(OrderRef):
    order_number: str = Field(min_length=1, max_length=64)


class ManufacturingStatusQuery(PollQuery):
    pcdid: int = Field(gt=0)
