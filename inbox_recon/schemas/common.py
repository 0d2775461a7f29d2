from __future__ import annotations

from datetime import date
from typing import Annotated

from pydantic import BaseModel, Field, StringConstraints

# ISO 4217 code, normalised to upper case on input
CurrencyCode = Annotated[str, StringConstraints(min_length=3, max_length=3, to_upper=True)]


class OrmBase(BaseModel):
    model_config = {"from_attributes": True}


class DateRange(BaseModel):
    start: date | None = None
    end: date | None = None


class AmountRange(BaseModel):
    """Bounds on the absolute amount, so debits and credits filter alike."""

    min: float | None = Field(default=None, ge=0)
    max: float | None = Field(default=None, ge=0)
