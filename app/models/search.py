"""Query-string contract for the screener search endpoint."""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.models.company import Exchange

FiniteNumber = Annotated[float, Field(allow_inf_nan=False)]
PositiveNumber = Annotated[float, Field(gt=0, allow_inf_nan=False)]

NUMERIC_PARAMS = (
    "revenue_min",
    "revenue_max",
    "cfo_min",
    "debt_max",
    "ap_max",
    "adv_min",
    "market_cap_max",
    "loan_size",
    "max_payback_years",
    "min_borrow_base",
)


class SearchParams(BaseModel):
    """Optional filters accepted by ``GET /api/search``; absent means pass-through."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    revenue_min: FiniteNumber | None = None
    revenue_max: FiniteNumber | None = None
    cfo_min: FiniteNumber | None = None
    debt_max: FiniteNumber | None = None
    ap_max: FiniteNumber | None = None
    adv_min: FiniteNumber | None = None
    market_cap_max: FiniteNumber | None = None
    location: str | None = None
    exchanges: list[Exchange] | None = Field(
        default=None,
        description="Comma-separated venue tags, e.g. NYSE,NASDAQ,OTC.",
    )
    loan_size: PositiveNumber | None = None
    max_payback_years: PositiveNumber | None = None
    min_borrow_base: FiniteNumber | None = None

    @field_validator(*NUMERIC_PARAMS, mode="before")
    @classmethod
    def _lenient_number(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        cleaned = value.strip().replace(",", "").replace("_", "")
        if cleaned.startswith("$"):
            cleaned = cleaned[1:].strip()
        return cleaned or None

    @field_validator("location", mode="before")
    @classmethod
    def _blank_location(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("exchanges", mode="before")
    @classmethod
    def _split_exchanges(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        tags = [part.strip().upper() for part in value.split(",") if part.strip()]
        return tags or None

    @property
    def has_loan_terms(self) -> bool:
        return self.loan_size is not None and self.max_payback_years is not None


def flatten_validation_errors(exc: ValidationError) -> dict[str, Any]:
    """Group pydantic errors by top-level field for the 400 response body."""
    form_errors: list[str] = []
    field_errors: dict[str, list[str]] = {}
    for error in exc.errors(include_url=False):
        loc = error.get("loc") or ()
        message = error.get("msg", "Invalid value")
        if not loc:
            form_errors.append(message)
            continue
        field_errors.setdefault(str(loc[0]), []).append(message)
    return {"form_errors": form_errors, "field_errors": field_errors}
