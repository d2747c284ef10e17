"""Domain models for screened companies and published snapshots."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Exchange(str, Enum):
    """Venue tier a listed company trades on."""

    NYSE = "NYSE"
    NASDAQ = "NASDAQ"
    OTC = "OTC"
    PRIVATE = "PRIVATE"


class UniverseEntry(BaseModel):
    """Candidate entity considered by a refresh cycle."""

    model_config = ConfigDict(frozen=True)

    ticker: str
    cik: str | None = Field(default=None, description="10-digit zero-padded SEC registry id.")
    exchange: Exchange
    name: str | None = None


class Company(BaseModel):
    """Fundamentals for one company as of a snapshot date.

    Every financial field is optional: ``None`` means the value is unknown, which is
    distinct from a reported zero. ``payback_years`` and ``loan_coverage`` are only
    filled on per-response copies produced by the query engine.
    """

    model_config = ConfigDict(frozen=True)

    ticker: str
    cik: str | None = None
    name: str
    exchange: Exchange
    location: str | None = None
    revenue_ltm_usd: float | None = None
    cfo_ltm_usd: float | None = None
    total_debt_usd: float | None = None
    accounts_payable_usd: float | None = None
    accounts_receivable_usd: float | None = None
    inventory_usd: float | None = None
    ppe_usd: float | None = None
    market_cap_usd: float | None = None
    adv_usd: float | None = Field(default=None, description="Approximate daily traded value in USD.")
    last_fundraising_date: str | None = None
    borrowing_base_usd: float = 0.0
    as_of_date: str
    payback_years: float | None = None
    loan_coverage: float | None = None


class Snapshot(BaseModel):
    """Immutable result of one refresh cycle."""

    model_config = ConfigDict(frozen=True)

    date: str = ""
    items: tuple[Company, ...] = ()

    @property
    def count(self) -> int:
        return len(self.items)
