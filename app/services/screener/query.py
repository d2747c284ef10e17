"""Filter and rank snapshot companies for a search request."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from app.models.company import Company, Snapshot
from app.models.search import SearchParams


class Bound(str, Enum):
    MIN = "min"
    MAX = "max"


@dataclass(frozen=True)
class NumericFilter:
    """One row of the unknown-value policy: how a missing field fares against a bound."""

    param: str
    field: str
    bound: Bound
    unknown_passes: bool

    def admits(self, company: Company, threshold: float) -> bool:
        value = getattr(company, self.field)
        if value is None:
            return self.unknown_passes
        if self.bound is Bound.MIN:
            return value >= threshold
        return value <= threshold


# Unknown fails every bound except the market-cap ceiling.
NUMERIC_FILTERS: tuple[NumericFilter, ...] = (
    NumericFilter("revenue_min", "revenue_ltm_usd", Bound.MIN, unknown_passes=False),
    NumericFilter("revenue_max", "revenue_ltm_usd", Bound.MAX, unknown_passes=False),
    NumericFilter("cfo_min", "cfo_ltm_usd", Bound.MIN, unknown_passes=False),
    NumericFilter("debt_max", "total_debt_usd", Bound.MAX, unknown_passes=False),
    NumericFilter("ap_max", "accounts_payable_usd", Bound.MAX, unknown_passes=False),
    NumericFilter("adv_min", "adv_usd", Bound.MIN, unknown_passes=False),
    NumericFilter("market_cap_max", "market_cap_usd", Bound.MAX, unknown_passes=True),
    NumericFilter("min_borrow_base", "borrowing_base_usd", Bound.MIN, unknown_passes=False),
)


def matches(company: Company, params: SearchParams) -> bool:
    """Apply the pass-through filters (everything except loan terms)."""
    if params.exchanges and company.exchange not in params.exchanges:
        return False
    if params.location is not None:
        if company.location is None or company.location.casefold() != params.location.casefold():
            return False
    for rule in NUMERIC_FILTERS:
        threshold = getattr(params, rule.param)
        if threshold is not None and not rule.admits(company, threshold):
            return False
    return True


def apply_loan_terms(company: Company, loan_size: float, max_payback_years: float) -> Company | None:
    """Return a per-response copy carrying payback/coverage, or None if it does not qualify.

    The snapshot's own record is never modified.
    """
    cfo = company.cfo_ltm_usd
    if cfo is None or cfo <= 0:
        return None
    payback_years = loan_size / cfo
    if payback_years > max_payback_years:
        return None
    return company.model_copy(
        update={
            "payback_years": payback_years,
            "loan_coverage": company.borrowing_base_usd / loan_size,
        }
    )


def _descending(value: float | None) -> tuple[bool, float]:
    return (value is None, -value if value is not None else math.inf)


def rank_key(company: Company) -> tuple:
    payback = company.payback_years
    return (
        payback is None,
        payback if payback is not None else math.inf,
        *_descending(company.loan_coverage),
        *_descending(company.revenue_ltm_usd),
    )


def rank(companies: Iterable[Company]) -> list[Company]:
    """Payback ascending, then coverage descending, then revenue descending; missing sorts last."""
    return sorted(companies, key=rank_key)


def search(snapshot: Snapshot, params: SearchParams) -> list[Company]:
    results: list[Company] = []
    for company in snapshot.items:
        if not matches(company, params):
            continue
        if params.has_loan_terms:
            company = apply_loan_terms(company, params.loan_size, params.max_payback_years)
            if company is None:
                continue
        results.append(company)
    return rank(results)
