"""Pull loan-screening metrics out of EDGAR companyfacts and submissions documents."""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

REVENUE_TAGS = (
    "Revenues",
    "SalesRevenueNet",
    "RevenueFromContractWithCustomerExcludingAssessedTax",
)
CFO_TAGS = ("NetCashProvidedByUsedInOperatingActivities",)
LONG_TERM_DEBT_TAGS = ("LongTermDebtNoncurrent", "LongTermDebt")
SHORT_TERM_DEBT_TAGS = ("ShortTermBorrowings", "DebtCurrent")
PAYABLES_TAGS = ("AccountsPayableCurrent",)
RECEIVABLES_TAGS = ("AccountsReceivableNetCurrent", "ReceivablesNetCurrent")
INVENTORY_TAGS = ("InventoryNet", "InventoryGross")
PPE_TAGS = (
    "PropertyPlantAndEquipmentNet",
    "PropertyPlantAndEquipmentAndFinanceLeaseRightOfUseAssetAfterAccumulatedDepreciationAndAmortization",
)

RECEIVABLES_ADVANCE_RATE = 0.80
INVENTORY_ADVANCE_RATE = 0.50
PPE_ADVANCE_RATE = 0.25

# Offering prospectuses, current reports, registration statements, Reg D notices.
FUNDRAISING_FORM_PATTERN = re.compile(r"^(424B\d|8-K|S-1|S-3|D)$")


@dataclass(frozen=True)
class FinancialFacts:
    """Most-recent USD values extracted from a companyfacts document."""

    revenue: float | None = None
    cfo: float | None = None
    total_debt: float | None = None
    accounts_payable: float | None = None
    accounts_receivable: float | None = None
    inventory: float | None = None
    ppe: float | None = None

    @property
    def borrowing_base(self) -> float:
        return borrowing_base(self.accounts_receivable, self.inventory, self.ppe)


def _finite(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def pick_most_recent(series: Sequence[Mapping[str, Any]] | None) -> float | None:
    """Return the value of the latest-dated entry.

    Dates are fixed-width ISO strings, so string comparison orders them. The
    latest entry decides: if its value is not a finite number the concept is
    treated as absent rather than falling back to an older period.
    """
    entries = [entry for entry in series or () if isinstance(entry, Mapping)]
    if not entries:
        return None
    latest = max(entries, key=lambda entry: str(entry.get("end") or ""))
    return _finite(latest.get("val"))


def pick_usd(us_gaap: Mapping[str, Any], tag: str) -> float | None:
    concept = us_gaap.get(tag)
    if not isinstance(concept, Mapping):
        return None
    units = concept.get("units")
    if not isinstance(units, Mapping):
        return None
    series = units.get("USD")
    if not isinstance(series, list):
        return None
    return pick_most_recent(series)


def first_available(us_gaap: Mapping[str, Any], tags: Sequence[str]) -> float | None:
    """Try each concept tag in priority order and return the first with data."""
    for tag in tags:
        value = pick_usd(us_gaap, tag)
        if value is not None:
            return value
    return None


def borrowing_base(
    receivables: float | None,
    inventory: float | None,
    ppe: float | None,
) -> float:
    """Collateral-weighted lending limit; missing components count as zero."""
    return (
        RECEIVABLES_ADVANCE_RATE * (receivables or 0.0)
        + INVENTORY_ADVANCE_RATE * (inventory or 0.0)
        + PPE_ADVANCE_RATE * (ppe or 0.0)
    )


def extract_financials(company_facts: Mapping[str, Any] | None) -> FinancialFacts:
    if not company_facts:
        return FinancialFacts()
    facts = company_facts.get("facts")
    us_gaap = facts.get("us-gaap") if isinstance(facts, Mapping) else None
    if not isinstance(us_gaap, Mapping):
        us_gaap = {}

    long_term = first_available(us_gaap, LONG_TERM_DEBT_TAGS) or 0.0
    short_term = first_available(us_gaap, SHORT_TERM_DEBT_TAGS) or 0.0
    return FinancialFacts(
        revenue=first_available(us_gaap, REVENUE_TAGS),
        cfo=first_available(us_gaap, CFO_TAGS),
        total_debt=long_term + short_term,
        accounts_payable=first_available(us_gaap, PAYABLES_TAGS),
        accounts_receivable=first_available(us_gaap, RECEIVABLES_TAGS),
        inventory=first_available(us_gaap, INVENTORY_TAGS),
        ppe=first_available(us_gaap, PPE_TAGS),
    )


def _nested(document: Mapping[str, Any], *path: str) -> Any:
    node: Any = document
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def estimate_location(submissions: Mapping[str, Any] | None) -> str | None:
    """Best-effort state or country from the filer's registration data."""
    if not submissions:
        return None
    candidates = (
        _nested(submissions, "stateOfIncorporation"),
        _nested(submissions, "addresses", "business", "stateOrCountry"),
        _nested(submissions, "addresses", "mailing", "stateOrCountry"),
        _nested(submissions, "stateOfIncorporationDescription"),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def estimate_last_fundraising_date(submissions: Mapping[str, Any] | None) -> str | None:
    """Latest filing date among capital-raise related forms (YYYY-MM-DD)."""
    if not submissions:
        return None
    recent = _nested(submissions, "filings", "recent")
    if not isinstance(recent, Mapping):
        return None
    forms = recent.get("form") or []
    dates = recent.get("filingDate") or []
    best: str | None = None
    for form, filed in zip(forms, dates):
        if not isinstance(filed, str) or not filed:
            continue
        if not FUNDRAISING_FORM_PATTERN.match(str(form).strip().upper()):
            continue
        if best is None or filed > best:
            best = filed
    return best
