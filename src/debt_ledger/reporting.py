"""Read-only dashboard aggregates over the debt ledger."""

import asyncio
import logging
from collections.abc import Iterable
from datetime import date
from decimal import Decimal

from .models import (
    Debt,
    DebtStatus,
    DebtSummary,
    OverviewResult,
    SummaryResult,
)
from .service import DebtLedgerService

logger = logging.getLogger(__name__)


def _open_total(debts: Iterable[Debt]) -> Decimal:
    return sum(
        (d.amount for d in debts if d.status == DebtStatus.OPEN), Decimal("0")
    )


def compute_debt_summary(
    owed_to_me: list[Debt], owed_by_me: list[Debt], today: date | None = None
) -> DebtSummary:
    """
    Aggregate both sides of the ledger for the dashboard.

    Totals only include open debts; paid debts are counted but no longer
    owed. An open debt whose due date is before today is overdue.

    Args:
        owed_to_me: Debts others owe the current user
        owed_by_me: Debts the current user owes
        today: Reference date for overdue detection (defaults to today)

    Returns:
        Dashboard summary
    """
    today = today or date.today()
    everything = [*owed_to_me, *owed_by_me]

    return DebtSummary(
        total_owed_to_me=_open_total(owed_to_me),
        total_owed_by_me=_open_total(owed_by_me),
        owed_to_me_count=len(owed_to_me),
        owed_by_me_count=len(owed_by_me),
        open_count=sum(1 for d in everything if d.status == DebtStatus.OPEN),
        paid_count=sum(1 for d in everything if d.status == DebtStatus.PAID),
        overdue=[
            d
            for d in everything
            if d.status == DebtStatus.OPEN and d.due_date and d.due_date < today
        ],
    )


class ReportingService:
    """Dashboard queries composed from the debt ledger service."""

    def __init__(self, ledger: DebtLedgerService):
        self.ledger = ledger

    async def get_debt_overview(self) -> OverviewResult:
        """Server-computed overview, surfaced as returned."""
        return await self.ledger.get_debt_overview()

    async def build_summary(self, today: date | None = None) -> SummaryResult:
        """Fetch both debt lists and aggregate them locally."""
        owed_to_me, owed_by_me = await asyncio.gather(
            self.ledger.fetch_debts_owed_to_me(),
            self.ledger.fetch_debts_owed_by_me(),
        )

        for result in (owed_to_me, owed_by_me):
            if not result.success:
                return SummaryResult(
                    success=False,
                    message=result.message,
                    error=result.error,
                    auth_error=result.auth_error,
                )

        summary = compute_debt_summary(owed_to_me.debts, owed_by_me.debts, today)
        logger.info(
            f"Summary: owed to me {summary.total_owed_to_me}, "
            f"owed by me {summary.total_owed_by_me}, net {summary.net_balance}"
        )
        return SummaryResult(summary=summary)
