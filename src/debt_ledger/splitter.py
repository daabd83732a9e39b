"""Split expense aggregation: share reconciliation and event payloads."""

import logging
from collections.abc import Mapping, Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from .exceptions import ValidationError
from .models import ExpenseSplitPayload, Participant, SplitExpense
from .validation import (
    DEFAULT_SPLIT_TOLERANCE,
    parse_amount,
    validate_split_expense_data,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def split_equally(total_amount: Decimal, user_ids: Sequence[str]) -> list[Participant]:
    """
    Divide a total into equal per-participant shares.

    Each share is rounded to cents; the last participant absorbs the rounding
    residual so the shares always sum to the total.

    Args:
        total_amount: Total cost
        user_ids: Participants, in order

    Returns:
        List of participants with their shares
    """
    if not user_ids:
        raise ValueError("Cannot split an expense between zero participants")

    share = (total_amount / len(user_ids)).quantize(CENT, rounding=ROUND_HALF_UP)
    participants = [Participant(user_id=uid, amount=share) for uid in user_ids]

    residual = total_amount - share * len(user_ids)
    if residual:
        participants[-1].amount += residual
        logger.debug(f"Applied rounding residual {residual} to {user_ids[-1]}")

    return participants


def share_residual(expense: SplitExpense) -> Decimal:
    """Difference between the expense total and the sum of its shares."""
    return expense.total_amount - sum(
        (p.amount for p in expense.participants), Decimal("0")
    )


def build_split_expense(
    description: str,
    total_amount: Decimal | str | float,
    participants: Sequence[Participant | Mapping[str, Any]],
    created_by: str,
    category: str = "other",
    expense_date: date | None = None,
    tolerance: Decimal = DEFAULT_SPLIT_TOLERANCE,
) -> SplitExpense:
    """
    Build the canonical split expense record.

    Args:
        description: Expense description
        total_amount: Total cost
        participants: Participants with their fixed shares (creator included)
        created_by: User id of the creator
        category: Expense category
        expense_date: Date of the expense (defaults to today)
        tolerance: Largest allowed difference between total and sum of shares

    Returns:
        The validated split expense

    Raises:
        ValidationError: If any field is invalid or the shares do not reconcile
    """
    errors = validate_split_expense_data(
        description, total_amount, participants, tolerance=tolerance
    )
    if not created_by:
        errors.append("Creator is required")
    if errors:
        raise ValidationError(errors)

    expense = SplitExpense(
        description=description.strip(),
        total_amount=parse_amount(total_amount),
        category=category,
        date=expense_date or date.today(),
        created_by=created_by,
        participants=[
            p if isinstance(p, Participant) else Participant.model_validate(p)
            for p in participants
        ],
    )

    logger.info(
        f"Built split expense '{expense.description}' for "
        f"{len(expense.participants)} participants "
        f"(residual: {share_residual(expense)})"
    )
    return expense


def build_participant_payload(
    expense: SplitExpense, participant: Participant, creator_name: str
) -> ExpenseSplitPayload:
    """Event payload telling one participant about their share."""
    return ExpenseSplitPayload(
        split_expense_id=expense.id,
        description=expense.description,
        total_amount=expense.total_amount,
        your_share=participant.amount,
        creator_name=creator_name,
        category=expense.category,
        date=expense.date,
    )
