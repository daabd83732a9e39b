"""Input validation for debts and split expenses.

Every function here is pure: it inspects the input and returns the full list
of problems found. An empty list means the input is valid. Rules never
short-circuit, so callers can surface all messages at once.
"""

import re
from collections.abc import Mapping, Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError
from .models import DebtDirection, DebtInput, Participant, PaymentMethod

DEFAULT_MAX_DEBT_AMOUNT = Decimal("100000")
DEFAULT_SPLIT_TOLERANCE = Decimal("0.01")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def parse_amount(value: Any) -> Decimal | None:
    """
    Parse a user-supplied amount into a Decimal.

    Args:
        value: A number or numeric string

    Returns:
        The parsed amount, or None if it is missing, non-numeric or not finite
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def is_valid_email(email: str) -> bool:
    """Check that an address is shaped like local@domain.tld."""
    return bool(_EMAIL_RE.match(email.strip()))


def coerce_debt_input(data: DebtInput | Mapping[str, Any]) -> DebtInput:
    """
    Turn raw debt input into a DebtInput.

    Raises:
        ValidationError: If the input is not a mapping or a field has the wrong
            shape (for example a list where a description is expected)
    """
    if isinstance(data, DebtInput):
        return data
    try:
        return DebtInput.model_validate(dict(data))
    except PydanticValidationError as e:
        raise ValidationError(
            [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
        ) from e
    except (TypeError, ValueError) as e:
        raise ValidationError(["Debt data must be a mapping"]) from e


def validate_debt_data(
    data: DebtInput | Mapping[str, Any],
    max_amount: Decimal = DEFAULT_MAX_DEBT_AMOUNT,
    currency_symbol: str = "₹",
) -> list[str]:
    """
    Validate input for a manual debt.

    Args:
        data: Debt input, either a DebtInput or a raw mapping (camelCase or snake_case keys)
        max_amount: Largest amount a single debt may carry
        currency_symbol: Symbol used in the cap message

    Returns:
        List of error messages (empty if valid)
    """
    try:
        data = coerce_debt_input(data)
    except ValidationError as e:
        return e.errors

    errors = []

    if not data.friend_id and not data.friend_email:
        errors.append("Either friendId or friendEmail is required")

    if data.friend_email and "@" not in data.friend_email:
        errors.append("Valid friend email is required")

    amount = parse_amount(data.amount)
    if amount is None or amount <= 0:
        errors.append("Valid positive amount is required")

    if not data.description or not data.description.strip():
        errors.append("Description is required")

    valid_directions = [d.value for d in DebtDirection]
    if data.direction not in valid_directions:
        errors.append('Type must be either "owe-me" or "i-owe"')

    if amount is not None and amount > max_amount:
        errors.append(f"Amount cannot exceed {currency_symbol}{max_amount:,}")

    return errors


def validate_split_expense_data(
    description: str | None,
    total_amount: Any,
    participants: Sequence[Participant | Mapping[str, Any]] | None,
    tolerance: Decimal = DEFAULT_SPLIT_TOLERANCE,
) -> list[str]:
    """
    Validate input for a split expense, including share reconciliation.

    Args:
        description: Expense description
        total_amount: Total cost of the expense
        participants: Participants with their fixed shares
        tolerance: Largest allowed difference between the total and the sum of shares

    Returns:
        List of error messages (empty if valid)
    """
    errors = []

    if not description or not description.strip():
        errors.append("Description is required")

    total = parse_amount(total_amount)
    if total is None or total <= 0:
        errors.append("Valid total amount is required")

    if not participants:
        errors.append("At least one participant is required")
        return errors

    shares_total = Decimal("0")
    for index, participant in enumerate(participants, start=1):
        if isinstance(participant, Participant):
            user_id, raw_amount, email = (
                participant.user_id,
                participant.amount,
                participant.email,
            )
        else:
            user_id = participant.get("userId") or participant.get("user_id")
            raw_amount = participant.get("amount")
            email = participant.get("email")

        if not user_id:
            errors.append(f"Participant {index} must have a user ID")

        share = parse_amount(raw_amount)
        if share is None or share <= 0:
            errors.append(f"Participant {index} must have a valid amount")
        else:
            shares_total += share

        if email and not is_valid_email(email):
            errors.append(f"Participant {index} must have a valid email address")

    if total is not None and abs(total - shares_total) > tolerance:
        errors.append(
            f"Total amount ({total}) must equal sum of splits ({shares_total:.2f})"
        )

    return errors


def validate_settlement_data(
    friend_id: str | None,
    amount: Any,
    payment_method: PaymentMethod | str | None = None,
    max_amount: Decimal = DEFAULT_MAX_DEBT_AMOUNT,
    currency_symbol: str = "₹",
) -> list[str]:
    """
    Validate a settle-up payment to a friend.

    Args:
        friend_id: The friend being paid
        amount: Amount paid
        payment_method: Optional payment method
        max_amount: Largest amount a single payment may carry
        currency_symbol: Symbol used in the cap message

    Returns:
        List of error messages (empty if valid)
    """
    errors = []

    if not friend_id:
        errors.append("Friend ID is required")

    parsed = parse_amount(amount)
    if parsed is None or parsed <= 0:
        errors.append("Valid positive amount is required")
    elif parsed > max_amount:
        errors.append(f"Amount cannot exceed {currency_symbol}{max_amount:,}")

    if payment_method is not None:
        method = (
            payment_method.value
            if isinstance(payment_method, PaymentMethod)
            else payment_method
        )
        valid_methods = [m.value for m in PaymentMethod]
        if method not in valid_methods:
            errors.append(f"Payment method must be one of: {', '.join(valid_methods)}")

    return errors
