"""Pydantic domain models for Debt Ledger."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .exceptions import AuthenticationError, ValidationError, error_kind


class WireModel(BaseModel):
    """Base for models exchanged with the ledger API (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


# ============================================================================
# Enums
# ============================================================================


class DebtDirection(str, Enum):
    """Which way the money flows, from the current user's point of view."""

    OWED_TO_ME = "owe-me"
    I_OWE = "i-owe"


class DebtStatus(str, Enum):
    """Debt lifecycle status. PAID is terminal."""

    OPEN = "pending"
    PAID = "paid"


class PaymentMethod(str, Enum):
    """Payment methods accepted when settling a debt."""

    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    CREDIT_CARD = "credit_card"
    OTHER = "other"


class NotificationType(str, Enum):
    """Ledger events a notification can describe."""

    EXPENSE_SPLIT = "expense_split"
    PAYMENT_REMINDER = "payment_reminder"
    DEBT_PAID = "debt_paid"
    EXPENSE_CREATED = "expense_created"


# ============================================================================
# Debt Models
# ============================================================================


class LedgerUser(WireModel):
    """A user as embedded in debt records by the server."""

    id: str = Field(validation_alias=AliasChoices("_id", "id", "userId"))
    name: str | None = None
    email: str | None = None


class Debt(WireModel):
    """A directional monetary obligation between the current user and a friend."""

    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    friend_id: str | None = None
    friend_email: str | None = None
    amount: Decimal
    description: str
    direction: DebtDirection = Field(validation_alias=AliasChoices("type", "direction"))
    due_date: date | None = None
    status: DebtStatus = DebtStatus.OPEN
    payment_method: str | None = None
    creditor: LedgerUser | None = None
    debtor: LedgerUser | None = None
    created_at: datetime | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == DebtStatus.PAID

    @property
    def counterparty(self) -> LedgerUser | None:
        """The other party of this debt, if the server embedded it."""
        if self.direction == DebtDirection.I_OWE:
            return self.creditor
        return self.debtor

    @property
    def counterparty_ref(self) -> str | None:
        """Best identifier for the other party: friend id, embedded user, then email."""
        if self.friend_id:
            return self.friend_id
        if self.counterparty is not None:
            return self.counterparty.id
        return self.friend_email


class DebtInput(WireModel):
    """Raw, unvalidated input for creating a manual debt.

    Fields are loose; validate_debt_data reports every problem at once.
    """

    friend_id: str | None = None
    friend_email: str | None = None
    amount: Any = None
    description: str | None = None
    direction: str | None = Field(
        default=None, validation_alias=AliasChoices("type", "direction")
    )
    due_date: date | str | None = None


# ============================================================================
# Split Expense Models
# ============================================================================


class Participant(WireModel):
    """A participant's fixed share in a split expense."""

    user_id: str
    amount: Decimal
    paid: bool = False
    name: str | None = None
    email: str | None = None


class SplitExpense(WireModel):
    """A shared expense owned by a creator and divided among participants."""

    id: str | None = Field(default=None, validation_alias=AliasChoices("_id", "id"))
    description: str
    total_amount: Decimal
    category: str = "other"
    date: date
    created_by: str
    participants: list[Participant]

    def to_payload(self) -> dict[str, Any]:
        """Request body for persisting this expense."""
        return {
            "description": self.description,
            "totalAmount": float(self.total_amount),
            "category": self.category,
            "date": self.date.isoformat(),
            "createdBy": self.created_by,
            "participants": [
                {
                    "userId": p.user_id,
                    "amount": float(p.amount),
                    "paid": p.paid,
                }
                for p in self.participants
            ],
        }


class ExpenseSplitPayload(WireModel):
    """Event payload describing a split expense to one participant."""

    split_expense_id: str | None = None
    description: str
    total_amount: Decimal
    your_share: Decimal
    creator_name: str
    category: str
    date: date

    def to_payload(self) -> dict[str, Any]:
        return {
            "splitExpenseId": self.split_expense_id,
            "description": self.description,
            "totalAmount": float(self.total_amount),
            "yourShare": float(self.your_share),
            "creatorName": self.creator_name,
            "category": self.category,
            "date": self.date.isoformat(),
        }


# ============================================================================
# Notification Models
# ============================================================================


class Notification(WireModel):
    """A delivered notification, as listed in the recipient's inbox."""

    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    recipient_id: str | None = None
    type: NotificationType
    payload: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("data", "payload")
    )
    read: bool = False
    created_at: datetime | None = None


class NotificationDelivery(BaseModel):
    """Outcome of dispatching one notification to one recipient."""

    user_id: str
    success: bool
    error: str | None = None


class FanOutResult(BaseModel):
    """Aggregate outcome of a notification fan-out."""

    success: bool = True
    notifications_sent: int = 0
    total_participants: int = 0
    details: list[NotificationDelivery] = Field(default_factory=list)
    message: str | None = None

    @property
    def delivery_ratio(self) -> float:
        """Share of eligible recipients that were notified successfully."""
        if self.total_participants == 0:
            return 1.0
        return self.notifications_sent / self.total_participants


# ============================================================================
# Result Models
# ============================================================================


class OperationResult(BaseModel):
    """Uniform result returned by every service operation."""

    success: bool = True
    message: str | None = None
    error: str | None = None
    auth_error: bool = False
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def failure(cls, exc: Exception, **fields: Any):
        """Build a failed result carrying the error's display message."""
        return cls(
            success=False,
            message=str(exc),
            error=error_kind(exc),
            auth_error=isinstance(exc, AuthenticationError),
            errors=exc.errors if isinstance(exc, ValidationError) else [],
            **fields,
        )


class MessageResult(OperationResult):
    pass


class DebtListResult(OperationResult):
    debts: list[Debt] = Field(default_factory=list)
    count: int = 0
    total_amount: Decimal = Decimal("0")
    skipped: int = 0


class DebtResult(OperationResult):
    debt: Debt | None = None


class OverviewResult(OperationResult):
    overview: dict[str, Any] | None = None


class SplitExpenseResult(OperationResult):
    expense: SplitExpense | None = None
    notifications: FanOutResult | None = None


class SplitExpenseListResult(OperationResult):
    expenses: list[SplitExpense] = Field(default_factory=list)
    skipped: int = 0


class ExpenseSummaryResult(OperationResult):
    summary: dict[str, Any] | None = None


class BalanceResult(OperationResult):
    """Net balance with one friend; positive when the friend owes the current user."""

    friend_id: str | None = None
    balance: Decimal | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class SettlementResult(OperationResult):
    friend_id: str | None = None
    amount: Decimal | None = None
    settlement: dict[str, Any] | None = None


class NotificationListResult(OperationResult):
    notifications: list[Notification] = Field(default_factory=list)
    unread_count: int = 0


class CountResult(OperationResult):
    count: int = 0


# ============================================================================
# Reporting Models
# ============================================================================


class DebtSummary(BaseModel):
    """Dashboard aggregate computed from both debt lists."""

    total_owed_to_me: Decimal = Decimal("0")
    total_owed_by_me: Decimal = Decimal("0")
    owed_to_me_count: int = 0
    owed_by_me_count: int = 0
    open_count: int = 0
    paid_count: int = 0
    overdue: list[Debt] = Field(default_factory=list)

    @property
    def net_balance(self) -> Decimal:
        """Positive when others owe the current user more than they owe."""
        return self.total_owed_to_me - self.total_owed_by_me


class SummaryResult(OperationResult):
    summary: DebtSummary | None = None
