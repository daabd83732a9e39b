"""Debt Ledger - track debts and split expenses between friends."""

__version__ = "0.1.0"

from .clients.ledger_api import LedgerApiClient
from .config import Settings, load_settings
from .db import Database
from .models import (
    Debt,
    DebtDirection,
    DebtInput,
    DebtStatus,
    FanOutResult,
    Participant,
    PaymentMethod,
    SplitExpense,
)
from .notifications import NotificationService
from .reporting import ReportingService, compute_debt_summary
from .service import DebtLedgerService, SplitExpenseService
from .splitter import build_split_expense, split_equally
from .validation import (
    validate_debt_data,
    validate_settlement_data,
    validate_split_expense_data,
)

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "LedgerApiClient",
    "Debt",
    "DebtDirection",
    "DebtInput",
    "DebtStatus",
    "FanOutResult",
    "Participant",
    "PaymentMethod",
    "SplitExpense",
    "NotificationService",
    "ReportingService",
    "compute_debt_summary",
    "DebtLedgerService",
    "SplitExpenseService",
    "build_split_expense",
    "split_equally",
    "validate_debt_data",
    "validate_settlement_data",
    "validate_split_expense_data",
]
