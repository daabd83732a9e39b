"""Service layer for the debt ledger and split expenses.

Each operation validates locally, persists the mutation through the ledger
API and then fans out notifications to the affected counterparties. Every
operation reports back through a uniform result model instead of raising.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine, Mapping, Sequence
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .clients.ledger_api import LedgerApiClient
from .config import Settings
from .db import Database
from .exceptions import (
    ConfigurationError,
    ConflictError,
    DebtLedgerError,
    MalformedResponseError,
    ValidationError,
)
from .models import (
    BalanceResult,
    Debt,
    DebtInput,
    DebtListResult,
    DebtResult,
    ExpenseSummaryResult,
    LedgerUser,
    MessageResult,
    NotificationDelivery,
    OverviewResult,
    Participant,
    PaymentMethod,
    SettlementResult,
    SplitExpense,
    SplitExpenseListResult,
    SplitExpenseResult,
)
from .notifications import NotificationService
from .splitter import build_split_expense
from .validation import (
    coerce_debt_input,
    parse_amount,
    validate_debt_data,
    validate_settlement_data,
)

logger = logging.getLogger(__name__)


def parse_debt(record: Any) -> Debt:
    """Parse one debt record from the server."""
    try:
        return Debt.model_validate(record)
    except PydanticValidationError as e:
        raise MalformedResponseError(f"Unexpected debt record from server: {e}") from e


def parse_split_expense(record: Any) -> SplitExpense:
    """Parse one split expense record from the server."""
    try:
        return SplitExpense.model_validate(record)
    except PydanticValidationError as e:
        raise MalformedResponseError(
            f"Unexpected split expense record from server: {e}"
        ) from e


def parse_records(
    records: Sequence[Any], parse: Callable[[Any], Any], label: str
) -> tuple[list[Any], int]:
    """
    Parse a list of server records, skipping the ones that do not fit.

    Args:
        records: Raw records from a list endpoint
        parse: Parser raising MalformedResponseError on a bad record
        label: Record kind for log messages

    Returns:
        Tuple of (parsed records, number skipped)
    """
    parsed = []
    skipped = 0
    for record in records:
        try:
            parsed.append(parse(record))
        except MalformedResponseError as e:
            skipped += 1
            record_id = (
                (record.get("_id") or record.get("id"))
                if isinstance(record, dict)
                else None
            )
            logger.warning(f"Skipping {label} record {record_id}: {e}")
    return parsed, skipped


def created_record_id(result: Any, key: str) -> str | None:
    """
    Pull the id of a newly created record out of a create response.

    The record may sit under ``key`` or be the body itself, and some servers
    answer with just the id.
    """
    record = (result.get(key) or result) if isinstance(result, dict) else result
    if isinstance(record, dict):
        record_id = record.get("_id") or record.get("id")
    elif isinstance(record, (str, int)) and not isinstance(record, bool):
        record_id = record
    else:
        record_id = None
    if record_id is None or record_id == "":
        logger.warning(f"Create response carried no {key} id: {result!r}")
        return None
    return str(record_id)


def _response_message(result: Any, default: str) -> str:
    if isinstance(result, dict) and result.get("message"):
        return str(result["message"])
    return default


class NotificationScheduler:
    """Runs notification fan-outs in the background, detached from the caller."""

    def __init__(self):
        self._pending: set[asyncio.Task] = set()

    def schedule(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> list[Any]:
        """Wait for every scheduled fan-out and return their outcomes."""
        tasks = list(self._pending)
        if not tasks:
            return []
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Background notification failed: {result!r}")
        return [r for r in results if not isinstance(r, BaseException)]


class DebtLedgerService:
    """Debt lifecycle: create, settle, delete, remind and query."""

    def __init__(
        self,
        settings: Settings,
        client: LedgerApiClient,
        database: Database,
        notifier: NotificationService | None = None,
        current_user: LedgerUser | None = None,
    ):
        """Initialize the debt ledger service."""
        self.settings = settings
        self.client = client
        self.db = database
        self.notifier = notifier or NotificationService(client)
        self.current_user = current_user
        self.scheduler = NotificationScheduler()
        self._settle_locks: dict[str, asyncio.Lock] = {}
        self._settle_waiters: dict[str, int] = {}

    @property
    def user_name(self) -> str:
        if self.current_user and self.current_user.name:
            return self.current_user.name
        return "Someone"

    def _notify(self, coro: Coroutine[Any, Any, Any]):
        if not self.settings.notifications_enabled:
            coro.close()
            return
        self.scheduler.schedule(coro)

    async def drain_notifications(self) -> list[NotificationDelivery]:
        """Wait for background notifications triggered by earlier operations."""
        results = await self.scheduler.drain()
        return [r for r in results if isinstance(r, NotificationDelivery)]

    # ========================================================================
    # Queries
    # ========================================================================

    async def fetch_debts_owed_to_me(self) -> DebtListResult:
        """Fetch debts other users owe the current user."""
        return await self._fetch_debts("/debts/owed-to-me", "owed to me")

    async def fetch_debts_owed_by_me(self) -> DebtListResult:
        """Fetch debts the current user owes others."""
        return await self._fetch_debts("/debts/owed-by-me", "owed by me")

    async def _fetch_debts(self, endpoint: str, label: str) -> DebtListResult:
        logger.info(f"Fetching debts {label}")
        try:
            records = await self.client.get_collection(endpoint, "debts")
        except DebtLedgerError as e:
            logger.error(f"Error fetching debts {label}: {e}")
            return DebtListResult.failure(e)

        debts, skipped = parse_records(records, parse_debt, "debt")
        total = sum((debt.amount for debt in debts), Decimal("0"))
        logger.info(f"Fetched {len(debts)} debts {label} (total {total})")
        return DebtListResult(
            debts=debts, count=len(debts), total_amount=total, skipped=skipped
        )

    async def get_debt_overview(self) -> OverviewResult:
        """Fetch the server-side aggregate of the current user's debts."""
        logger.info("Fetching debt overview")
        try:
            result = await self.client.send("/debts/overview")
        except DebtLedgerError as e:
            logger.error(f"Error fetching debt overview: {e}")
            return OverviewResult.failure(e)

        overview = (result.get("overview") or result) if isinstance(result, dict) else None
        return OverviewResult(
            overview=overview,
            message=_response_message(result, "Overview fetched successfully"),
        )

    # ========================================================================
    # Mutations
    # ========================================================================

    async def create_manual_debt(self, data: DebtInput | Mapping[str, Any]) -> DebtResult:
        """
        Create a debt between the current user and a friend.

        Validation runs first; invalid input never reaches the network.

        Args:
            data: Debt input (DebtInput or a raw mapping)

        Returns:
            Result carrying the created debt, or every validation message
        """
        try:
            data = coerce_debt_input(data)
        except ValidationError as e:
            logger.warning(f"Debt creation rejected: {e.errors}")
            return DebtResult.failure(e)

        errors = validate_debt_data(
            data,
            max_amount=self.settings.max_debt_amount,
            currency_symbol=self.settings.currency_symbol,
        )
        if errors:
            logger.warning(f"Debt creation rejected: {errors}")
            return DebtResult.failure(ValidationError(errors))

        payload = {
            "friendId": data.friend_id,
            "friendEmail": data.friend_email or None,
            "amount": float(parse_amount(data.amount)),
            "description": data.description.strip(),
            "type": data.direction,
            "dueDate": str(data.due_date) if data.due_date else None,
        }

        logger.info(
            f"Creating debt: {payload['type']} {payload['amount']} "
            f"'{payload['description']}'"
        )
        try:
            result = await self.client.send("/debts", "POST", body=payload)
            record = (result.get("debt") or result) if isinstance(result, dict) else result
            debt = parse_debt(record)
        except DebtLedgerError as e:
            logger.error(f"Debt creation failed: {e}")
            return DebtResult.failure(e)

        logger.info(f"Debt created successfully: {debt.id}")
        self._notify(self.notifier.notify_debt_created(debt, self.user_name))

        return DebtResult(
            debt=debt, message=_response_message(result, "Debt created successfully")
        )

    async def mark_debt_as_paid(
        self, debt_id: str, payment_method: PaymentMethod | str | None = None
    ) -> DebtResult:
        """
        Settle a debt (Open -> Paid).

        Settlement is guarded by a per-debt lock and an atomic claim in the
        local database, so concurrent attempts on the same debt settle it
        exactly once; every other attempt fails with a ConflictError. The
        claim is confirmed once the server has accepted the settlement and
        released on any other exit, cancellation included. A claim left
        unconfirmed for longer than ``settlement_claim_timeout`` seconds
        (for example by a crashed process) can be taken over.

        Args:
            debt_id: The debt to settle
            payment_method: Optional payment method

        Returns:
            Result carrying the settled debt
        """
        method = (
            payment_method.value
            if isinstance(payment_method, PaymentMethod)
            else payment_method
        )
        lock = self._settle_locks.setdefault(debt_id, asyncio.Lock())
        self._settle_waiters[debt_id] = self._settle_waiters.get(debt_id, 0) + 1

        try:
            async with lock:
                result, debt = await self._settle(debt_id, method)
        except DebtLedgerError as e:
            return DebtResult.failure(e)
        finally:
            self._settle_waiters[debt_id] -= 1
            if not self._settle_waiters[debt_id]:
                del self._settle_waiters[debt_id]
                self._settle_locks.pop(debt_id, None)

        logger.info(f"Debt {debt_id} marked as paid")
        if debt is not None:
            self._notify(self.notifier.notify_debt_paid(debt, self.user_name, method))

        return DebtResult(
            debt=debt, message=_response_message(result, "Debt marked as paid")
        )

    async def _settle(self, debt_id: str, method: str | None) -> tuple[Any, Debt | None]:
        """Claim, send and confirm one settlement. Caller holds the debt's lock."""
        stale_after = timedelta(seconds=self.settings.settlement_claim_timeout)
        if not self.db.claim_settlement(debt_id, method, stale_after=stale_after):
            logger.warning(f"Debt {debt_id} is already paid")
            raise ConflictError(f"Debt {debt_id} is already marked as paid")

        logger.info(f"Marking debt as paid: {debt_id}")
        body = {"paymentMethod": method} if method else {}
        accepted = False
        try:
            try:
                result = await self.client.send(
                    f"/debts/{debt_id}/mark-paid", "PATCH", body=body
                )
            except ConflictError as e:
                # The server already holds this debt as paid; keep the claim.
                logger.warning(f"Server rejected settlement of {debt_id}: {e}")
                accepted = True
                raise
            except DebtLedgerError as e:
                logger.error(f"Error marking debt as paid: {e}")
                raise
            accepted = True
        finally:
            if accepted:
                self.db.confirm_settlement(debt_id)
            else:
                self.db.release_settlement(debt_id)

        record = result.get("debt") if isinstance(result, dict) else None
        try:
            debt = parse_debt(record) if record else None
        except MalformedResponseError as e:
            logger.warning(f"Debt {debt_id} settled; returned record unusable: {e}")
            debt = None
        return result, debt

    async def delete_debt(self, debt_id: str) -> MessageResult:
        """Delete a debt, open or paid. Unknown ids fail with ResourceNotFoundError."""
        logger.info(f"Deleting debt: {debt_id}")
        try:
            result = await self.client.send(f"/debts/{debt_id}", "DELETE")
        except DebtLedgerError as e:
            logger.error(f"Error deleting debt: {e}")
            return MessageResult.failure(e)

        self.db.release_settlement(debt_id)
        logger.info(f"Debt {debt_id} deleted")
        return MessageResult(message=_response_message(result, "Debt deleted successfully"))

    async def send_payment_reminder(
        self, debt: Debt | str, message: str = "Payment reminder"
    ) -> MessageResult:
        """
        Remind the other party about an open debt.

        Ledger state is not changed. Paid debts cannot be reminded about.

        Args:
            debt: The debt, or just its id
            message: Reminder text

        Returns:
            Result with the server's message
        """
        debt_id = debt.id if isinstance(debt, Debt) else debt
        already_paid = isinstance(debt, Debt) and debt.is_paid
        if already_paid or self.db.is_settled(debt_id):
            logger.warning(f"Refusing reminder for paid debt {debt_id}")
            return MessageResult.failure(
                ConflictError(f"Debt {debt_id} is already paid; nothing to remind")
            )

        logger.info(f"Sending payment reminder for debt: {debt_id}")
        try:
            result = await self.client.send(
                f"/debts/{debt_id}/remind", "POST", body={"message": message}
            )
        except DebtLedgerError as e:
            logger.error(f"Error sending payment reminder: {e}")
            return MessageResult.failure(e)

        if isinstance(debt, Debt):
            self._notify(
                self.notifier.notify_payment_reminder(debt, self.user_name, message)
            )

        return MessageResult(message=_response_message(result, "Payment reminder sent"))


class SplitExpenseService:
    """Creates split expenses and notifies their participants."""

    def __init__(
        self,
        settings: Settings,
        client: LedgerApiClient,
        notifier: NotificationService | None = None,
        current_user: LedgerUser | None = None,
    ):
        """Initialize the split expense service."""
        self.settings = settings
        self.client = client
        self.notifier = notifier or NotificationService(client)
        self.current_user = current_user
        self.scheduler = NotificationScheduler()

    async def create_split_expense(
        self,
        description: str,
        total_amount: Decimal | str | float,
        participants: Sequence[Participant | Mapping[str, Any]],
        category: str = "other",
        expense_date: date | None = None,
        wait_for_notifications: bool = True,
    ) -> SplitExpenseResult:
        """
        Create a split expense and notify every participant who still owes.

        Shares must reconcile with the total before anything is persisted.
        Notification failures are reported in the result and never fail the
        expense itself.

        Args:
            description: Expense description
            total_amount: Total cost
            participants: Participants and their fixed shares (creator included)
            category: Expense category
            expense_date: Date of the expense (defaults to today)
            wait_for_notifications: Await the fan-out and report it, or run
                it in the background

        Returns:
            Result carrying the persisted expense and the fan-out outcome
        """
        if self.current_user is None:
            return SplitExpenseResult.failure(
                ConfigurationError(
                    "Current user not found. Please ensure you are logged in."
                )
            )

        try:
            expense = build_split_expense(
                description,
                total_amount,
                participants,
                created_by=self.current_user.id,
                category=category,
                expense_date=expense_date,
                tolerance=self.settings.split_tolerance,
            )
        except ValidationError as e:
            logger.warning(f"Split expense rejected: {e.errors}")
            return SplitExpenseResult.failure(e)

        logger.info(f"Creating split expense '{expense.description}'")
        try:
            result = await self.client.send(
                "/split-expenses", "POST", body=expense.to_payload()
            )
        except DebtLedgerError as e:
            logger.error(f"Split expense creation failed: {e}")
            return SplitExpenseResult.failure(e)

        expense_id = created_record_id(result, "expense")
        expense = expense.model_copy(update={"id": expense_id})
        logger.info(f"Split expense created: {expense.id}")

        fan_out = None
        if self.settings.notifications_enabled:
            creator_name = self.current_user.name or "Someone"
            notify = self.notifier.notify_participants(expense, creator_name=creator_name)
            if wait_for_notifications:
                fan_out = await notify
                logger.info(
                    f"Notified {fan_out.notifications_sent} of "
                    f"{fan_out.total_participants} participants"
                )
            else:
                self.scheduler.schedule(notify)

        return SplitExpenseResult(
            expense=expense,
            notifications=fan_out,
            message=_response_message(result, "Split expense created successfully"),
        )

    async def fetch_split_expenses(self) -> SplitExpenseListResult:
        """Fetch split expenses the current user takes part in."""
        try:
            records = await self.client.get_collection("/split-expenses", "expenses")
        except DebtLedgerError as e:
            logger.error(f"Error fetching split expenses: {e}")
            return SplitExpenseListResult.failure(e)

        expenses, skipped = parse_records(records, parse_split_expense, "split expense")
        logger.info(f"Fetched {len(expenses)} split expenses")
        return SplitExpenseListResult(expenses=expenses, skipped=skipped)

    async def get_split_expense(self, expense_id: str) -> SplitExpenseResult:
        """Fetch one split expense by id."""
        logger.info(f"Fetching split expense: {expense_id}")
        try:
            result = await self.client.send(f"/split-expenses/{expense_id}")
            record = (
                (result.get("expense") or result.get("data") or result)
                if isinstance(result, dict)
                else result
            )
            expense = parse_split_expense(record)
        except DebtLedgerError as e:
            logger.error(f"Error fetching split expense {expense_id}: {e}")
            return SplitExpenseResult.failure(e)

        return SplitExpenseResult(expense=expense, message="Split expense fetched")

    async def delete_split_expense(self, expense_id: str) -> MessageResult:
        """Delete a split expense. Unknown ids fail with ResourceNotFoundError."""
        logger.info(f"Deleting split expense: {expense_id}")
        try:
            result = await self.client.send(f"/split-expenses/{expense_id}", "DELETE")
        except DebtLedgerError as e:
            logger.error(f"Error deleting split expense: {e}")
            return MessageResult.failure(e)

        logger.info(f"Split expense {expense_id} deleted")
        return MessageResult(
            message=_response_message(result, "Split expense deleted successfully")
        )

    async def get_expense_summary(self) -> ExpenseSummaryResult:
        """Fetch the server-side summary of the current user's split expenses."""
        logger.info("Fetching split expense summary")
        try:
            result = await self.client.send("/split-expenses/summary")
        except DebtLedgerError as e:
            logger.error(f"Error fetching expense summary: {e}")
            return ExpenseSummaryResult.failure(e)

        summary = (
            (result.get("summary") or result.get("data") or result)
            if isinstance(result, dict)
            else None
        )
        return ExpenseSummaryResult(
            summary=summary,
            message=_response_message(result, "Summary fetched successfully"),
        )

    async def get_balance_with_friend(self, friend_id: str) -> BalanceResult:
        """
        Fetch the net split-expense balance with one friend.

        A positive balance means the friend owes the current user.
        """
        logger.info(f"Fetching balance with friend: {friend_id}")
        try:
            result = await self.client.send(f"/split-expenses/balance/{friend_id}")
        except DebtLedgerError as e:
            logger.error(f"Error fetching balance with {friend_id}: {e}")
            return BalanceResult.failure(e, friend_id=friend_id)

        details = result.get("data", result) if isinstance(result, dict) else {}
        if not isinstance(details, dict):
            details = {}
        raw = details.get("balance", details.get("netBalance"))
        balance = parse_amount(raw) if raw is not None else None
        if raw is not None and balance is None:
            logger.warning(f"Unusable balance with {friend_id}: {raw!r}")

        return BalanceResult(friend_id=friend_id, balance=balance, details=details)

    async def settle_with_friend(
        self,
        friend_id: str,
        amount: Decimal | str | float,
        payment_method: PaymentMethod | str | None = None,
        note: str | None = None,
    ) -> SettlementResult:
        """
        Record a settle-up payment from the current user to a friend.

        Args:
            friend_id: The friend being paid
            amount: Amount paid
            payment_method: Optional payment method
            note: Optional note shown to the friend

        Returns:
            Result carrying the server's settlement record
        """
        errors = validate_settlement_data(
            friend_id,
            amount,
            payment_method,
            max_amount=self.settings.max_debt_amount,
            currency_symbol=self.settings.currency_symbol,
        )
        if errors:
            logger.warning(f"Settlement rejected: {errors}")
            return SettlementResult.failure(ValidationError(errors), friend_id=friend_id)

        value = parse_amount(amount)
        method = (
            payment_method.value
            if isinstance(payment_method, PaymentMethod)
            else payment_method
        )
        body: dict[str, Any] = {"amount": float(value)}
        if method:
            body["paymentMethod"] = method
        if note:
            body["note"] = note

        logger.info(f"Settling {value} with friend {friend_id}")
        try:
            result = await self.client.send(
                f"/split-expenses/settle/{friend_id}", "POST", body=body
            )
        except DebtLedgerError as e:
            logger.error(f"Settlement with {friend_id} failed: {e}")
            return SettlementResult.failure(e, friend_id=friend_id)

        settlement = result.get("settlement") if isinstance(result, dict) else None
        if not isinstance(settlement, dict):
            settlement = None

        if self.settings.notifications_enabled:
            payer_name = (self.current_user.name if self.current_user else None) or "Someone"
            self.scheduler.schedule(
                self.notifier.notify_settlement(
                    friend_id,
                    value,
                    payer_name,
                    settlement_id=created_record_id(result, "settlement"),
                    payment_method=method,
                    note=note,
                )
            )

        return SettlementResult(
            friend_id=friend_id,
            amount=value,
            settlement=settlement,
            message=_response_message(result, "Settlement recorded"),
        )

    async def drain_notifications(self) -> list[Any]:
        """Wait for background notifications triggered by earlier operations."""
        return await self.scheduler.drain()
