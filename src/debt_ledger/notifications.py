"""Notification fan-out and inbox operations.

Ledger events (a new split expense, a settled debt, a payment reminder) are
turned into one notification per eligible recipient. Every dispatch is
independent: a failure for one recipient is recorded and never stops the
others, and never undoes the ledger mutation that triggered it.
"""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from .clients.ledger_api import LedgerApiClient
from .exceptions import DebtLedgerError, ValidationError
from .models import (
    CountResult,
    Debt,
    FanOutResult,
    MessageResult,
    Notification,
    NotificationDelivery,
    NotificationListResult,
    NotificationType,
    Participant,
    SplitExpense,
)
from .splitter import build_participant_payload

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------

MESSAGE_TEMPLATES: dict[NotificationType, tuple[str, str, str]] = {
    NotificationType.EXPENSE_SPLIT: (
        "New Split Expense",
        '{creatorName} added you to "{description}". '
        "Your share: {yourShare:.2f} of {totalAmount:.2f}",
        "medium",
    ),
    NotificationType.EXPENSE_CREATED: (
        "New Expense",
        '{creatorName} created "{description}" for {totalAmount:.2f}',
        "low",
    ),
    NotificationType.PAYMENT_REMINDER: (
        "Payment Reminder",
        '{creditorName} is reminding you about "{description}" - {amount:.2f}',
        "high",
    ),
    NotificationType.DEBT_PAID: (
        "Payment Received",
        '{debtorName} paid you {amount:.2f} for "{description}"',
        "medium",
    ),
}


def format_notification_message(
    notification_type: NotificationType | str, data: Mapping[str, Any]
) -> dict[str, str]:
    """
    Render the title, message and priority for a notification.

    Args:
        notification_type: The notification type
        data: Event payload (camelCase keys, as sent to the server)

    Returns:
        Dict with "title", "message" and "priority"

    Raises:
        KeyError: If the payload lacks a value the template needs
    """
    title, template, priority = MESSAGE_TEMPLATES[NotificationType(notification_type)]
    return {"title": title, "message": template.format(**data), "priority": priority}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class NotificationService:
    """Creates notifications for ledger events and manages the user's inbox."""

    def __init__(self, client: LedgerApiClient):
        self.client = client

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def send_notification(
        self,
        reference_id: str | None,
        recipient_ids: Sequence[str],
        notification_type: NotificationType,
        data: Mapping[str, Any],
    ) -> Any:
        """
        Ask the server to deliver a notification.

        Args:
            reference_id: Id of the debt or split expense the event is about
            recipient_ids: Users to notify
            notification_type: The notification type
            data: Event payload

        Returns:
            Parsed server response

        Raises:
            ValidationError: If the reference id or recipients are missing
            APIError: If the server rejects the request
        """
        if not reference_id or not recipient_ids:
            raise ValidationError(["Expense ID and recipient IDs are required"])

        payload = dict(data)
        try:
            payload.update(format_notification_message(notification_type, payload))
        except (KeyError, ValueError, TypeError):
            logger.debug(f"No display message for {notification_type} payload")

        return await self.client.send(
            "/notifications/send",
            "POST",
            body={
                "expenseId": reference_id,
                "recipientIds": list(recipient_ids),
                "type": NotificationType(notification_type).value,
                "data": payload,
            },
        )

    async def _dispatch(
        self,
        recipient_id: str,
        reference_id: str | None,
        notification_type: NotificationType,
        data: Mapping[str, Any],
    ) -> NotificationDelivery:
        """Send to one recipient, recording failure instead of raising."""
        try:
            await self.send_notification(
                reference_id, [recipient_id], notification_type, data
            )
        except DebtLedgerError as e:
            logger.warning(f"Failed to notify user {recipient_id}: {e}")
            return NotificationDelivery(user_id=recipient_id, success=False, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error notifying user {recipient_id}")
            return NotificationDelivery(
                user_id=recipient_id, success=False, error=f"{type(e).__name__}: {e}"
            )

        logger.info(f"Notification sent to user {recipient_id}")
        return NotificationDelivery(user_id=recipient_id, success=True)

    async def notify_participants(
        self,
        expense: SplitExpense,
        participants: Sequence[Participant] | None = None,
        creator_name: str = "Someone",
        notification_type: NotificationType = NotificationType.EXPENSE_SPLIT,
    ) -> FanOutResult:
        """
        Notify every participant of a split expense about their share.

        The creator and participants who already paid are skipped. Dispatches
        start in participant order and run concurrently; details are reported
        in participant order.

        Args:
            expense: The persisted split expense
            participants: Participants to consider (defaults to the expense's own)
            creator_name: Display name of the creator
            notification_type: EXPENSE_SPLIT or EXPENSE_CREATED

        Returns:
            Fan-out result with per-recipient details
        """
        if participants is None:
            participants = expense.participants

        others = [p for p in participants if p.user_id != expense.created_by]
        recipients = [p for p in others if not p.paid]

        logger.info(
            f"Notifying {len(recipients)} of {len(others)} participants "
            f"about '{expense.description}'"
        )

        details = await asyncio.gather(
            *(
                self._notify_participant(expense, p, creator_name, notification_type)
                for p in recipients
            )
        )

        return FanOutResult(
            notifications_sent=sum(1 for d in details if d.success),
            total_participants=len(others),
            details=list(details),
        )

    async def _notify_participant(
        self,
        expense: SplitExpense,
        participant: Participant,
        creator_name: str,
        notification_type: NotificationType,
    ) -> NotificationDelivery:
        try:
            data = build_participant_payload(expense, participant, creator_name).to_payload()
        except (DebtLedgerError, ValueError, TypeError) as e:
            logger.warning(f"Could not build notification for {participant.user_id}: {e}")
            return NotificationDelivery(
                user_id=participant.user_id, success=False, error=str(e)
            )
        return await self._dispatch(
            participant.user_id, expense.id, notification_type, data
        )

    async def notify_debt_created(
        self, debt: Debt, creator_name: str = "Someone"
    ) -> NotificationDelivery | None:
        """Tell the other party of a new manual debt about it."""
        recipient_id = debt.counterparty_ref
        if recipient_id is None:
            logger.warning(f"Debt {debt.id} has no counterparty to notify")
            return None

        return await self._dispatch(
            recipient_id,
            debt.id,
            NotificationType.EXPENSE_CREATED,
            {
                "debtId": debt.id,
                "description": debt.description,
                "totalAmount": float(debt.amount),
                "creatorName": creator_name,
                "direction": debt.direction.value,
                "dueDate": debt.due_date.isoformat() if debt.due_date else None,
            },
        )

    async def notify_debt_paid(
        self,
        debt: Debt,
        payer_name: str = "Someone",
        payment_method: str | None = None,
    ) -> NotificationDelivery | None:
        """
        Tell the other party of a debt that it was settled.

        Returns:
            Delivery outcome, or None if the debt has no counterparty to notify
        """
        recipient_id = debt.counterparty_ref
        if recipient_id is None:
            logger.warning(f"Debt {debt.id} has no counterparty to notify")
            return None

        return await self._dispatch(
            recipient_id,
            debt.id,
            NotificationType.DEBT_PAID,
            {
                "debtId": debt.id,
                "amount": float(debt.amount),
                "description": debt.description,
                "debtorName": payer_name,
                "paymentMethod": payment_method or debt.payment_method,
                "paidDate": _now_iso(),
            },
        )

    async def notify_settlement(
        self,
        friend_id: str,
        amount: Decimal,
        payer_name: str = "Someone",
        settlement_id: str | None = None,
        payment_method: str | None = None,
        note: str | None = None,
    ) -> NotificationDelivery:
        """Tell a friend the current user settled up with them."""
        return await self._dispatch(
            friend_id,
            settlement_id or f"settle-{friend_id}",
            NotificationType.DEBT_PAID,
            {
                "settlementId": settlement_id,
                "amount": float(amount),
                "description": note or "Settle up",
                "debtorName": payer_name,
                "paymentMethod": payment_method,
                "paidDate": _now_iso(),
            },
        )

    async def notify_payment_reminder(
        self,
        debt: Debt,
        sender_name: str = "Someone",
        message: str | None = None,
    ) -> NotificationDelivery | None:
        """
        Remind the other party of an open debt.

        Returns:
            Delivery outcome, or None if the debt has no counterparty to notify
        """
        recipient_id = debt.counterparty_ref
        if recipient_id is None:
            logger.warning(f"Debt {debt.id} has no counterparty to remind")
            return None

        return await self._dispatch(
            recipient_id,
            debt.id,
            NotificationType.PAYMENT_REMINDER,
            {
                "debtId": debt.id,
                "amount": float(debt.amount),
                "description": debt.description,
                "creditorName": sender_name,
                "note": message,
                "reminderDate": _now_iso(),
            },
        )

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    async def fetch_notifications(
        self,
        unread_only: bool = False,
        notification_type: NotificationType | None = None,
        limit: int = 50,
    ) -> NotificationListResult:
        """Fetch the current user's notifications."""
        params: dict[str, Any] = {"limit": limit}
        if unread_only:
            params["unreadOnly"] = "true"
        if notification_type:
            params["type"] = NotificationType(notification_type).value

        try:
            records = await self.client.get_collection(
                "/notifications", "notifications", params=params
            )
            notifications = [Notification.model_validate(r) for r in records]
        except DebtLedgerError as e:
            logger.error(f"Error fetching notifications: {e}")
            return NotificationListResult.failure(e)

        unread = sum(1 for n in notifications if not n.read)
        logger.info(f"Fetched {len(notifications)} notifications ({unread} unread)")
        return NotificationListResult(notifications=notifications, unread_count=unread)

    async def mark_notification_as_read(self, notification_id: str) -> MessageResult:
        """Mark one notification as read."""
        return await self._message_call(
            f"/notifications/{notification_id}/read", "PUT", "Notification marked as read"
        )

    async def mark_all_notifications_as_read(self) -> MessageResult:
        """Mark every notification as read."""
        return await self._message_call(
            "/notifications/read-all", "PUT", "All notifications marked as read"
        )

    async def delete_notification(self, notification_id: str) -> MessageResult:
        """Delete one notification."""
        return await self._message_call(
            f"/notifications/{notification_id}", "DELETE", "Notification deleted"
        )

    async def get_unread_count(self) -> CountResult:
        """Get the number of unread notifications."""
        try:
            data = await self.client.send("/notifications/unread-count")
        except DebtLedgerError as e:
            logger.error(f"Error fetching unread count: {e}")
            return CountResult.failure(e)
        count = data.get("count", 0) if isinstance(data, dict) else 0
        return CountResult(count=int(count))

    async def _message_call(
        self, endpoint: str, method: str, default_message: str
    ) -> MessageResult:
        try:
            data = await self.client.send(endpoint, method)
        except DebtLedgerError as e:
            logger.error(f"{method} {endpoint} failed: {e}")
            return MessageResult.failure(e)
        message = data.get("message") if isinstance(data, dict) else None
        return MessageResult(message=message or default_message)
