"""Tests for notification fan-out and the notification inbox."""

from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest

from debt_ledger.exceptions import ValidationError
from debt_ledger.models import (
    Debt,
    NotificationType,
    Participant,
    SplitExpense,
)
from debt_ledger.notifications import format_notification_message


@pytest.fixture
def expense():
    """Persisted split expense created by u-me."""
    return SplitExpense(
        id="exp-1",
        description="Groceries",
        total_amount=Decimal("90.00"),
        category="food",
        date=date(2024, 2, 1),
        created_by="u-me",
        participants=[
            Participant(user_id="u-me", amount=Decimal("30.00")),
            Participant(user_id="u-bob", amount=Decimal("30.00")),
            Participant(user_id="u-carol", amount=Decimal("30.00"), paid=True),
        ],
    )


class TestNotifyParticipants:
    """Tests for notify_participants."""

    @pytest.mark.asyncio
    async def test_skips_creator_and_paid_participants(self, notifier, server, expense):
        result = await notifier.notify_participants(expense, creator_name="Alice")

        assert result.notifications_sent == 1
        assert result.total_participants == 2
        assert [d.user_id for d in result.details] == ["u-bob"]
        assert server.sent_to() == ["u-bob"]

    @pytest.mark.asyncio
    async def test_payload_describes_recipient_share(self, notifier, server, expense):
        await notifier.notify_participants(expense, creator_name="Alice")

        body = server.sent[0]
        assert body["expenseId"] == "exp-1"
        assert body["type"] == "expense_split"
        assert body["data"]["yourShare"] == 30.0
        assert body["data"]["totalAmount"] == 90.0
        assert body["data"]["creatorName"] == "Alice"
        assert body["data"]["title"] == "New Split Expense"
        assert "Your share: 30.00 of 90.00" in body["data"]["message"]

    @pytest.mark.asyncio
    async def test_partial_failure_is_isolated(self, notifier, server, expense):
        """One failing recipient never stops delivery to the others."""
        participants = [
            Participant(user_id="u-me", amount=Decimal("10")),
            Participant(user_id="u-bob", amount=Decimal("10")),
            Participant(user_id="u-carol", amount=Decimal("10")),
            Participant(user_id="u-dave", amount=Decimal("10")),
        ]
        server.failing_recipients = {"u-carol"}

        result = await notifier.notify_participants(expense, participants)

        assert result.total_participants == 3
        assert result.notifications_sent == 2
        assert [d.user_id for d in result.details] == ["u-bob", "u-carol", "u-dave"]
        failed = result.details[1]
        assert not failed.success
        assert failed.error == "Internal server error. Please try again."
        assert sorted(server.sent_to()) == ["u-bob", "u-dave"]
        assert result.delivery_ratio == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, notifier, server, expense):
        """A recipient whose dispatch blows up is reported, not raised."""
        participants = [
            Participant(user_id="u-bob", amount=Decimal("10")),
            Participant(user_id="u-carol", amount=Decimal("10")),
            Participant(user_id="u-dave", amount=Decimal("10")),
        ]
        real_send = notifier.send_notification

        async def send(reference_id, recipient_ids, notification_type, data):
            if recipient_ids == ["u-carol"]:
                raise RuntimeError("template exploded")
            return await real_send(reference_id, recipient_ids, notification_type, data)

        with patch.object(notifier, "send_notification", side_effect=send):
            result = await notifier.notify_participants(expense, participants)

        assert result.notifications_sent == 2
        assert [d.success for d in result.details] == [True, False, True]
        assert result.details[1].error == "RuntimeError: template exploded"
        assert sorted(server.sent_to()) == ["u-bob", "u-dave"]

    @pytest.mark.asyncio
    async def test_undecodable_reply_is_isolated(self, notifier, server, expense):
        participants = [
            Participant(user_id="u-bob", amount=Decimal("10")),
            Participant(user_id="u-carol", amount=Decimal("10")),
        ]
        server.corrupt_recipients = {"u-bob"}

        result = await notifier.notify_participants(expense, participants)

        assert [d.success for d in result.details] == [False, True]
        assert result.details[0].error == "Invalid response format from server"
        assert server.sent_to() == ["u-carol"]

    @pytest.mark.asyncio
    async def test_no_eligible_recipients(self, notifier, server, expense):
        participants = [Participant(user_id="u-me", amount=Decimal("90"))]

        result = await notifier.notify_participants(expense, participants)

        assert result.notifications_sent == 0
        assert result.total_participants == 0
        assert result.details == []
        assert server.sent == []


class TestDebtNotifications:
    """Tests for single-recipient debt notifications."""

    @pytest.mark.asyncio
    async def test_debt_paid_goes_to_counterparty(self, notifier, server):
        debt = Debt.model_validate(server.add_debt("i-owe", amount=12.0))

        delivery = await notifier.notify_debt_paid(debt, "Alice", "cash")

        assert delivery.success
        assert server.sent[0]["recipientIds"] == ["u-bob"]
        assert server.sent[0]["data"]["paymentMethod"] == "cash"
        assert server.sent[0]["data"]["message"] == 'Alice paid you 12.00 for "Lunch"'

    @pytest.mark.asyncio
    async def test_missing_counterparty_sends_nothing(self, notifier, server):
        debt = Debt(id="d1", amount=Decimal("5"), description="x", direction="owe-me")

        assert await notifier.notify_payment_reminder(debt) is None
        assert server.sent == []

    @pytest.mark.asyncio
    async def test_send_requires_reference_and_recipients(self, notifier):
        with pytest.raises(ValidationError):
            await notifier.send_notification(
                None, ["u-bob"], NotificationType.DEBT_PAID, {}
            )

        with pytest.raises(ValidationError):
            await notifier.send_notification(
                "d1", [], NotificationType.DEBT_PAID, {}
            )


class TestInbox:
    """Tests for the notification inbox operations."""

    @pytest.mark.asyncio
    async def test_fetch_counts_unread(self, notifier, server):
        server.notifications = [
            {"_id": "n1", "type": "debt_paid", "data": {"amount": 5}, "read": False},
            {"_id": "n2", "type": "expense_split", "read": True},
        ]

        result = await notifier.fetch_notifications()

        assert result.success
        assert result.unread_count == 1
        assert result.notifications[0].payload == {"amount": 5}
        assert result.notifications[1].type == NotificationType.EXPENSE_SPLIT

    @pytest.mark.asyncio
    async def test_fetch_passes_filters(self, notifier, server):
        await notifier.fetch_notifications(
            unread_only=True, notification_type=NotificationType.DEBT_PAID, limit=10
        )

        params = server.requests[0].url.params
        assert params["unreadOnly"] == "true"
        assert params["type"] == "debt_paid"
        assert params["limit"] == "10"

    @pytest.mark.asyncio
    async def test_mark_all_read_with_empty_body(self, notifier, server):
        server.notifications = [{"_id": "n1", "type": "debt_paid", "read": False}]

        result = await notifier.mark_all_notifications_as_read()
        count = await notifier.get_unread_count()

        assert result.success
        assert result.message == "Operation completed successfully"
        assert count.count == 0

    @pytest.mark.asyncio
    async def test_missing_route_is_reported(self, notifier):
        result = await notifier.delete_notification("n1")

        assert not result.success
        assert result.error == "RouteNotFoundError"


class TestFormatNotificationMessage:
    """Tests for format_notification_message."""

    def test_payment_reminder(self):
        formatted = format_notification_message(
            "payment_reminder",
            {"creditorName": "Alice", "description": "Lunch", "amount": 20},
        )

        assert formatted == {
            "title": "Payment Reminder",
            "message": 'Alice is reminding you about "Lunch" - 20.00',
            "priority": "high",
        }

    def test_missing_field_raises(self):
        with pytest.raises(KeyError):
            format_notification_message(NotificationType.DEBT_PAID, {"amount": 1})
