"""Shared fixtures for Debt Ledger tests.

The ledger API is replaced by an in-memory fake served through
httpx.MockTransport, so the full client stack (auth header, response
classification, normalization) runs without a real backend.
"""

import json
import re
from typing import Any

import httpx
import pytest
import pytest_asyncio

from debt_ledger.clients.ledger_api import LedgerApiClient
from debt_ledger.config import Settings
from debt_ledger.credentials import StaticCredentialProvider
from debt_ledger.db import Database
from debt_ledger.models import LedgerUser
from debt_ledger.notifications import NotificationService
from debt_ledger.service import DebtLedgerService, SplitExpenseService

ME = {"_id": "u-me", "name": "Alice", "email": "alice@example.com"}
BOB = {"_id": "u-bob", "name": "Bob", "email": "bob@example.com"}
CAROL = {"_id": "u-carol", "name": "Carol", "email": "carol@example.com"}


def json_response(status: int, data: Any) -> httpx.Response:
    return httpx.Response(status, json=data)


class FakeLedgerServer:
    """In-memory stand-in for the ledger REST API."""

    def __init__(self):
        self.debts: dict[str, dict[str, Any]] = {}
        self.expenses: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self.sent: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.failing_recipients: set[str] = set()
        self.corrupt_recipients: set[str] = set()
        self.balances: dict[str, float] = {}
        self.settlements: list[dict[str, Any]] = []
        self.expense_response: Any = None
        self.unauthorized = False
        self._next_id = 1

    def _new_id(self, prefix: str) -> str:
        value = f"{prefix}-{self._next_id}"
        self._next_id += 1
        return value

    def add_debt(self, direction: str = "owe-me", **fields) -> dict[str, Any]:
        """Seed a debt as the server would return it."""
        debt_id = fields.pop("_id", None) or self._new_id("debt")
        counterparty = fields.pop("counterparty", BOB)
        record = {
            "_id": debt_id,
            "amount": 100.0,
            "description": "Lunch",
            "type": direction,
            "status": "pending",
            "creditor": ME if direction == "owe-me" else counterparty,
            "debtor": counterparty if direction == "owe-me" else ME,
            "createdAt": "2024-01-15T10:00:00Z",
        }
        record.update(fields)
        self.debts[debt_id] = record
        return record

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method
        body = json.loads(request.content) if request.content else None

        if self.unauthorized:
            return json_response(401, {"message": "Token expired"})

        if path == "/api/debts/owed-to-me" and method == "GET":
            return json_response(200, {"debts": self._debts("owe-me")})
        if path == "/api/debts/owed-by-me" and method == "GET":
            return json_response(200, self._debts("i-owe"))
        if path == "/api/debts/overview" and method == "GET":
            return json_response(200, {"overview": {"totalDebts": len(self.debts)}})
        if path == "/api/debts" and method == "POST":
            return self._create_debt(body)

        match = re.fullmatch(r"/api/debts/([^/]+)(/mark-paid|/remind)?", path)
        if match:
            debt = self.debts.get(match.group(1))
            if debt is None:
                return json_response(404, {"message": "Debt not found"})
            action = match.group(2)
            if action == "/mark-paid" and method == "PATCH":
                if debt["status"] == "paid":
                    return json_response(409, {"message": "Debt already paid"})
                debt["status"] = "paid"
                debt["paymentMethod"] = (body or {}).get("paymentMethod")
                return json_response(
                    200, {"message": "Debt marked as paid", "debt": debt}
                )
            if action == "/remind" and method == "POST":
                return json_response(200, {"message": "Reminder sent"})
            if action is None and method == "DELETE":
                del self.debts[debt["_id"]]
                return json_response(200, {"message": "Debt deleted successfully"})

        if path == "/api/split-expenses" and method == "POST":
            record = {**body, "_id": self._new_id("exp")}
            self.expenses.append(record)
            if self.expense_response is not None:
                return json_response(201, self.expense_response)
            return json_response(201, {"success": True, "expense": record})
        if path == "/api/split-expenses" and method == "GET":
            return json_response(200, {"data": self.expenses})
        if path == "/api/split-expenses/summary" and method == "GET":
            total = sum(e["totalAmount"] for e in self.expenses)
            return json_response(
                200,
                {"summary": {"totalExpenses": len(self.expenses), "totalAmount": total}},
            )

        match = re.fullmatch(r"/api/split-expenses/balance/([^/]+)", path)
        if match and method == "GET":
            friend_id = match.group(1)
            return json_response(
                200,
                {"data": {"friendId": friend_id, "balance": self.balances.get(friend_id, 0)}},
            )

        match = re.fullmatch(r"/api/split-expenses/settle/([^/]+)", path)
        if match and method == "POST":
            settlement = {**body, "_id": self._new_id("set"), "to": match.group(1)}
            self.settlements.append(settlement)
            return json_response(
                201, {"message": "Settlement recorded", "settlement": settlement}
            )

        match = re.fullmatch(r"/api/split-expenses/([^/]+)", path)
        if match:
            expense = next(
                (e for e in self.expenses if e["_id"] == match.group(1)), None
            )
            if expense is None:
                return json_response(404, {"message": "Split expense not found"})
            if method == "GET":
                return json_response(200, {"expense": expense})
            if method == "DELETE":
                self.expenses.remove(expense)
                return json_response(200, {"message": "Split expense deleted"})

        if path == "/api/notifications/send" and method == "POST":
            recipients = set(body["recipientIds"])
            if recipients & self.failing_recipients:
                return json_response(500, {"message": "mailer down"})
            if recipients & self.corrupt_recipients:
                return httpx.Response(
                    200,
                    headers={"Content-Encoding": "gzip"},
                    stream=httpx.ByteStream(b"not gzip at all"),
                )
            self.sent.append(body)
            return json_response(200, {"success": True})
        if path == "/api/notifications" and method == "GET":
            return json_response(200, {"notifications": self.notifications})
        if path == "/api/notifications/read-all" and method == "PUT":
            for n in self.notifications:
                n["read"] = True
            return httpx.Response(200, content=b"")
        if path == "/api/notifications/unread-count" and method == "GET":
            unread = sum(1 for n in self.notifications if not n.get("read"))
            return json_response(200, {"count": unread})

        return httpx.Response(
            404, text="<!DOCTYPE html><html><body>Cannot GET</body></html>"
        )

    def _debts(self, direction: str) -> list[dict[str, Any]]:
        return [d for d in self.debts.values() if d["type"] == direction]

    def _create_debt(self, body: dict[str, Any]) -> httpx.Response:
        debt_id = self._new_id("debt")
        counterparty = {
            "_id": body.get("friendId") or "u-new",
            "email": body.get("friendEmail"),
        }
        record = {
            "_id": debt_id,
            "friendId": body.get("friendId"),
            "friendEmail": body.get("friendEmail"),
            "amount": body["amount"],
            "description": body["description"],
            "type": body["type"],
            "dueDate": body.get("dueDate"),
            "status": "pending",
            "creditor": ME if body["type"] == "owe-me" else counterparty,
            "debtor": counterparty if body["type"] == "owe-me" else ME,
        }
        self.debts[debt_id] = record
        return json_response(
            201, {"message": "Debt created successfully", "debt": record}
        )

    def sent_to(self) -> list[str]:
        """Recipient ids of every delivered notification, in delivery order."""
        return [rid for body in self.sent for rid in body["recipientIds"]]


@pytest.fixture
def server():
    """Fresh fake ledger server."""
    return FakeLedgerServer()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary database."""
    return Settings(
        _env_file=None,
        api_url="http://ledger.test/",
        auth_token="test-token",
        user_id="u-me",
        user_name="Alice",
        database_path=tmp_path / "ledger.db",
    )


@pytest.fixture
def db(settings):
    """Temporary database."""
    database = Database(settings.database_path)
    yield database
    database.close()


@pytest_asyncio.fixture
async def client(settings, server):
    """API client wired to the fake server."""
    api = LedgerApiClient.from_settings(
        settings,
        StaticCredentialProvider("test-token"),
        transport=httpx.MockTransport(server.handle),
    )
    yield api
    await api.close()


@pytest.fixture
def current_user():
    return LedgerUser(id="u-me", name="Alice")


@pytest.fixture
def notifier(client):
    return NotificationService(client)


@pytest.fixture
def ledger(settings, client, db, notifier, current_user):
    """Debt ledger service over the fake server."""
    return DebtLedgerService(settings, client, db, notifier, current_user)


@pytest.fixture
def splits(settings, client, notifier, current_user):
    """Split expense service over the fake server."""
    return SplitExpenseService(settings, client, notifier, current_user)
