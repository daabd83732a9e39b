"""Tests for the ledger API client's request and response handling."""

import json

import httpx
import pytest
import pytest_asyncio

from debt_ledger.clients.ledger_api import (
    NETWORK_ERROR_MESSAGE,
    LedgerApiClient,
    human_readable_error,
    normalize_collection,
)
from debt_ledger.credentials import StaticCredentialProvider
from debt_ledger.exceptions import (
    AuthenticationError,
    ConflictError,
    MalformedResponseError,
    RequestError,
    ResourceNotFoundError,
    RouteNotFoundError,
)

BASE_URL = "http://ledger.test/api"


class Responder:
    """Transport handler returning a fixed response and recording requests."""

    def __init__(
        self, response: httpx.Response | None = None, exc: Exception | None = None
    ):
        self.response = response
        self.exc = exc
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc
        return self.response


@pytest_asyncio.fixture
async def make_client():
    """Factory for clients backed by a Responder."""
    clients = []

    def _make(responder: Responder, token: str | None = "abc123") -> LedgerApiClient:
        api = LedgerApiClient(
            BASE_URL,
            StaticCredentialProvider(token),
            transport=httpx.MockTransport(responder),
        )
        clients.append(api)
        return api

    yield _make
    for api in clients:
        await api.close()


class TestRequestShape:
    """Tests for what the client puts on the wire."""

    @pytest.mark.asyncio
    async def test_sends_bearer_token_and_json_body(self, make_client):
        responder = Responder(httpx.Response(200, json={"ok": True}))
        api = make_client(responder)

        await api.send("/debts", "post", body={"amount": 10})

        request = responder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/debts"
        assert request.headers["Authorization"] == "Bearer abc123"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"amount": 10}

    @pytest.mark.asyncio
    async def test_does_not_double_prefix_bearer(self, make_client):
        responder = Responder(httpx.Response(200, json={}))
        api = make_client(responder, token="Bearer xyz")

        await api.send("/debts/owed-to-me")

        assert responder.requests[0].headers["Authorization"] == "Bearer xyz"

    @pytest.mark.asyncio
    async def test_no_token_sends_no_authorization_header(self, make_client):
        responder = Responder(httpx.Response(200, json={}))
        api = make_client(responder, token=None)

        await api.send("debts")

        assert "Authorization" not in responder.requests[0].headers
        assert responder.requests[0].url.path == "/api/debts"


class TestResponseClassification:
    """Tests for mapping responses to data or typed errors."""

    @pytest.mark.asyncio
    async def test_json_body_is_returned(self, make_client):
        api = make_client(Responder(httpx.Response(200, json={"debts": []})))
        assert await api.send("/debts/owed-to-me") == {"debts": []}

    @pytest.mark.asyncio
    async def test_empty_body_is_success(self, make_client):
        api = make_client(Responder(httpx.Response(204)))
        assert await api.send("/debts/d1", "DELETE") == {
            "success": True,
            "message": "Operation completed successfully",
        }

    @pytest.mark.asyncio
    async def test_401_raises_authentication_error(self, make_client):
        api = make_client(Responder(httpx.Response(401, json={"message": "expired"})))

        with pytest.raises(AuthenticationError) as exc_info:
            await api.send("/debts/owed-to-me")

        assert str(exc_info.value) == "Authentication required. Please log in again."
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_404_html_is_missing_route(self, make_client):
        """A 404 HTML page means the backend route is not registered."""
        api = make_client(
            Responder(httpx.Response(404, text="<!DOCTYPE html><html></html>"))
        )

        with pytest.raises(RouteNotFoundError) as exc_info:
            await api.send("/debts/overview")

        assert str(exc_info.value) == (
            "Server route not found: GET /api/debts/overview. "
            "The backend route may not be registered."
        )

    @pytest.mark.asyncio
    async def test_404_json_is_missing_resource(self, make_client):
        """A 404 JSON body means the record does not exist."""
        api = make_client(
            Responder(httpx.Response(404, json={"message": "Debt not found"}))
        )

        with pytest.raises(ResourceNotFoundError) as exc_info:
            await api.send("/debts/nope", "DELETE")

        assert str(exc_info.value) == "Debt not found"
        assert not isinstance(exc_info.value, RouteNotFoundError)

    @pytest.mark.asyncio
    async def test_404_unparsable_body(self, make_client):
        api = make_client(Responder(httpx.Response(404, text="gone")))

        with pytest.raises(ResourceNotFoundError, match="Resource not found: /debts/x"):
            await api.send("/debts/x")

    @pytest.mark.asyncio
    async def test_409_raises_conflict(self, make_client):
        api = make_client(
            Responder(httpx.Response(409, json={"message": "Debt already paid"}))
        )

        with pytest.raises(ConflictError) as exc_info:
            await api.send("/debts/d1/mark-paid", "PATCH", body={})

        assert str(exc_info.value) == "Conflict: Debt already paid"
        assert exc_info.value.status_code == 409

    @pytest.mark.parametrize(
        "status,body,message",
        [
            (400, {"message": "Bad amount"}, "Bad amount"),
            (
                403,
                {"message": "nope"},
                "Access forbidden. You may not have permission for this action.",
            ),
            (422, {"error": "amount too large"}, "Validation error: amount too large"),
            (500, {"message": "boom"}, "Internal server error. Please try again."),
            (418, {}, "Server error: 418"),
        ],
    )
    @pytest.mark.asyncio
    async def test_status_messages(self, make_client, status, body, message):
        api = make_client(Responder(httpx.Response(status, json=body)))

        with pytest.raises(RequestError) as exc_info:
            await api.send("/debts")

        assert str(exc_info.value) == message
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_html_error_page(self, make_client):
        api = make_client(
            Responder(httpx.Response(502, text="<html><body>Bad gateway</body></html>"))
        )

        with pytest.raises(RequestError, match=r"Server error \(502\)"):
            await api.send("/debts")

    @pytest.mark.asyncio
    async def test_html_on_success_is_malformed(self, make_client):
        api = make_client(Responder(httpx.Response(200, text="<!doctype html><p>hi")))

        with pytest.raises(MalformedResponseError, match="Received HTML instead of JSON"):
            await api.send("/debts")

    @pytest.mark.asyncio
    async def test_invalid_json_is_malformed(self, make_client):
        api = make_client(Responder(httpx.Response(200, text="{not json")))

        with pytest.raises(MalformedResponseError, match="Invalid response format"):
            await api.send("/debts")

    @pytest.mark.asyncio
    async def test_success_false_body_raises(self, make_client):
        api = make_client(
            Responder(httpx.Response(200, json={"success": False, "message": "Nope"}))
        )

        with pytest.raises(RequestError, match="Nope"):
            await api.send("/debts")

    @pytest.mark.asyncio
    async def test_network_failure(self, make_client):
        api = make_client(Responder(exc=httpx.ConnectError("connection refused")))

        with pytest.raises(RequestError) as exc_info:
            await api.send("/debts")

        assert str(exc_info.value) == NETWORK_ERROR_MESSAGE
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_undecodable_body_is_malformed(self, make_client):
        """A body that fails content decoding surfaces as a typed error."""
        api = make_client(
            Responder(
                httpx.Response(
                    200,
                    headers={"Content-Encoding": "gzip"},
                    stream=httpx.ByteStream(b"not gzip at all"),
                )
            )
        )

        with pytest.raises(MalformedResponseError, match="Invalid response format"):
            await api.send("/debts", "POST", body={"amount": 1})

    @pytest.mark.asyncio
    async def test_too_many_redirects(self, make_client):
        api = make_client(Responder(exc=httpx.TooManyRedirects("redirect loop")))

        with pytest.raises(RequestError, match="Request failed: redirect loop"):
            await api.send("/debts")


class TestNormalizeCollection:
    """Tests for normalize_collection."""

    def test_bare_list(self):
        assert normalize_collection([{"_id": "d1"}], "debts") == [{"_id": "d1"}]

    def test_keyed_list(self):
        assert normalize_collection({"debts": [{"_id": "d1"}]}, "debts") == [
            {"_id": "d1"}
        ]

    def test_data_list(self):
        assert normalize_collection({"data": [{"_id": "d1"}]}, "debts") == [
            {"_id": "d1"}
        ]

    def test_missing_collection_is_empty(self):
        assert normalize_collection({"success": True}, "debts") == []

    def test_unexpected_shape_raises(self):
        with pytest.raises(MalformedResponseError):
            normalize_collection({"debts": "oops"}, "debts")

        with pytest.raises(MalformedResponseError):
            normalize_collection("oops", "debts")


class TestHumanReadableError:
    """Tests for human_readable_error."""

    def test_prefers_message_over_error(self):
        assert human_readable_error(400, {"message": "a", "error": "b"}) == "a"

    def test_falls_back_to_status(self):
        assert human_readable_error(409, {}) == "Conflict: Server error: 409"
