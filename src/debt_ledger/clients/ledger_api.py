"""Ledger REST API client."""

import json
import logging
from typing import Any

import httpx

from ..config import Settings
from ..credentials import CredentialProvider, StaticCredentialProvider, format_bearer
from ..exceptions import (
    AuthenticationError,
    ConflictError,
    MalformedResponseError,
    RequestError,
    ResourceNotFoundError,
    RouteNotFoundError,
)

logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = "Network error - please check your connection and try again"

# Display message per status code. {message} is the server-supplied message.
STATUS_MESSAGES: dict[int, str] = {
    400: "{message}",
    401: "Authentication required. Please log in again.",
    403: "Access forbidden. You may not have permission for this action.",
    404: "{message}",
    409: "Conflict: {message}",
    422: "Validation error: {message}",
    500: "Internal server error. Please try again.",
}


def is_html(text: str) -> bool:
    """Check if a response body is an HTML page rather than JSON."""
    lowered = text.lstrip().lower()
    return lowered.startswith("<!doctype") or "<html" in lowered


def human_readable_error(status_code: int, error_data: dict[str, Any]) -> str:
    """
    Turn a failed response into a message suitable for direct display.

    Args:
        status_code: HTTP status code
        error_data: Parsed error body (may carry "message" or "error")

    Returns:
        Display message
    """
    message = (
        error_data.get("message")
        or error_data.get("error")
        or f"Server error: {status_code}"
    )
    template = STATUS_MESSAGES.get(status_code, "{message}")
    return template.format(message=message)


def normalize_collection(data: Any, key: str) -> list[dict[str, Any]]:
    """
    Normalize a list response into a plain list.

    The server answers list queries with a bare array, ``{key: [...]}`` or
    ``{data: [...]}``.

    Args:
        data: Parsed response body
        key: Collection key to look for first

    Returns:
        List of records
    """
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get(key)
        if items is None:
            items = data.get("data")
        if items is None:
            return []
        if isinstance(items, list):
            return items
    raise MalformedResponseError(f"Expected a list of {key} from server")


class LedgerApiClient:
    """Async client for the ledger REST API."""

    def __init__(
        self,
        base_url: str,
        credentials: CredentialProvider | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the ledger API client."""
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials or StaticCredentialProvider(None)
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        credentials: CredentialProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "LedgerApiClient":
        """Build a client for the configured API."""
        return cls(
            settings.api_base_url,
            credentials=credentials,
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    def auth_headers(self) -> dict[str, str]:
        """Authorization header for the current credential, if any."""
        token = self.credentials.get_token()
        if not token:
            logger.warning("No authentication token found")
            return {}
        return {"Authorization": format_bearer(token)}

    async def send(
        self,
        endpoint: str,
        method: str = "GET",
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """
        Send an authenticated request and classify the response.

        Args:
            endpoint: Path relative to the API base, e.g. "/debts"
            method: HTTP method
            body: Optional JSON body
            params: Optional query parameters

        Returns:
            Parsed JSON body, or {"success": True, ...} for an empty body

        Raises:
            APIError: A typed subclass describing why the request failed
        """
        endpoint = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        method = method.upper()

        logger.info(f"Making request: {method} {endpoint}")

        try:
            response = await self.client.request(
                method,
                endpoint,
                json=body,
                params=params,
                headers=self.auth_headers(),
            )
        except httpx.TransportError as e:
            logger.error(f"Network request failed for {endpoint}: {e}")
            raise RequestError(NETWORK_ERROR_MESSAGE) from e
        except httpx.DecodingError as e:
            logger.error(f"Could not decode response body for {endpoint}: {e}")
            raise MalformedResponseError("Invalid response format from server") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Request failed for {method} {endpoint}: {e}")
            raise RequestError(f"Request failed: {e}") from e

        logger.debug(
            f"Response status: {response.status_code} {response.reason_phrase}"
        )
        return self._handle_response(response, method, endpoint)

    async def get_collection(
        self, endpoint: str, key: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """GET a list endpoint and normalize its shape."""
        data = await self.send(endpoint, "GET", params=params)
        return normalize_collection(data, key)

    def _handle_response(self, response: httpx.Response, method: str, endpoint: str) -> Any:
        """Classify a raw response into parsed data or a typed error."""
        status = response.status_code
        text = response.text

        if status == 401:
            logger.error(f"Authentication failed: {method} {endpoint}")
            raise AuthenticationError()

        if status == 404:
            if is_html(text):
                logger.error(f"Server route not found: {method} {endpoint}")
                raise RouteNotFoundError(method, endpoint)
            try:
                error_data = json.loads(text)
            except ValueError:
                logger.warning(f"404 error body could not be parsed for {endpoint}")
                raise ResourceNotFoundError(f"Resource not found: {endpoint}") from None
            message = "Resource not found"
            if isinstance(error_data, dict):
                message = error_data.get("message") or error_data.get("error") or message
            logger.warning(f"Resource not found: {message}")
            raise ResourceNotFoundError(message)

        if not response.is_success:
            if is_html(text):
                message = f"Server error ({status}): The backend returned an HTML page."
                logger.error(f"Request failed: {method} {endpoint} ({message})")
                raise RequestError(message, status_code=status)

            try:
                error_data = json.loads(text)
            except ValueError:
                error_data = {"message": text or f"HTTP Error {status}"}
            if not isinstance(error_data, dict):
                error_data = {"message": f"HTTP Error {status}"}

            message = human_readable_error(status, error_data)
            logger.error(f"Request failed: {method} {endpoint} -> {status}: {message}")
            if status == 409:
                raise ConflictError(message)
            raise RequestError(message, status_code=status)

        if not text.strip():
            logger.warning(f"Empty response body: {method} {endpoint}")
            return {"success": True, "message": "Operation completed successfully"}

        if is_html(text):
            logger.error("Server returned HTML instead of JSON")
            raise MalformedResponseError(
                "Server configuration error: Received HTML instead of JSON.",
                status_code=status,
            )

        try:
            data = json.loads(text)
        except ValueError:
            logger.error(f"Failed to parse response as JSON: {method} {endpoint}")
            raise MalformedResponseError(
                "Invalid response format from server", status_code=status
            ) from None

        if isinstance(data, dict) and data.get("success") is False:
            message = data.get("message") or "Request failed"
            logger.error(f"Server reported failure: {method} {endpoint}: {message}")
            raise RequestError(message, status_code=status)

        logger.debug(f"Request completed: {method} {endpoint}")
        return data
