"""Async HTTP client for the Dialogue Atrium API."""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from .errors import ApiError, AtriumError, AuthError, NetworkError
from .models import Credentials, Message, OnlineStatus, Principal

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    """Extract the most specific error text from an error response."""
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            if error.get("details"):
                return str(error["details"])
            if error.get("message"):
                return str(error["message"])
        elif isinstance(error, str) and error:
            return error

    return f"HTTP {response.status_code}: {response.reason_phrase}"


def error_from_response(response: httpx.Response) -> AtriumError:
    """Map an unsuccessful response onto the error taxonomy."""
    message = _error_message(response)
    status = response.status_code

    if status in (401, 403):
        return AuthError(message, status_code=status)
    if status >= 500:
        # Server errors are transient
        return NetworkError(message, status_code=status)
    return ApiError(message, status_code=status)


class AtriumClient:
    """Client for the message log, heartbeat and user endpoints.

    All methods raise an ``AtriumError`` subclass on failure.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:3000/api/v1",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root, e.g. "http://127.0.0.1:3000/api/v1".
            timeout: Default request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "AtriumClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        client = await self._get_client()
        request_timeout = timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT

        try:
            response = await client.request(method, path, timeout=request_timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timeout: {method} {path}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}") from e

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.debug(f"{method} {path} failed: {error}")
            raise error

        try:
            return response.json()
        except ValueError as e:
            raise ApiError(
                f"Failed to parse response body: {e}", status_code=response.status_code
            ) from e

    async def get_messages(
        self,
        limit: int,
        offset: int = 0,
        sender: str | None = None,
    ) -> list[Message]:
        """Fetch one page of the log.

        The server orders newest first; ``offset`` skips the newest N.

        Args:
            limit: Page size.
            offset: Number of newest messages to skip.
            sender: Optional sender filter.

        Returns:
            Messages in server order (newest first).
        """
        params: dict[str, Any] = {"limit": limit}
        if offset:
            params["offset"] = offset
        if sender:
            params["sender"] = sender

        data = await self._request("GET", "/messages", params=params)

        try:
            return [Message.from_dict(m) for m in data.get("messages", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ApiError(f"Malformed message list: {e}") from e

    async def heartbeat(
        self,
        credentials: Credentials,
        timeout: float | None = None,
    ) -> OnlineStatus:
        """Assert liveness. Also verifies the credentials.

        The server advances the user's read watermark to the newest
        message on every successful heartbeat.
        """
        data = await self._request(
            "PUT", "/heartbeat", json=credentials.to_payload(), timeout=timeout
        )
        return OnlineStatus.from_dict(data if isinstance(data, dict) else {})

    async def get_user(self, username: str) -> Principal:
        """Fetch a user profile."""
        data = await self._request("GET", f"/users/{quote(username, safe='')}")
        try:
            return Principal.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ApiError(f"Malformed user profile: {e}") from e

    async def create_user(self, name: str, bio: str, password: str) -> Principal:
        """Register a new user. Does not authenticate."""
        data = await self._request(
            "POST", "/users", json={"name": name, "bio": bio, "password": password}
        )
        try:
            return Principal.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ApiError(f"Malformed user profile: {e}") from e

    async def send_message(self, content: str, credentials: Credentials) -> Message:
        """Append a message to the log."""
        payload = {"content": content, **credentials.to_payload()}
        data = await self._request("POST", "/messages", json=payload)
        try:
            return Message.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ApiError(f"Malformed message: {e}") from e
