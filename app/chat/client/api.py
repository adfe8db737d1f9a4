"""
HTTP access to the chat REST API.

ChatSession talks to the server through the ChatApi protocol so tests and
other transports can stand in for RestChatApi.

Error mapping:
    4xx/5xx response  -> ApiError(status, error_code, message) from the body
    transport failure -> ApiError(0, NETWORK_ERROR)
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

NETWORK_ERROR = "NETWORK_ERROR"
DEFAULT_TIMEOUT_SECONDS = 10.0


class ApiError(Exception):
    """
    A failed chat API call.

    Attributes:
        status: HTTP status, 0 when no response was received
        error_code: Machine-readable code from the server (e.g. EDIT_TIME_EXPIRED)
        message: Human-readable message from the server
    """

    def __init__(self, status: int, error_code: str, message: str = ""):
        super().__init__(message or error_code)
        self.status = status
        self.error_code = error_code
        self.message = message

    @property
    def is_network_error(self) -> bool:
        return self.error_code == NETWORK_ERROR

    def __repr__(self) -> str:
        return (
            f"ApiError(status={self.status}, error_code={self.error_code!r}, "
            f"message={self.message!r})"
        )


class ChatApi(Protocol):
    """Operations ChatSession needs from the server."""

    async def list_messages(self, chat_id: str, limit: int, offset: int) -> list[dict]: ...

    async def send_message(
        self, chat_id: str, content: str | None, media: dict | None = None
    ) -> dict: ...

    async def edit_message(self, chat_id: str, message_id: str, content: str) -> dict: ...

    async def delete_message(self, chat_id: str, message_id: str, for_all: bool = True) -> None: ...

    async def mark_read(self, chat_id: str) -> dict: ...

    async def list_conversations(self) -> list[dict]: ...


class RestChatApi:
    """
    ChatApi over the REST endpoints, using httpx.AsyncClient.

    Args:
        base_url: Root of the chat API, e.g. https://host/api/v1/chat
        token: JWT access token sent as a Bearer credential
        client: Optional preconfigured AsyncClient (tests pass one with a
            MockTransport); its base_url and headers are left untouched
    """

    def __init__(self, base_url: str, token: str, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(DEFAULT_TIMEOUT_SECONDS),
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(
                method, self._url(path), headers=self._headers(), **kwargs
            )
        except httpx.HTTPError as exc:
            logger.warning(f"Chat API {method} {path} failed: {exc}")
            raise ApiError(0, NETWORK_ERROR, str(exc)) from exc

        if response.is_error:
            raise self._error_from_response(response)
        return response

    @staticmethod
    def _error_from_response(response: httpx.Response) -> ApiError:
        """Build an ApiError from the server's error body."""
        try:
            body: Any = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            message = body.get("error") or body.get("detail") or ""
            error_code = body.get("error_code") or f"HTTP_{response.status_code}"
            if not message:
                # Serializer errors come back as {"field": ["..."]}
                message = "; ".join(
                    f"{field}: {' '.join(map(str, errors)) if isinstance(errors, list) else errors}"
                    for field, errors in body.items()
                )
        else:
            message = response.reason_phrase
            error_code = f"HTTP_{response.status_code}"

        return ApiError(response.status_code, str(error_code), str(message))

    @staticmethod
    def _results(body: Any) -> list[dict]:
        # Paginated endpoints wrap rows in {"count", "next", "previous", "results"}
        if isinstance(body, dict):
            return list(body.get("results", []))
        return list(body)

    async def list_messages(self, chat_id: str, limit: int, offset: int) -> list[dict]:
        """One page of history, newest first."""
        response = await self._request(
            "GET",
            f"conversations/{chat_id}/messages/",
            params={"limit": limit, "offset": offset},
        )
        return self._results(response.json())

    async def send_message(
        self, chat_id: str, content: str | None, media: dict | None = None
    ) -> dict:
        payload: dict[str, Any] = {"content": content}
        if media is not None:
            payload["media"] = media
        response = await self._request(
            "POST", f"conversations/{chat_id}/messages/", json=payload
        )
        return response.json()

    async def edit_message(self, chat_id: str, message_id: str, content: str) -> dict:
        response = await self._request(
            "PATCH",
            f"conversations/{chat_id}/messages/{message_id}/",
            json={"content": content},
        )
        return response.json()

    async def delete_message(self, chat_id: str, message_id: str, for_all: bool = True) -> None:
        await self._request(
            "DELETE",
            f"conversations/{chat_id}/messages/{message_id}/",
            params={"for_all": "true" if for_all else "false"},
        )

    async def mark_read(self, chat_id: str) -> dict:
        response = await self._request("POST", f"conversations/{chat_id}/read/")
        return response.json()

    async def list_conversations(self) -> list[dict]:
        response = await self._request("GET", "conversations/")
        return self._results(response.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
