# lg_console/services/api_client.py
"""
Thin async HTTP client for the LG authority.

Every call carries the session's bearer token. Error responses are turned into
RemoteError with the authority's own message, and transport failures into
NetworkError. Only read calls are retried; mutations are sent exactly once.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from lg_console.config import get_settings
from lg_console.constants import GENERIC_FAILURE_MESSAGE
from lg_console.core.exceptions import (
    MalformedResponseError,
    NetworkError,
    RemoteError,
    SessionExpiredError,
)

logger = logging.getLogger(__name__)

END_USER_PREFIX = "/end-user"
LG_RECORDS_PATH = f"{END_USER_PREFIX}/lg-records"
INSTRUCTIONS_PATH = f"{LG_RECORDS_PATH}/instructions"
ACTION_CENTER_PATH = f"{END_USER_PREFIX}/action-center"

MultipartFiles = Dict[str, Tuple[str, bytes, str]]


class LGApiClient:
    """Async client for the end-user endpoints of the LG authority."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        read_retry_attempts: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.token = token
        self.read_retry_attempts = read_retry_attempts or settings.read_retry_attempts

        client_kwargs: Dict[str, Any] = {"base_url": self.base_url, "transport": transport}
        effective_timeout = timeout if timeout is not None else settings.http_timeout_seconds
        if effective_timeout is not None:
            client_kwargs["timeout"] = effective_timeout
        self._client = httpx.AsyncClient(**client_kwargs)

    async def __aenter__(self) -> "LGApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """The authority's own error text: detail, then message, then the reason phrase."""
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            detail = body.get("detail") or body.get("message")
            if isinstance(detail, list):
                # FastAPI 422 bodies carry a list of {loc, msg, type}
                messages = [item.get("msg") for item in detail if isinstance(item, dict) and item.get("msg")]
                detail = "; ".join(messages)
            if isinstance(detail, str) and detail.strip():
                return detail
        return response.reason_phrase or GENERIC_FAILURE_MESSAGE

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.RequestError as e:
            logger.error(f"Transport failure on {method} {path}: {e!r}", exc_info=True)
            raise NetworkError(GENERIC_FAILURE_MESSAGE, cause=e) from e

        if response.is_error:
            message = self._error_message(response)
            if response.status_code == httpx.codes.UNAUTHORIZED:
                logger.warning(f"Session rejected by the authority on {method} {path}.")
                raise SessionExpiredError(message, status_code=response.status_code)
            logger.warning(f"Authority returned {response.status_code} on {method} {path}: {message}")
            raise RemoteError(message, status_code=response.status_code)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "The server returned an unreadable response.", status_code=response.status_code
            ) from e

    # --- Generic verbs ---

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None, retry: bool = True) -> Any:
        """GET with retry on transport failures only. Pass retry=False for GETs that generate documents."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.read_retry_attempts if retry else 1),
            wait=wait_exponential(multiplier=0.2, max=2),
            retry=retry_if_exception_type(NetworkError),
            reraise=True,
        ):
            with attempt:
                response = await self._request("GET", path, params=params)
        return self._json(response)

    async def post_json(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._request("POST", path, json=body if body is not None else {})
        return self._json(response)

    async def post_multipart(self, path: str, data: Dict[str, str], files: Optional[MultipartFiles] = None) -> Any:
        # httpx only switches to multipart/form-data when files are present
        response = await self._request("POST", path, data=data, files=files or None)
        return self._json(response)

    async def post_for_document(self, path: str) -> Tuple[str, Any]:
        """POST that may answer with JSON or a ready-to-print HTML page."""
        response = await self._request("POST", path)
        content_type = response.headers.get("content-type", "")
        if "text/html" in content_type:
            return "html", response.text
        return "json", self._json(response)

    # --- Reads ---

    async def list_lg_records(self) -> List[Dict[str, Any]]:
        return await self.get_json(f"{LG_RECORDS_PATH}/")

    async def get_lg_record(self, lg_record_id: int) -> Dict[str, Any]:
        return await self.get_json(f"{LG_RECORDS_PATH}/{lg_record_id}")

    async def get_action_center_section(self, section: str) -> List[Dict[str, Any]]:
        return await self.get_json(f"{ACTION_CENTER_PATH}/{section}")

    # --- Letters ---

    async def mark_instruction_accessed_for_print(self, instruction_id: int) -> Any:
        return await self.post_json(f"{INSTRUCTIONS_PATH}/{instruction_id}/mark-as-accessed-for-print")

    def letter_url(self, instruction_id: int, print_letter: bool = True) -> str:
        params: Dict[str, str] = {}
        if self.token:
            params["token"] = self.token
        if print_letter:
            params["print"] = "true"
        return str(httpx.URL(f"{self.base_url}{INSTRUCTIONS_PATH}/{instruction_id}/view-letter", params=params))
