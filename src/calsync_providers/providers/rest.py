"""Shared behaviour of bearer-token JSON REST providers."""

import asyncio
from abc import abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from ..auth import CalendarAuthEngine, OAuthError
from ..config import Settings
from ..models import ProviderState, WriteResult
from .base import (
    AuthenticationError, BaseCalendarProvider, ParseError, classify_error, error_type_for_status, make_error,
)

CONFLICT_MESSAGE = "Conflict: The event was modified on the server. Please refresh and try again."
NOT_FOUND_MESSAGE = "Event not found. It may have been deleted."
NOT_AUTHENTICATED = "Not authenticated"


class _TokenRejected(Exception):
    """The API answered 401 to a bearer request."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class TokenRestProvider(BaseCalendarProvider):
    """Bearer-auth JSON provider with one refresh-and-retry on 401."""

    items_key = 'value'

    def __init__(
        self,
        source: Any,
        settings: Settings,
        auth_engine: CalendarAuthEngine,
        http_client: Optional[httpx.AsyncClient] = None,
        notifier: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(source, settings, notifier)
        self.auth_engine = auth_engine
        self._http_client = http_client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        self._owns_client = http_client is None

    @property
    @abstractmethod
    def api_base(self) -> str:
        """Root URL of the REST API."""

    def _tenant_id(self) -> Optional[str]:
        return None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        if self.source.auth is None:
            self.update_status(state=ProviderState.ERROR, error="Not authenticated. Please connect your account.")
            return False

        try:
            tokens = await self.auth_engine.ensure_valid_token(
                self.provider_type, self.source.auth, tenant_id=self._tenant_id()
            )
        except OAuthError as e:
            self.handle_error(AuthenticationError(str(e), original_error=e), "Token refresh")
            return False

        self.source.auth = tokens
        if self.status.state in (ProviderState.ERROR, ProviderState.DISABLED, ProviderState.CONNECTING):
            self.update_status(state=ProviderState.IDLE, error=None)
        return True

    async def disconnect(self) -> None:
        """Revoke the tokens where the provider supports it, then forget them."""
        if self.source.auth is not None:
            try:
                await self.auth_engine.revoke_tokens(self.provider_type, self.source.auth)
            except Exception as e:
                self.logger.warning(f"Token revocation for {self.source.id} failed: {e}")
        self.source.auth = None
        self.update_status(state=ProviderState.DISABLED, error=None)
        self.logger.info(f"Disconnected {self.source.id}")

    def supports_write(self) -> bool:
        return True

    def can_write_to_calendar(self, calendar_id: Optional[str] = None) -> bool:
        return self.source.auth is not None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.source.auth.access_token}',
            'Accept': 'application/json',
        }

    def _default_headers(self) -> Dict[str, str]:
        return {}

    async def _refresh_after_rejection(self) -> None:
        if not self.source.auth or not self.source.auth.refresh_token:
            raise AuthenticationError("Access token rejected and no refresh token available")
        self.logger.info("Access token rejected, refreshing")
        self.source.auth = await self.auth_engine.refresh_access_token(
            self.provider_type, self.source.auth.refresh_token, tenant_id=self._tenant_id()
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """Send an authenticated request. Any status other than 401 is returned.

        Raises:
            AuthenticationError: On a second 401 or a failed refresh
            httpx.HTTPError: On transport failures
        """
        response = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(2),
                retry=retry_if_exception_type(_TokenRejected),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        await self._refresh_after_rejection()
                    request_headers = self._auth_headers()
                    request_headers.update(self._default_headers())
                    request_headers.update(headers or {})
                    response = await self._http_client.request(
                        method, url, params=params, json=json, headers=request_headers
                    )
                    if response.status_code == 401:
                        raise _TokenRejected(response)
        except _TokenRejected as e:
            raise AuthenticationError(
                f"{method} {url} rejected after token refresh: {self._api_error_message(e.response)}"
            ) from e
        except OAuthError as e:
            raise AuthenticationError(f"Token refresh failed: {e}", original_error=e) from e
        return response

    @staticmethod
    def _api_error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        error = payload.get('error') if isinstance(payload, dict) else None
        if isinstance(error, dict) and error.get('message'):
            return f"HTTP {response.status_code}: {error['message']}"
        if isinstance(error, str):
            return f"HTTP {response.status_code}: {error}"
        return f"HTTP {response.status_code}"

    def _raise_for_status(self, response: httpx.Response, context: str) -> None:
        if response.is_success:
            return
        error_type = error_type_for_status(response.status_code)
        raise make_error(error_type, f"{context}: {self._api_error_message(response)}")

    @staticmethod
    def _json(response: httpx.Response, context: str) -> Dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"{context}: invalid JSON response", original_error=e) from e

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]], context: str) -> Dict[str, Any]:
        response = await self._request('GET', url, params=params)
        self._raise_for_status(response, context)
        return self._json(response, context)

    @abstractmethod
    def _next_page(
        self, url: str, params: Optional[Dict[str, Any]], payload: Dict[str, Any]
    ) -> Optional[Tuple[str, Optional[Dict[str, Any]]]]:
        """Continuation request for ``payload``, or None on the last page."""

    async def _collect_pages(
        self,
        url: str,
        params: Optional[Dict[str, Any]],
        context: str,
        cancel_event: Optional[asyncio.Event] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Follow continuation tokens until exhausted or ``limit`` items read."""
        items: List[Dict[str, Any]] = []
        next_request: Optional[Tuple[str, Optional[Dict[str, Any]]]] = (url, params)
        while next_request is not None:
            self.check_cancelled(cancel_event)
            page_url, page_params = next_request
            payload = await self._get_json(page_url, page_params, context)
            items.extend(payload.get(self.items_key) or [])
            if limit is not None and len(items) >= limit:
                return items[:limit]
            next_request = self._next_page(page_url, page_params, payload)
        return items

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _forbidden_message(self) -> str:
        return "Permission denied. You cannot modify events in this calendar."

    def _write_failure(self, response: httpx.Response, context: str) -> WriteResult:
        status = response.status_code
        if status == 412:
            return WriteResult(success=False, error=CONFLICT_MESSAGE, conflict=True)
        if status == 403:
            return WriteResult(success=False, error=self._forbidden_message())
        if status in (404, 410):
            return WriteResult(success=False, error=NOT_FOUND_MESSAGE)
        return WriteResult(success=False, error=f"{context}: {self._api_error_message(response)}")

    def _write_exception(self, error: BaseException, context: str) -> WriteResult:
        classified = classify_error(error, context)
        self.logger.error(f"{context} failed ({classified.error_type.value}): {classified}")
        return WriteResult(success=False, error=str(classified))

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
