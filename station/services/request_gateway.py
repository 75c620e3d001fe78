"""
station/services/request_gateway.py

Authenticated access to the remote C2 API.
Every call goes through RequestGateway.execute, which attaches the bearer
token, performs at most one refresh-and-retry on a 401, and returns a
GatewayResult instead of raising. The gateway is the only writer of Session.
"""

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

import httpx
import structlog

from config import settings
from station.constants import (
    AUTH_LOGIN_PATH,
    AUTH_LOGOUT_PATH,
    AUTH_REFRESH_PATH,
    BEARER_PREFIX,
    MAX_AUTH_RETRIES,
)

logger = structlog.get_logger(__name__)

_FILENAME_PATTERN = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.IGNORECASE)


class ErrorKind(str, Enum):
    NETWORK_ERROR = "NetworkError"
    AUTH_EXPIRED = "AuthExpired"
    BAD_REQUEST = "BadRequest"
    SERVER_ERROR = "ServerError"


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of one logical remote call."""

    success: bool
    status: Optional[int] = None
    data: Any = None
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None
    filename: Optional[str] = None

    @classmethod
    def succeeded(
        cls, status: int, data: Any, filename: Optional[str] = None
    ) -> "GatewayResult":
        return cls(success=True, status=status, data=data, filename=filename)

    @classmethod
    def failed(
        cls, error: ErrorKind, detail: str, status: Optional[int] = None
    ) -> "GatewayResult":
        return cls(success=False, status=status, error=error, detail=detail)


@dataclass(frozen=True)
class Session:
    """Bearer credentials; replaced as a whole, never edited in place."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token)


class RequestGateway:
    """
    Executes remote calls with bearer auth and bounded recovery.

    Status classification:
    - transport failure or timeout -> NetworkError (no retry)
    - 401 on an authenticated call -> one refresh, one retry, else AuthExpired
    - other 4xx -> BadRequest with the server's detail
    - 5xx (and anything else non-2xx) -> ServerError
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        single_flight_refresh: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout_s or settings.request_timeout_s,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self._single_flight = (
            settings.single_flight_refresh
            if single_flight_refresh is None
            else single_flight_refresh
        )
        self._session = Session()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def session(self) -> Session:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session.authenticated

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

    # ── Session lifecycle ────────────────────────────────────

    async def login(self, username: str, password: str) -> GatewayResult:
        """Authenticate and store the returned token pair."""
        result = await self.execute(
            AUTH_LOGIN_PATH,
            method="POST",
            body={"username": username, "password": password},
            auth_required=False,
        )
        if not result.success:
            logger.warning("login_failed", username=username, error=result.error)
            return result

        data = result.data if isinstance(result.data, dict) else {}
        token = data.get("token")
        if not token:
            logger.error("login_response_missing_token", username=username)
            return GatewayResult.failed(
                ErrorKind.BAD_REQUEST,
                "Login response carried no token",
                status=result.status,
            )

        self._store_session(token, data.get("refreshToken"))
        logger.info("login_succeeded", username=username)
        return result

    async def logout(self) -> GatewayResult:
        """Notify the server, then clear the session whatever it answered."""
        if self._session.authenticated:
            result = await self.execute(AUTH_LOGOUT_PATH, method="POST")
        else:
            result = GatewayResult.succeeded(status=200, data={})
        self._clear_session(reason="logout")
        return result

    def _store_session(self, token: str, refresh_token: Optional[str]) -> None:
        self._session = Session(
            access_token=token,
            refresh_token=refresh_token or self._session.refresh_token,
        )

    def _clear_session(self, reason: str) -> None:
        self._session = Session()
        logger.info("session_cleared", reason=reason)

    # ── Request execution ────────────────────────────────────

    async def execute(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        auth_required: bool = True,
        params: Optional[dict[str, Any]] = None,
        raw: bool = False,
    ) -> GatewayResult:
        """
        Perform one logical remote call.

        Never raises: unexpected failures are logged and reported as
        NetworkError so callers only ever branch on the result.
        """
        try:
            return await self._execute(endpoint, method, body, auth_required, params, raw)
        except Exception as exc:
            logger.error(
                "gateway_unexpected_error",
                endpoint=endpoint,
                method=method,
                error=str(exc),
            )
            return GatewayResult.failed(ErrorKind.NETWORK_ERROR, str(exc))

    async def _execute(
        self,
        endpoint: str,
        method: str,
        body: Any,
        auth_required: bool,
        params: Optional[dict[str, Any]],
        raw: bool,
    ) -> GatewayResult:
        token: Optional[str] = None
        if auth_required:
            token = self._session.access_token
            if not token:
                # Fail fast until a fresh login
                logger.warning("request_rejected_unauthenticated", endpoint=endpoint)
                return GatewayResult.failed(
                    ErrorKind.AUTH_EXPIRED, "Not authenticated", status=401
                )

        response = await self._send(method, endpoint, body, params, token)
        if isinstance(response, GatewayResult):
            return response

        retries = 0
        while auth_required and response.status_code == 401:
            if retries >= MAX_AUTH_RETRIES:
                self._clear_session(reason="unauthorized_after_retry")
                return self._auth_expired(endpoint, "Unauthorized after token refresh")
            retries += 1

            if not await self._refresh_for(token):
                self._clear_session(reason="refresh_failed")
                return self._auth_expired(endpoint, "Token refresh failed")

            token = self._session.access_token
            logger.info("request_retrying_after_refresh", endpoint=endpoint)
            response = await self._send(method, endpoint, body, params, token)
            if isinstance(response, GatewayResult):
                return response

        return self._classify(endpoint, response, raw)

    async def _send(
        self,
        method: str,
        endpoint: str,
        body: Any,
        params: Optional[dict[str, Any]],
        token: Optional[str],
    ) -> Union[httpx.Response, GatewayResult]:
        headers = {}
        if token:
            headers["Authorization"] = f"{BEARER_PREFIX}{token}"

        try:
            response = await self._client.request(
                method,
                endpoint,
                json=body,
                params=params,
                headers=headers,
            )
        except httpx.TimeoutException:
            logger.warning("request_timeout", endpoint=endpoint, method=method)
            return GatewayResult.failed(ErrorKind.NETWORK_ERROR, "Request timed out")
        except httpx.RequestError as exc:
            logger.warning(
                "request_transport_failed",
                endpoint=endpoint,
                method=method,
                error=str(exc),
            )
            return GatewayResult.failed(ErrorKind.NETWORK_ERROR, str(exc) or type(exc).__name__)

        logger.debug(
            "request_completed",
            endpoint=endpoint,
            method=method,
            status=response.status_code,
        )
        return response

    def _auth_expired(self, endpoint: str, detail: str) -> GatewayResult:
        logger.warning("auth_expired", endpoint=endpoint, detail=detail)
        return GatewayResult.failed(ErrorKind.AUTH_EXPIRED, detail, status=401)

    def _classify(
        self, endpoint: str, response: httpx.Response, raw: bool
    ) -> GatewayResult:
        status = response.status_code

        if response.is_success:
            if raw:
                return GatewayResult.succeeded(
                    status, response.content, filename=_filename_from(response)
                )
            if not response.content:
                return GatewayResult.succeeded(status, {})
            try:
                return GatewayResult.succeeded(status, response.json())
            except ValueError:
                logger.error("response_not_json", endpoint=endpoint, status=status)
                return GatewayResult.failed(
                    ErrorKind.SERVER_ERROR, "Response was not valid JSON", status=status
                )

        detail = _error_detail(response)
        if 400 <= status < 500:
            logger.warning("request_bad_request", endpoint=endpoint, status=status, detail=detail)
            return GatewayResult.failed(ErrorKind.BAD_REQUEST, detail, status=status)

        logger.error("request_server_error", endpoint=endpoint, status=status, detail=detail)
        return GatewayResult.failed(ErrorKind.SERVER_ERROR, detail, status=status)

    # ── Token refresh ────────────────────────────────────────

    async def _refresh_for(self, failed_token: Optional[str]) -> bool:
        """
        Obtain a token newer than failed_token.

        With single-flight enabled, concurrent callers share one refresh, and a
        caller whose token was already replaced skips refreshing altogether.
        """
        if not self._session.refresh_token:
            logger.warning("refresh_unavailable")
            return False

        if not self._single_flight:
            return await self._refresh()

        current = self._session.access_token
        if current and current != failed_token:
            return True

        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh())
        return await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> bool:
        refresh_token = self._session.refresh_token
        response = await self._send(
            "POST",
            AUTH_REFRESH_PATH,
            {"refreshToken": refresh_token},
            None,
            None,
        )
        if isinstance(response, GatewayResult):
            logger.warning("refresh_transport_failed", detail=response.detail)
            return False
        if not response.is_success:
            logger.warning("refresh_rejected", status=response.status_code)
            return False

        try:
            data = response.json()
        except ValueError:
            logger.error("refresh_response_not_json", status=response.status_code)
            return False

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            logger.error("refresh_response_missing_token")
            return False

        self._store_session(token, data.get("refreshToken"))
        logger.info("token_refreshed")
        return True


def _error_detail(response: httpx.Response) -> str:
    """Best-effort server-supplied error message."""
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase or f"HTTP {response.status_code}"

    if isinstance(payload, dict):
        for key in ("detail", "message", "error"):
            if payload.get(key):
                return str(payload[key])
    return str(payload)


def _filename_from(response: httpx.Response) -> Optional[str]:
    disposition = response.headers.get("content-disposition", "")
    match = _FILENAME_PATTERN.search(disposition)
    return match.group(1) if match else None
