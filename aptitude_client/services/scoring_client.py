# aptitude_client/services/scoring_client.py
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar
from urllib.parse import quote

import aiohttp
from pydantic import BaseModel, TypeAdapter, ValidationError

from aptitude_client.core.config import settings
from aptitude_client.core.errors import (
    ErrorKind,
    ScoringApiError,
    map_http_error,
    network_error,
)
from aptitude_client.core.security import BearerTokenFallback
from aptitude_client.schemas.aptitude_test import (
    AssessmentResults,
    RecoverSessionResponse,
    StartSessionResponse,
    StatusResponse,
    SubmitAnswerRequest,
    SubmitAnswerResponse,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

_history_adapter = TypeAdapter(List[AssessmentResults])


class ScoringClient:
    """
    HTTP клиент scoring backend для адаптивного теста.

    Авторизация: сначала запрос уходит с cookie-сессией, полученной при входе.
    На 401 запрос повторяется один раз через BearerTokenFallback (если токен есть).
    Ошибки транспорта и HTTP превращаются в ScoringApiError.
    """

    def __init__(
            self,
            base_url: Optional[str] = None,
            api_prefix: Optional[str] = None,
            auth_fallback: Optional[BearerTokenFallback] = None,
            timeout: Optional[float] = None,
            max_retries: Optional[int] = None,
            retry_delay: Optional[float] = None
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.api_prefix = settings.API_PREFIX if api_prefix is None else api_prefix.rstrip("/")
        self.auth_fallback = auth_fallback or BearerTokenFallback(settings.AUTH_TOKEN)
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        self.max_retries = max_retries or settings.MAX_RETRIES
        self.retry_delay = settings.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ScoringClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                # unsafe=True: cookie от backend по IP-адресу (dev сервер в локальной сети)
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                headers={"Content-Type": "application/json"}
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.api_prefix}{path}"

    # ============ ТРАНСПОРТ ============

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        # Страницы ошибок прокси бывают не в UTF-8
        text = await response.text(errors="replace")
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    async def _send(
            self,
            method: str,
            url: str,
            payload: Optional[Dict[str, Any]] = None,
            headers: Optional[Dict[str, str]] = None
    ) -> Tuple[int, Any]:
        session = self._get_session()
        logger.debug(f"{method} {url}")
        try:
            async with session.request(method, url, json=payload, headers=headers) as response:
                body = await self._read_body(response)
                logger.debug(f"{method} {url} -> {response.status}")
                return response.status, body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Network error on {method} {url}: {e!r}")
            raise network_error(e) from e

    async def _request(
            self,
            method: str,
            path: str,
            payload: Optional[Dict[str, Any]] = None,
            bad_request_kind: ErrorKind = ErrorKind.INVALID_REQUEST
    ) -> Any:
        url = self._url(path)
        status, body = await self._send(method, url, payload)

        if status == 401:
            fallback_headers = self.auth_fallback.headers()
            if fallback_headers:
                logger.info(f"{method} {path}: cookie session rejected, retrying with bearer token")
                status, body = await self._send(method, url, payload, headers=fallback_headers)

        if status >= 400:
            error = map_http_error(status, body, bad_request_kind)
            logger.warning(f"{method} {path} failed: {error!r}")
            raise error
        return body

    @staticmethod
    def _parse(model_cls: Type[M], body: Any) -> M:
        try:
            return model_cls.model_validate(body)
        except ValidationError as e:
            raise ScoringApiError(
                ErrorKind.SERVER_ERROR,
                "Unexpected response from server",
                detail=f"{model_cls.__name__}: {e.error_count()} validation errors"
            ) from e

    async def retry_request(
            self,
            request_fn: Callable[[], Awaitable[T]],
            max_retries: Optional[int] = None,
            delay: Optional[float] = None
    ) -> T:
        """
        Повтор запроса с линейной задержкой (delay * attempt).

        Повторяются только сетевые, серверные ошибки и 429;
        400/401/403/404 сразу пробрасываются.
        """
        max_retries = max_retries or self.max_retries
        delay = self.retry_delay if delay is None else delay

        for attempt in range(1, max_retries + 1):
            try:
                return await request_fn()
            except ScoringApiError as e:
                if not e.retryable or attempt == max_retries:
                    raise
                logger.info(f"Attempt {attempt}/{max_retries} failed ({e.kind.value}), retrying")
                await asyncio.sleep(delay * attempt)

        raise RuntimeError("retry_request called with max_retries < 1")

    # ============ ОПЕРАЦИИ ТЕСТА ============

    async def start_session(self) -> StartSessionResponse:
        body = await self._request("POST", "/test/start", {})
        return self._parse(StartSessionResponse, body)

    async def submit_answer(self, request: SubmitAnswerRequest) -> SubmitAnswerResponse:
        body = await self._request(
            "POST",
            "/test/answer",
            request.to_wire(),
            bad_request_kind=ErrorKind.INVALID_ANSWER
        )
        return self._parse(SubmitAnswerResponse, body)

    async def check_status(self) -> StatusResponse:
        body = await self._request("GET", "/test/status")
        return self._parse(StatusResponse, body)

    async def recover_session(self) -> RecoverSessionResponse:
        """Восстановить сессию на сервере. Неудача - это recovered=False, не ошибка"""
        try:
            body = await self._request("POST", "/test/recover", {})
            return self._parse(RecoverSessionResponse, body)
        except ScoringApiError as e:
            logger.warning(f"Failed to recover session: {e!r}")
            return RecoverSessionResponse(recovered=False)

    async def get_results(self, session_id: str) -> AssessmentResults:
        async def fetch() -> AssessmentResults:
            body = await self._request("GET", f"/test/results/{quote(session_id, safe='')}")
            return self._parse(AssessmentResults, body)

        return await self.retry_request(fetch)

    async def get_history(self) -> List[AssessmentResults]:
        async def fetch() -> List[AssessmentResults]:
            body = await self._request("GET", "/test/history")
            try:
                return _history_adapter.validate_python(body or [])
            except ValidationError as e:
                raise ScoringApiError(
                    ErrorKind.SERVER_ERROR,
                    "Unexpected response from server",
                    detail=f"history: {e.error_count()} validation errors"
                ) from e

        return await self.retry_request(fetch)

    # ============ ДИАГНОСТИКА ============

    async def probe(self, path: str, absolute: bool = False) -> Tuple[int, Any]:
        """Сырой GET без маппинга ошибок: (статус, тело)"""
        url = f"{self.base_url}{path}" if absolute else self._url(path)
        return await self._send("GET", url)
