import asyncio
import json
import logging
import math
import threading
import time
from collections.abc import AsyncIterator, Callable, Iterator, Mapping
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Union
from urllib.parse import parse_qsl, urlencode, urlsplit

from .errors import (
    ApiFailure,
    NetworkFailure,
    RateLimitFailure,
    TimeoutFailure,
    parse_api_error,
)
from .ratelimit import AsyncRateLimiter, RateLimiter
from .tokens import AsyncTokenManager, TokenManager
from .types import AuthConfig, ParamValue, RequestDescriptor, RetryConfig

BASE_URL = "https://api.appstoreconnect.apple.com/v1"

_INVALID_JSON = object()

# ---------- Common helpers ----------


def _parse_retry_after(headers: Mapping[str, str], now: float, default: float) -> float:
    ra = None
    for k, v in headers.items():
        if k.lower() == "retry-after":
            ra = v
            break
    if ra is None or not str(ra).strip():
        return default
    try:
        seconds = float(ra)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            return default
        return max(0.0, seconds)
    # Try HTTP-date per RFC7231
    import email.utils as eut  # noqa: PLC0415

    try:
        ts = eut.parsedate_to_datetime(ra)
    except (TypeError, ValueError):
        return default
    # Round up to the next whole second so short delays aren't truncated
    return max(0.0, float(math.ceil(ts.timestamp() - now)))


def _render_param(value: ParamValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _decode_json(content: bytes) -> Any:
    if not content:
        return None
    try:
        return json.loads(content)
    except ValueError:
        return _INVALID_JSON


def _cursor_params(next_link: str) -> dict[str, str]:
    """Query parameters of a 'next' link, absolute or relative, taken verbatim."""
    return dict(parse_qsl(urlsplit(next_link).query, keep_blank_values=True))


def _close_late_response(result: Future) -> None:
    if result.cancelled() or result.exception() is not None:
        return
    close = getattr(result.result(), "close", None)
    if close is not None:
        close()


def _call_with_deadline(fn: Callable[..., Any], deadline: float, *args, **kwargs) -> Any:
    """Run a blocking call on a worker thread and wait at most 'deadline' seconds.

    Raises concurrent.futures.TimeoutError once the deadline passes. The worker
    is left to finish on its own and whatever it returns afterwards is closed.
    """
    result: Future = Future()

    def run():
        try:
            result.set_result(fn(*args, **kwargs))
        except BaseException as e:
            result.set_exception(e)

    threading.Thread(target=run, name="ascgate-request", daemon=True).start()
    try:
        return result.result(timeout=deadline)
    except FutureTimeout:
        result.add_done_callback(_close_late_response)
        raise


# ---------- Base client (request building + response policy; I/O in subclasses) ----------


class _BaseClient:
    def __init__(
        self,
        base_url: str = BASE_URL,
        log_level: Union[int, None] = None,
        **kwargs,
    ):
        """Initialize a _BaseClient.

        Args:
            base_url (str): API root every request path is joined to
            log_level (int | None): level for the "ascgate" logger
            kwargs:
            - retry_config: RetryConfig object
            - max_attempts: int
            - base_delay: float
            - timeout: float
            - auth_config: AuthConfig object
            - auth_header: str
            - auth_scheme: str
        """
        self.base_url = base_url.rstrip("/")
        rconf = kwargs.get("retry_config")
        if rconf is not None:
            self.retry_config = rconf
        else:
            self.retry_config = RetryConfig(
                max_attempts=kwargs.get("max_attempts", RetryConfig.max_attempts),
                base_delay=kwargs.get("base_delay", RetryConfig.base_delay),
                timeout=kwargs.get("timeout", RetryConfig.timeout),
            )
        if kwargs.get("auth_config") is not None:
            self.auth_config = kwargs["auth_config"]
        else:
            self.auth_config = AuthConfig(
                header=kwargs.get("auth_header", "Authorization"),
                scheme=kwargs.get("auth_scheme", "Bearer"),
            )
        self._logger = logging.getLogger("ascgate")
        if log_level is not None:
            self._logger.setLevel(log_level)

    @property
    def max_attempts(self) -> int:
        return max(1, self.retry_config.max_attempts)

    def _build_url(self, path: str, params: Union[Mapping[str, ParamValue], None]) -> str:
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = [(k, _render_param(v)) for k, v in (params or {}).items() if v is not None]
        if query:
            url = f"{url}?{urlencode(query)}"
        return url

    def _headers(self, token: str, has_body: bool) -> dict[str, str]:
        headers = {self.auth_config.header: f"{self.auth_config.scheme} {token}".strip()}
        # only declare a content type when there is content
        if has_body:
            headers["Content-Type"] = "application/json"
        return headers

    @staticmethod
    def _encode_body(body: Any) -> Union[bytes, None]:
        if body is None:
            return None
        return json.dumps(body).encode("utf-8")

    def _interpret(self, status: int, headers: Mapping[str, str], content: bytes) -> Any:
        """Turn one HTTP response into a payload or a typed failure."""
        if status == 429:  # noqa: PLR2004, http status code can be constant
            retry_after = _parse_retry_after(
                headers, time.time(), self.retry_config.default_retry_after
            )
            body = _decode_json(content)
            errors = body.get("errors") if isinstance(body, dict) else None
            raise RateLimitFailure(retry_after, details=errors or None)
        if status == 204:  # noqa: PLR2004
            return None
        body = _decode_json(content)
        if not 200 <= status < 300:  # noqa: PLR2004
            raise parse_api_error(status, None if body is _INVALID_JSON else body)
        if body is _INVALID_JSON:
            raise ApiFailure(
                "Response body is not valid JSON", code="INVALID_RESPONSE", status=status
            )
        return body

    def _retry_delay(self, error: ApiFailure, attempt: int) -> Union[float, None]:
        """Seconds to wait before the next attempt, or None to give up."""
        if not error.retryable or attempt + 1 >= self.max_attempts:
            return None
        if isinstance(error, RateLimitFailure):
            return error.retry_after
        return self.retry_config.base_delay * (self.retry_config.growth**attempt)

    def _log_retry(self, request: RequestDescriptor, error: ApiFailure, attempt: int, delay):
        self._logger.info(
            f"retrying method={request.method} path={request.path} "
            f"attempt={attempt + 1}/{self.max_attempts} code={error.code} "
            f"status={error.status}; sleeping ~{delay:.2f}s"
        )

    @staticmethod
    def _page_query(base: dict[str, Any], page: Any) -> Union[dict[str, Any], None]:
        """Query for the page after 'page', or None when iteration is over."""
        links = page.get("links") if isinstance(page, dict) else None
        next_link = links.get("next") if isinstance(links, dict) else None
        if not next_link:
            return None
        cursor = _cursor_params(next_link)
        if not cursor:
            logging.getLogger("ascgate").warning(
                "next link carries no query parameters; stopping pagination"
            )
            return None
        return {**base, **cursor}

    @staticmethod
    def _page_items(page: Any) -> list[Any]:
        data = page.get("data") if isinstance(page, dict) else None
        return data if isinstance(data, list) else []


# ---------- Sync client (requests) ----------


class Client(_BaseClient):
    """Rate-limited, token-bearing, retrying client for the REST API.

    Every attempt goes: rate limiter slot -> bearer credential -> HTTP call.
    """

    def __init__(
        self,
        tokens: TokenManager,
        rate_limiter: Union[RateLimiter, None] = None,
        base_url: str = BASE_URL,
        session=None,
        log_level: Union[int, None] = None,
        **kwargs,
    ):
        super().__init__(base_url, log_level, **kwargs)
        self.tokens = tokens
        self.rate_limiter = rate_limiter or RateLimiter(kwargs.get("rate_limit_config"))
        if session is None:
            import requests  # noqa: PLC0415

            self._session = requests.Session()
            self._own_session = True
        else:
            self._session = session
            self._own_session = False

    @classmethod
    def from_env(cls, env_path: Union[str, None] = None, **kwargs):
        """Build a client whose token manager is configured from the environment."""
        tokens = TokenManager.from_env(env_path=env_path)
        return cls(tokens, **kwargs)

    def _sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        self.tokens.close()
        if self._own_session:
            self._session.close()

    # ------------------------ executor ------------------------
    def execute(self, request: RequestDescriptor) -> Any:
        for attempt in range(self.max_attempts):
            self.rate_limiter.acquire_slot()
            credential = self.tokens.acquire()
            try:
                return self._attempt(request, credential.token)
            except ApiFailure as e:
                delay = self._retry_delay(e, attempt)
                if delay is None:
                    raise
                self._log_retry(request, e, attempt, delay)
            self._sleep(delay)
        raise AssertionError("unreachable: the last attempt either returns or raises")

    def _send(self, method, url, headers, data, timeout):
        import requests  # noqa: PLC0415

        try:
            # requests' timeout is per connect/read step; the deadline bounds the whole exchange
            return _call_with_deadline(
                self._session.request,
                timeout,
                method,
                url,
                headers=headers,
                data=data,
                timeout=timeout,
            )
        except (FutureTimeout, requests.Timeout) as e:
            raise TimeoutFailure(f"Request timed out after {timeout:g}s") from e
        except requests.RequestException as e:
            raise NetworkFailure(str(e) or type(e).__name__) from e

    def _attempt(self, request: RequestDescriptor, token: str) -> Any:
        url = self._build_url(request.path, request.params)
        timeout = request.timeout if request.timeout is not None else self.retry_config.timeout
        self._logger.debug(f"req start method={request.method} path={request.path}")
        try:
            resp = self._send(
                request.method,
                url,
                self._headers(token, request.body is not None),
                self._encode_body(request.body),
                timeout,
            )
        except NetworkFailure as e:
            self._logger.warning(f"request error method={request.method} path={request.path}: {e}")
            raise
        self._logger.debug(
            f"req done method={request.method} path={request.path} status={resp.status_code}"
        )
        return self._interpret(resp.status_code, resp.headers, resp.content)

    # sugar
    def get(self, path: str, params: Union[Mapping[str, ParamValue], None] = None) -> Any:
        return self.execute(RequestDescriptor("GET", path, dict(params or {})))

    def post(self, path: str, body: Any) -> Any:
        return self.execute(RequestDescriptor("POST", path, body=body))

    def patch(self, path: str, body: Any) -> Any:
        return self.execute(RequestDescriptor("PATCH", path, body=body))

    def delete(self, path: str, body: Any = None) -> None:
        self.execute(RequestDescriptor("DELETE", path, body=body))

    def raw_request(
        self,
        url: str,
        method: str,
        headers: Union[Mapping[str, str], None] = None,
        body: Union[bytes, str, None] = None,
        timeout: Union[float, None] = None,
    ):
        """Send one unauthenticated request to an absolute URL (no retries, no rate limit)."""
        timeout = timeout if timeout is not None else self.retry_config.timeout
        return self._send(method, url, dict(headers or {}), body, timeout)

    # ------------------------ pagination ------------------------
    def paginate(
        self,
        path: str,
        params: Union[Mapping[str, ParamValue], None] = None,
        max_items: Union[int, None] = None,
    ) -> Iterator[Any]:
        """Yield items across pages, following links.next until exhausted or capped."""
        if max_items is not None and max_items <= 0:
            return
        base = dict(params or {})
        query: Union[dict[str, Any], None] = base
        yielded = 0
        while query is not None:
            page = self.get(path, query)
            for item in self._page_items(page):
                yield item
                yielded += 1
                if max_items is not None and yielded >= max_items:
                    return
            query = self._page_query(base, page)


# ---------- Async client (httpx) ----------


class AsyncClient(_BaseClient):
    def __init__(
        self,
        tokens: AsyncTokenManager,
        rate_limiter: Union[AsyncRateLimiter, None] = None,
        base_url: str = BASE_URL,
        client=None,
        log_level: Union[int, None] = None,
        **kwargs,
    ):
        super().__init__(base_url, log_level, **kwargs)
        self.tokens = tokens
        self.rate_limiter = rate_limiter or AsyncRateLimiter(kwargs.get("rate_limit_config"))
        if client is None:
            import httpx  # noqa: PLC0415

            self._client = httpx.AsyncClient()
            self._own_client = True
        else:
            self._client = client
            self._own_client = False

    @classmethod
    def from_env(cls, env_path: Union[str, None] = None, **kwargs):
        tokens = AsyncTokenManager.from_env(env_path=env_path)
        return cls(tokens, **kwargs)

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
        return False

    async def close(self) -> None:
        await self.tokens.close()
        if self._own_client:
            await self._client.aclose()

    # ------------------------ executor ------------------------
    async def execute(self, request: RequestDescriptor) -> Any:
        for attempt in range(self.max_attempts):
            await self.rate_limiter.acquire_slot()
            credential = await self.tokens.acquire()
            try:
                return await self._attempt(request, credential.token)
            except ApiFailure as e:
                delay = self._retry_delay(e, attempt)
                if delay is None:
                    raise
                self._log_retry(request, e, attempt, delay)
            await self._sleep(delay)
        raise AssertionError("unreachable: the last attempt either returns or raises")

    async def _send(self, method, url, headers, content, timeout):
        import httpx  # noqa: PLC0415

        try:
            # wait_for bounds the whole exchange; httpx's own timeout is per phase
            return await asyncio.wait_for(
                self._client.request(
                    method, url, headers=headers, content=content, timeout=timeout
                ),
                timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TimeoutFailure(f"Request timed out after {timeout:g}s") from e
        except httpx.HTTPError as e:
            raise NetworkFailure(str(e) or type(e).__name__) from e

    async def _attempt(self, request: RequestDescriptor, token: str) -> Any:
        url = self._build_url(request.path, request.params)
        timeout = request.timeout if request.timeout is not None else self.retry_config.timeout
        self._logger.debug(f"req start method={request.method} path={request.path}")
        try:
            resp = await self._send(
                request.method,
                url,
                self._headers(token, request.body is not None),
                self._encode_body(request.body),
                timeout,
            )
        except NetworkFailure as e:
            self._logger.warning(f"request error method={request.method} path={request.path}: {e}")
            raise
        self._logger.debug(
            f"req done method={request.method} path={request.path} status={resp.status_code}"
        )
        return self._interpret(resp.status_code, resp.headers, resp.content)

    async def get(self, path: str, params: Union[Mapping[str, ParamValue], None] = None) -> Any:
        return await self.execute(RequestDescriptor("GET", path, dict(params or {})))

    async def post(self, path: str, body: Any) -> Any:
        return await self.execute(RequestDescriptor("POST", path, body=body))

    async def patch(self, path: str, body: Any) -> Any:
        return await self.execute(RequestDescriptor("PATCH", path, body=body))

    async def delete(self, path: str, body: Any = None) -> None:
        await self.execute(RequestDescriptor("DELETE", path, body=body))

    async def raw_request(
        self,
        url: str,
        method: str,
        headers: Union[Mapping[str, str], None] = None,
        body: Union[bytes, str, None] = None,
        timeout: Union[float, None] = None,
    ):
        timeout = timeout if timeout is not None else self.retry_config.timeout
        return await self._send(method, url, dict(headers or {}), body, timeout)

    # ------------------------ pagination ------------------------
    async def paginate(
        self,
        path: str,
        params: Union[Mapping[str, ParamValue], None] = None,
        max_items: Union[int, None] = None,
    ) -> AsyncIterator[Any]:
        if max_items is not None and max_items <= 0:
            return
        base = dict(params or {})
        query: Union[dict[str, Any], None] = base
        yielded = 0
        while query is not None:
            page = await self.get(path, query)
            for item in self._page_items(page):
                yield item
                yielded += 1
                if max_items is not None and yielded >= max_items:
                    return
            query = self._page_query(base, page)
