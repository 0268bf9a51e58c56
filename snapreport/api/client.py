"""Signed, retrying HTTP client for the remote snapshot service."""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, NamedTuple, Optional

import httpx
import jwt
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

USER_AGENT = "snapreport-client"
TOKEN_LIFETIME = timedelta(minutes=15)

# Debug directory for exchange dumps, set by the CLI in debug mode
_debug_dir: Path | None = None


def set_debug_dir(path: Path | None) -> None:
    """Set the directory for dumping request/response exchanges."""
    global _debug_dir
    _debug_dir = path
    if _debug_dir is not None:
        _debug_dir.mkdir(parents=True, exist_ok=True)


class ApiRequestError(Exception):
    """A request that failed. status_code is None for transport failures and timeouts."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class FormFile(NamedTuple):
    filename: str
    content: bytes
    content_type: str


def sign_token(api_key: str, api_secret: str) -> str:
    """HS256 bearer token over {key}, scoped to a short lifetime."""
    now = datetime.now(tz=UTC)
    return jwt.encode(
        {"key": api_key, "iat": now, "exp": now + TOKEN_LIFETIME},
        api_secret,
        algorithm="HS256",
        headers={"kid": api_key},
    )


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ApiRequestError) and exc.retryable


def _split_form_data(form_data: dict[str, Any]) -> tuple[dict[str, str], dict[str, tuple]]:
    data: dict[str, str] = {}
    files: dict[str, tuple] = {}
    for key, value in form_data.items():
        if value is None or value == "":
            continue
        if isinstance(value, FormFile):
            files[key] = (value.filename, value.content, value.content_type)
        else:
            data[key] = str(value)
    return data, files


class ApiClient:
    """Wrapper around httpx that signs every call and applies the retry policy.

    4xx responses bail immediately. 5xx responses, timeouts and connection
    failures are retried with exponential backoff up to ``retry_count`` times.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        api_secret: str,
        timeout: float = 60.0,
        retry_min_wait: float = 1.0,
        retry_max_wait: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait
        self.http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )
        self._call_count = 0

    @classmethod
    def from_config(cls, config, **kwargs) -> "ApiClient":
        return cls(config.endpoint, config.api_key, config.api_secret, **kwargs)

    @property
    def call_count(self) -> int:
        return self._call_count

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.endpoint}{path}"

    async def send(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        form_data: Optional[dict[str, Any]] = None,
        retry_count: int = 0,
    ) -> dict[str, Any] | None:
        """Send a signed request and return the parsed JSON object.

        A 204 response is a valid empty result and yields None.
        """
        url = self.url_for(path)
        self._call_count += 1
        call_number = self._call_count

        async def _attempt() -> httpx.Response:
            headers = {"Authorization": f"Bearer {sign_token(self.api_key, self.api_secret)}"}
            kwargs: dict[str, Any] = {"headers": headers}
            # Multipart bodies are rebuilt on every attempt
            if form_data is not None:
                data, files = _split_form_data(form_data)
                kwargs["data"] = data
                kwargs["files"] = files or None
            elif body is not None:
                kwargs["json"] = body
            return await self._request(method, url, **kwargs)

        response = await self._with_retries(_attempt, method, url, retry_count)
        if response.status_code == 204 or not response.content:
            self._save_exchange_log(call_number, method, url, body, "")
            return None

        result = response.json()
        self._save_exchange_log(call_number, method, url, body, response.text)
        if not isinstance(result, dict):
            raise TypeError(f"Response is not an object: {json.dumps(result)[:200]}")
        return result

    async def fetch(self, url: str, retry_count: int = 0) -> httpx.Response:
        """Unsigned GET with the same retry policy (CSS files, assets)."""
        return await self._with_retries(
            lambda: self._request("GET", url), "GET", url, retry_count
        )

    async def put(
        self, url: str, content: bytes, content_type: str, retry_count: int = 0
    ) -> httpx.Response:
        """Unsigned PUT with the same retry policy (pre-signed upload targets)."""
        return await self._with_retries(
            lambda: self._request(
                "PUT", url, content=content, headers={"Content-Type": content_type}
            ),
            "PUT", url, retry_count,
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        start = time.monotonic()
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            took = int((time.monotonic() - start) * 1000)
            raise ApiRequestError(
                f"Timeout when fetching {url} using method {method} (took {took} ms)"
            ) from e
        except httpx.TransportError as e:
            took = int((time.monotonic() - start) * 1000)
            raise ApiRequestError(f"{e} (took {took} ms)") from e

        if response.status_code >= 400:
            raise ApiRequestError(
                f"Request to {method} {url} failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response

    async def _with_retries(self, operation, method: str, url: str, retry_count: int):
        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Failed %s %s (attempt %d of %d): %s. Retrying...",
                method, url, retry_state.attempt_number, retry_count + 1, exc,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retry_count + 1),
            wait=wait_exponential(
                multiplier=self.retry_min_wait,
                min=self.retry_min_wait,
                max=self.retry_max_wait,
            ),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await operation()

    # ------------------------------------------------------------------
    # Debug logging
    # ------------------------------------------------------------------

    @staticmethod
    def _save_exchange_log(
        call_number: int,
        method: str,
        url: str,
        body: Any,
        response_text: str,
    ) -> None:
        """Log the raw exchange and, in debug mode, save it to a file."""
        logger.debug("%s %s -> %d chars", method, url, len(response_text))
        if _debug_dir is None:
            return
        try:
            ts = time.strftime("%Y%m%d_%H%M%S")
            log_file = _debug_dir / f"api_call_{ts}_{call_number:03d}.log"
            with open(log_file, "w", encoding="utf-8") as f:
                f.write(f"=== API CALL #{call_number} at {time.strftime('%Y-%m-%d %H:%M:%S')} ===\n\n")
                f.write(f"=== REQUEST ===\n{method} {url}\n")
                if body is not None:
                    f.write(json.dumps(body, indent=2, default=str))
                f.write(f"\n\n=== RESPONSE ({len(response_text)} chars) ===\n")
                f.write(response_text if response_text else "(empty)")
            logger.debug("API exchange logged to %s", log_file)
        except OSError as log_err:
            logger.debug("Failed to save API exchange log: %s", log_err)
