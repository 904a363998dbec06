from __future__ import annotations

import json
import re
import threading
import time
from dataclasses import dataclass
from typing import Optional, Dict, List, Any, Tuple, Callable
from urllib.parse import urljoin

import httpx
from loguru import logger

from kbchat import config as CFG
from kbchat.errors import (
    ConfigurationError,
    UpstreamError,
    UpstreamTimeoutError,
    is_retryable,
)
from kbchat.metrics import track_llm_request


def _redact_token(text: str) -> str:
    """Redact Bearer token values from log text."""
    return re.sub(r'Bearer\s+[^\s]+', 'Bearer ***', text, flags=re.IGNORECASE)


def _redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Create a redacted copy of headers for logging. Masks Authorization headers."""
    redacted = {}
    for key, value in headers.items():
        if key.lower() == "authorization":
            redacted[key] = "Bearer ***"
        else:
            redacted[key] = value
    return redacted


def _cap_response(text: str, max_len: int = 200) -> str:
    """Cap response body length for logging."""
    if len(text) > max_len:
        return text[:max_len] + f"... ({len(text)-max_len} more bytes)"
    return text


# Module-level HTTP client (reused across requests, thread-safe singleton)
HTTP_CLIENT: Optional[httpx.Client] = None
_http_client_lock = threading.Lock()


def _get_http_client() -> httpx.Client:
    """Get or create the shared HTTP client.

    Uses double-check locking for thread-safe initialization. Timeouts are
    passed per request, so the client itself carries none.
    """
    global HTTP_CLIENT

    if HTTP_CLIENT is not None:
        return HTTP_CLIENT

    with _http_client_lock:
        if HTTP_CLIENT is None:
            limits = httpx.Limits(max_keepalive_connections=10, max_connections=50)
            HTTP_CLIENT = httpx.Client(limits=limits, follow_redirects=True)

    return HTTP_CLIENT


def close_http_client() -> None:
    """Called by FastAPI on shutdown."""
    global HTTP_CLIENT
    try:
        if HTTP_CLIENT is not None:
            HTTP_CLIENT.close()
    finally:
        HTTP_CLIENT = None


def retry_on_network_or_5xx(error: Exception) -> bool:
    """Network errors, timeouts and 5xx are transient; 4xx and the rest are not."""
    if not is_retryable(error):
        return False
    status = getattr(error, "upstream_status", None)
    return status is None or status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry: identical payload, no backoff, at most ``max_attempts`` sends."""

    max_attempts: int = 2
    retry_on: Callable[[Exception], bool] = retry_on_network_or_5xx

    def run(self, attempt: Callable[[], Any]) -> Tuple[Any, int]:
        """Call ``attempt`` until it succeeds or the policy gives up.

        Returns (result, attempts_used). Re-raises the last error.
        """
        last_error: Optional[Exception] = None
        for n in range(1, self.max_attempts + 1):
            try:
                return attempt(), n
            except Exception as e:
                last_error = e
                if n == self.max_attempts or not self.retry_on(e):
                    raise
                logger.warning(f"Attempt {n}/{self.max_attempts} failed ({type(e).__name__}); retrying")
        raise RuntimeError("retry policy exhausted without an attempt") from last_error


@dataclass
class Completion:
    text: Optional[str]
    attempts: int
    status: int


class CompletionClient:
    """OpenAI-compatible chat-completions client with timeout and one retry."""

    def __init__(
        self,
        base_url: str = CFG.LLM_BASE_URL,
        chat_path: str = CFG.LLM_CHAT_PATH,
        model: str = CFG.OPENAI_MODEL,
        timeout_seconds: float = CFG.LLM_TIMEOUT_SECONDS,
        temperature: float = CFG.LLM_TEMPERATURE,
        retry_policy: Optional[RetryPolicy] = None,
        api_key_provider: Callable[[], str] = CFG.get_api_key,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.strip()
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.retry_policy = retry_policy or RetryPolicy()
        self._api_key_provider = api_key_provider
        self._clock = clock
        self.chat_url = urljoin(self.base_url.rstrip("/") + "/", chat_path.lstrip("/"))

    def build_payload(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        return {"model": self.model, "temperature": self.temperature, "messages": messages}

    def _timeout_error(self, t0: float, cause: Optional[Exception] = None) -> UpstreamTimeoutError:
        track_llm_request(self.model, "timeout", time.time() - t0)
        return UpstreamTimeoutError(
            f"Completion request timed out after {self.timeout_seconds}s",
            timeout_seconds=self.timeout_seconds,
            cause=cause,
        )

    def _post_once(self, payload: Dict[str, Any], headers: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
        """Single POST bounded by a wall-clock deadline. Raises UpstreamError on failure.

        httpx timeouts only bound each phase (a read timeout is the gap between
        chunks), so the body is streamed and the deadline checked per chunk.
        """
        t0 = time.time()
        deadline = self._clock() + self.timeout_seconds
        chunks: List[bytes] = []
        try:
            with _get_http_client().stream(
                "POST",
                self.chat_url,
                json=payload,
                headers=headers,
                timeout=httpx.Timeout(self.timeout_seconds),
            ) as resp:
                status_code = resp.status_code
                for chunk in resp.iter_bytes():
                    if self._clock() >= deadline:
                        raise self._timeout_error(t0)
                    chunks.append(chunk)
        except httpx.TimeoutException as e:
            raise self._timeout_error(t0, cause=e) from e
        except httpx.HTTPError as e:
            track_llm_request(self.model, "network_error", time.time() - t0)
            raise UpstreamError(
                f"Completion request failed: {_redact_token(str(e))}", cause=e
            ) from e

        track_llm_request(self.model, str(status_code), time.time() - t0)
        text = b"".join(chunks).decode("utf-8", errors="replace")
        try:
            data = json.loads(text)
        except ValueError:
            data = {"raw": text}
        if not isinstance(data, dict):
            data = {"raw": data}

        if status_code >= 400:
            logger.error(
                f"Completion provider error: HTTP {status_code} {_cap_response(_redact_token(text))}"
            )
            raise UpstreamError(
                f"Completion provider returned HTTP {status_code}",
                upstream_status=status_code,
                context={"body": _cap_response(_redact_token(text))},
            )
        return status_code, data

    @staticmethod
    def extract_text(data: Dict[str, Any]) -> Optional[str]:
        """Text at choices[0].message.content, stripped; None if absent or blank."""
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None
        if not isinstance(content, str):
            return None
        return content.strip() or None

    def complete(self, messages: List[Dict[str, str]]) -> Completion:
        """Send one completion request (retried once on network error or 5xx)."""
        api_key = self._api_key_provider()
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured")

        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        payload = self.build_payload(messages)
        logger.debug(f"POST {self.chat_url} headers={_redact_headers(headers)} model={self.model}")

        (status, data), attempts = self.retry_policy.run(lambda: self._post_once(payload, headers))
        return Completion(text=self.extract_text(data), attempts=attempts, status=status)
