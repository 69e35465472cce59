from __future__ import annotations

import logging
import time
from typing import Any, Callable, Sequence

import requests

from healthlog.core.config import Settings
from healthlog.jobs.retry import exponential_delay_ms

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]


class UpstreamError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class LlmClient:
    """Chat-completion caller for an OpenAI-compatible endpoint.

    ``call(..., retry=True)`` makes up to ``llm_max_attempts`` attempts and
    sleeps ``llm_backoff_base_ms * 2**i`` between attempt ``i`` and ``i + 1``.
    ``retry=False`` makes exactly one attempt, which is what the synchronous
    request path uses to bound its latency. 4xx responses are never retried.
    """

    def __init__(
        self,
        settings: Settings,
        http: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = settings
        self._http = http or requests.Session()
        self._sleep = sleep

    def close(self) -> None:
        self._http.close()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.llm_api_key:
            headers["Authorization"] = f"Bearer {self._settings.llm_api_key}"
        return headers

    def _body(self, messages: Sequence[ChatMessage], temperature: float) -> dict[str, Any]:
        return {
            "model": self._settings.llm_model,
            "messages": list(messages),
            "temperature": temperature,
            "max_tokens": self._settings.llm_max_tokens,
        }

    def _attempt(self, messages: Sequence[ChatMessage], temperature: float) -> str:
        try:
            response = self._http.post(
                self._settings.llm_api_url,
                json=self._body(messages, temperature),
                headers=self._headers(),
                timeout=self._settings.llm_timeout_seconds,
            )
        except requests.Timeout as exc:
            raise UpstreamError(f"LLM request timed out: {exc}", retryable=True) from exc
        except requests.RequestException as exc:
            raise UpstreamError(f"LLM request failed: {exc}", retryable=True) from exc

        status = response.status_code
        if 400 <= status < 500:
            raise UpstreamError(f"LLM rejected request with status {status}", status_code=status, retryable=False)
        if status >= 500:
            raise UpstreamError(f"LLM upstream error with status {status}", status_code=status, retryable=True)

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamError("LLM response is missing choices[0].message.content", status_code=status, retryable=False) from exc
        if not isinstance(content, str):
            raise UpstreamError("LLM response content is not text", status_code=status, retryable=False)
        return content

    def call(
        self,
        messages: Sequence[ChatMessage],
        temperature: float | None = None,
        *,
        retry: bool = True,
    ) -> str:
        effective_temperature = self._settings.llm_temperature if temperature is None else temperature
        max_attempts = int(self._settings.llm_max_attempts) if retry else 1

        last_error: UpstreamError | None = None
        for attempt in range(max_attempts):
            try:
                return self._attempt(messages, effective_temperature)
            except UpstreamError as exc:
                last_error = exc
                if not exc.retryable or attempt == max_attempts - 1:
                    break
                delay_ms = exponential_delay_ms(int(self._settings.llm_backoff_base_ms), attempt)
                logger.warning(
                    "LLM call failed, retrying attempt=%s delay_ms=%s error=%s",
                    attempt + 1,
                    delay_ms,
                    exc,
                )
                self._sleep(delay_ms / 1000.0)

        assert last_error is not None
        if max_attempts > 1 and last_error.retryable:
            raise UpstreamError(
                f"LLM call failed after {max_attempts} attempts: {last_error}",
                status_code=last_error.status_code,
                retryable=True,
            ) from last_error
        raise last_error
