"""HTTP client for the sync backend with bounded, linearly backed-off retries.

Every public call performs one logical operation. Transport problems
(connection errors, timeouts, non-2xx statuses, unparsable bodies) and error
envelopes are retried up to :attr:`RetryPolicy.attempts` times; the delay
before attempt ``n + 1`` is ``base_delay * n``. Statuses that can never succeed
on retry (400, 404, 409) stop immediately, as do error envelopes answering a
POST so that a create is never duplicated.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import requests

from core.errors import (
    ApplicationError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    SyncError,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)

METHODS = ("GET", "POST", "PUT", "DELETE")
_BODY_METHODS = {"POST", "PUT"}

UrlProvider = Callable[[], Optional[str]]


@dataclass
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0

    def schedule(self) -> List[float]:
        """Return the delays slept between consecutive attempts."""

        return [self.base_delay * attempt for attempt in range(1, max(1, self.attempts))]


class ApiClient:
    """Perform backend calls against the configured deployment URL."""

    def __init__(
        self,
        base_url: Union[str, UrlProvider, None],
        *,
        timeout: float = 30.0,
        retry: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if callable(base_url):
            self._url_provider: UrlProvider = base_url
        else:
            self._url_provider = lambda: base_url  # type: ignore[assignment,return-value]
        self._cached_url: Optional[str] = None
        self._url_loaded = False
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self._session = session or requests.Session()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def base_url(self) -> Optional[str]:
        if not self._url_loaded:
            value = self._url_provider()
            self._cached_url = value.strip() if isinstance(value, str) and value.strip() else None
            self._url_loaded = True
        return self._cached_url

    def reset_base_url(self) -> None:
        """Forget the cached URL so the next call reads configuration again."""

        self._cached_url = None
        self._url_loaded = False

    @property
    def is_configured(self) -> bool:
        return self.base_url is not None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def call(
        self,
        action: str,
        method: str = "GET",
        payload: Optional[Mapping[str, Any]] = None,
        *,
        record_id: Optional[str] = None,
        since: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Run ``method`` against ``action`` and return the response envelope."""

        method = method.upper()
        if method not in METHODS:
            raise ValueError(f"Unsupported method: {method}")

        url = self.base_url
        if not url:
            raise ConfigurationError("Backend URL is not configured", action=action)

        params: Dict[str, Any] = {"action": f"{action}/{record_id}" if record_id else action}
        if since is not None:
            params["since"] = int(since)

        last_error: Optional[SyncError] = None
        delays = self.retry.schedule()
        attempts = max(1, self.retry.attempts)
        for attempt in range(1, attempts + 1):
            try:
                logger.debug("API request (attempt %s): %s %s", attempt, method, params["action"])
                result = self._attempt(method, url, params, payload, action)
            except SyncError as exc:
                exc.action = action
                exc.attempts = attempt
                last_error = exc
                logger.warning(
                    "API request failed (attempt %s/%s): %s %s: %s",
                    attempt,
                    attempts,
                    method,
                    params["action"],
                    exc.message,
                )
                if not self._should_retry(exc, method):
                    raise
                if attempt < attempts:
                    self._sleep(delays[attempt - 1])
            else:
                logger.info("API request successful: %s %s", method, params["action"])
                return result

        assert last_error is not None
        raise last_error

    @staticmethod
    def _should_retry(exc: SyncError, method: str) -> bool:
        if isinstance(exc, ApplicationError):
            return method != "POST"
        return exc.retryable

    def _attempt(
        self,
        method: str,
        url: str,
        params: Mapping[str, Any],
        payload: Optional[Mapping[str, Any]],
        action: str,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"params": dict(params), "timeout": self.timeout}
        if method in _BODY_METHODS:
            kwargs["json"] = dict(payload or {})
        try:
            response = self._session.request(method, url, **kwargs)
        except requests.Timeout as exc:
            raise TransportError(f"Request timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise TransportError(f"Network error: {exc}") from exc

        status = response.status_code
        body = self._parse_body(response)
        message = self._error_message(body) or f"HTTP {status}: {response.reason or ''}".strip()
        if status == 400:
            raise ValidationError(message, status_code=status)
        if status == 404:
            raise NotFoundError(message, status_code=status)
        if status == 409:
            raise ConflictError(message, status_code=status)
        if not 200 <= status < 300:
            raise TransportError(message, status_code=status)
        if body is None:
            raise TransportError(f"Invalid JSON response for {action}", status_code=status)

        if isinstance(body, list):
            return {"status": "ok", "data": body}
        if body.get("status") == "error":
            raise ApplicationError(body.get("message") or "Unknown API error", status_code=status)
        return body

    @staticmethod
    def _parse_body(response: requests.Response) -> Optional[Union[Dict[str, Any], List[Any]]]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, (dict, list)):
            return body
        return None

    @staticmethod
    def _error_message(body: Any) -> Optional[str]:
        if isinstance(body, dict) and body.get("status") == "error":
            message = body.get("message")
            return str(message) if message else None
        return None

    def close(self) -> None:
        self._session.close()


def envelope_data(envelope: Mapping[str, Any]) -> Any:
    """Return the ``data`` member of an envelope (``None`` when absent)."""

    return envelope.get("data")


__all__ = ["ApiClient", "METHODS", "RetryPolicy", "envelope_data"]
