"""Shared HTTP plumbing for all provider clients."""

from typing import Any, Dict, Optional

import requests

from ..logger import get_logger
from ..retry import CircuitBreaker, exponential_backoff, should_retry_http_status

logger = get_logger()


class ProviderError(Exception):
    """A provider request failed for a reason other than "not found"."""

    def __init__(self, source: str, message: str, status: Optional[int] = None):
        self.source = source
        self.status = status
        super().__init__(message)


class _RetryableStatus(Exception):
    def __init__(self, response: requests.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code}")


def _log_retry(attempt: int, exc: Exception, delay: float) -> None:
    logger.warning("Provider request retrying", attempt=attempt, error=str(exc), delay=delay)


@exponential_backoff(
    max_retries=2,
    base_delay=0.5,
    max_delay=5.0,
    exceptions=(requests.exceptions.Timeout, requests.exceptions.ConnectionError, _RetryableStatus),
    on_retry=_log_retry,
)
def _get_with_retry(session: requests.Session, url: str, params: Optional[Dict[str, Any]], timeout: float):
    """GET with automatic retry on timeouts, dropped connections and 429/5xx."""
    resp = session.get(url, params=params, timeout=timeout)
    if should_retry_http_status(resp.status_code):
        raise _RetryableStatus(resp)
    return resp


class JsonHttpClient:
    """
    Small JSON-over-HTTP client bound to one provider.

    Every call goes through the provider's circuit breaker; a run of
    failures opens the circuit and further calls fail fast with
    :class:`~bookbackfill.retry.CircuitOpenError` until the recovery
    timeout passes.
    """

    def __init__(
        self,
        source: str,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.source = source
        self.timeout = timeout
        self.session = session or requests.Session()
        self.breaker = breaker or CircuitBreaker(
            name=source, failure_threshold=5, recovery_timeout=60, expected_exception=ProviderError
        )

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """Fetch *url* and decode the JSON body.

        Returns:
            Decoded JSON, or None when the provider answers 404.

        Raises:
            ProviderError: On any other HTTP error, timeout, or undecodable body.
            CircuitOpenError: When the provider's circuit is open.
        """
        return self.breaker.call(self._get_json, url, params)

    def _get_json(self, url: str, params: Optional[Dict[str, Any]]) -> Optional[Any]:
        logger.record_api_call()
        label = self.source
        try:
            resp = _get_with_retry(self.session, url, params, self.timeout)
        except Exception as e:
            cause = e.__cause__ if e.__cause__ is not None else e
            if isinstance(cause, _RetryableStatus):
                status = cause.response.status_code
                logger.error(f"{label} request failed after retries", url=url, status=status)
                raise ProviderError(label, f"{label} request failed ({status}): {url}", status) from e
            if isinstance(cause, requests.exceptions.Timeout):
                logger.warning(f"{label} request timed out", url=url)
                raise ProviderError(label, f"{label} request timed out: {url}") from e
            if isinstance(cause, requests.exceptions.RequestException):
                logger.error(f"{label} request error", url=url, error=str(cause))
                raise ProviderError(label, f"{label} request error: {cause}") from e
            raise

        if resp.status_code == 404:
            logger.debug(f"{label} record not found", url=url, status=404)
            return None
        try:
            resp.raise_for_status()
        except requests.exceptions.HTTPError as e:
            logger.error(f"{label} request failed", url=url, status=resp.status_code)
            raise ProviderError(
                label, f"{label} request failed ({resp.status_code}): {url}", resp.status_code
            ) from e

        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(label, f"{label} returned a non-JSON body: {url}") from e
