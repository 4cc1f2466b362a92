"""
HTTP client for the external accrual service.

Implements:
- GET {base_url}/api/orders/{number} parsing into `AccrualResult`
- Exponential backoff for transient failures (network errors, 429, 5xx)
- Retry-After support for rate limiting
- A caller-supplied overall budget per lookup, retries included
"""

from __future__ import annotations

import time
from decimal import InvalidOperation
from typing import Optional

import httpx
import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from domain.errors import AccrualResponseError, TransientExternalError
from domain.models import AccrualResult, AccrualStatus, to_points
from domain.repositories import AccrualClient

logger = structlog.get_logger(__name__)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def parse_accrual_payload(number: str, payload: object) -> AccrualResult:
    """
    Validate the JSON body of a 200 answer.

    Raises `AccrualResponseError` for anything that does not look like
    `{"order": str, "status": str, "accrual": number?}`.
    """

    if not isinstance(payload, dict):
        raise AccrualResponseError(f"Accrual answer for {number} is not an object.")

    reported = payload.get("order", number)
    if str(reported) != number:
        raise AccrualResponseError(
            f"Accrual answer for {number} describes order {reported!r}."
        )

    try:
        status = AccrualStatus(payload.get("status"))
    except ValueError:
        raise AccrualResponseError(
            f"Accrual answer for {number} has unknown status {payload.get('status')!r}."
        ) from None

    raw_accrual = payload.get("accrual")
    accrual = None
    if raw_accrual is not None:
        try:
            accrual = to_points(raw_accrual)
        except (InvalidOperation, TypeError, ValueError):
            raise AccrualResponseError(
                f"Accrual answer for {number} has malformed accrual {raw_accrual!r}."
            ) from None
        if not accrual.is_finite() or accrual < 0:
            raise AccrualResponseError(
                f"Accrual answer for {number} has a negative or non-finite accrual."
            )

    return AccrualResult(order=number, status=status, accrual=accrual)


class HttpAccrualClient(AccrualClient):
    """
    Accrual service client built on `httpx.Client`.

    One client (and connection pool) is shared by every lookup; call
    `close()` on shutdown.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        retry_attempts: int = 5,
        retry_max_wait: float = 10.0,
        retry_total_wait: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Accrual service root, e.g. http://localhost:8080
            timeout: Ceiling for a single HTTP request (seconds)
            retry_attempts: Maximum attempts per lookup
            retry_max_wait: Ceiling for a single backoff sleep (seconds)
            retry_total_wait: Ceiling for one lookup including retries (seconds)
            transport: Optional httpx transport (tests use MockTransport)
        """

        self._timeout = timeout
        self._retry_attempts = retry_attempts
        self._retry_max_wait = retry_max_wait
        self._retry_total_wait = retry_total_wait
        self._backoff = wait_exponential(multiplier=0.5, min=0.5, max=retry_max_wait)
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def get_order(self, number: str, timeout: Optional[float] = None) -> Optional[AccrualResult]:
        budget = self._retry_total_wait if timeout is None else min(timeout, self._retry_total_wait)
        deadline = time.monotonic() + budget

        def wait(retry_state: RetryCallState) -> float:
            delay = self._backoff(retry_state)
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if isinstance(exc, TransientExternalError) and exc.retry_after is not None:
                delay = max(delay, exc.retry_after)
            return max(0.0, min(delay, self._retry_max_wait, deadline - time.monotonic()))

        retrying = Retrying(
            retry=retry_if_exception_type(TransientExternalError),
            stop=stop_after_attempt(self._retry_attempts) | stop_after_delay(budget),
            wait=wait,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(self._fetch, number, deadline)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "accrual_request_retry",
            order=retry_state.args[0] if retry_state.args else None,
            attempt=retry_state.attempt_number,
            sleep=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=str(exc),
        )

    def _fetch(self, number: str, deadline: float) -> Optional[AccrualResult]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TransientExternalError(f"No time left to query accrual for {number}.")

        try:
            response = self._client.get(
                f"/api/orders/{number}",
                timeout=min(self._timeout, remaining),
            )
        except httpx.TimeoutException as exc:
            raise TransientExternalError(f"Accrual request for {number} timed out.") from exc
        except httpx.TransportError as exc:
            raise TransientExternalError(f"Accrual service unreachable: {exc}") from exc

        if response.status_code == httpx.codes.NO_CONTENT:
            logger.debug("accrual_order_unknown", order=number)
            return None

        if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
            raise TransientExternalError(
                "Accrual service is rate limiting requests.",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )

        if response.status_code >= 500:
            raise TransientExternalError(
                f"Accrual service error {response.status_code} for {number}."
            )

        if response.status_code != httpx.codes.OK:
            raise AccrualResponseError(
                f"Unexpected accrual status code {response.status_code} for {number}."
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AccrualResponseError(f"Accrual answer for {number} is not JSON.") from exc

        return parse_accrual_payload(number, payload)
