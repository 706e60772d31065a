"""
Shared HTTP access for the upstream market-data APIs.

Every call gets a fixed timeout so a hung upstream only delays its own stage.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .config import config as app_config
from .errors import UpstreamError, UpstreamTransient

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HEADERS = {"Accept": "application/json"}
RETRY_BACKOFF_SECONDS = 0.4


def is_transient_status(status_code: int) -> bool:
    """429 and any 5xx are worth one more try."""
    return status_code == 429 or status_code >= 500


async def fetch_json(
    url: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Any:
    """
    GET a URL and decode the JSON body.

    Raises:
        UpstreamTransient: on 429 or 5xx responses
        UpstreamError: on any other non-2xx status, timeout, transport error
            or undecodable body
    """
    merged_headers = {**DEFAULT_HEADERS, **(headers or {})}
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                url,
                params=params,
                headers=merged_headers,
                timeout=app_config.HTTP_TIMEOUT_SECONDS,
            )
    except httpx.TimeoutException as e:
        raise UpstreamError(f"Timeout calling {url}") from e
    except httpx.HTTPError as e:
        raise UpstreamError(f"Error calling {url}: {e}") from e

    status_code = response.status_code
    if is_transient_status(status_code):
        raise UpstreamTransient(f"{url} returned {status_code}", status_code=status_code)
    if status_code < 200 or status_code >= 300:
        raise UpstreamError(f"{url} returned {status_code}", status_code=status_code)

    try:
        return response.json()
    except ValueError as e:
        raise UpstreamError(f"Invalid JSON from {url}", status_code=status_code) from e


async def _sleep(seconds: float):
    await asyncio.sleep(seconds)


async def with_single_retry(
    operation: Callable[[], Awaitable[T]],
    backoff: float = RETRY_BACKOFF_SECONDS,
    label: str = "upstream call",
) -> T:
    """
    Run an operation, retrying exactly once after a fixed backoff if it fails
    with a transient upstream error. A second failure surfaces as UpstreamError.
    """
    def log_retry(retry_state: RetryCallState):
        e = retry_state.outcome.exception()
        logger.warning(f"{label} failed transiently ({e.status_code}), retrying in {backoff}s")

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(backoff),
            retry=retry_if_exception_type(UpstreamTransient),
            before_sleep=log_retry,
            sleep=_sleep,
            reraise=True,
        ):
            with attempt:
                return await operation()
    except UpstreamTransient as e:
        raise UpstreamError(f"{label} failed after retry: {e}", status_code=e.status_code) from e
