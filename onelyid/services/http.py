"""
Onelyid — Outbound HTTP
=========================

What:  Shared construction of the httpx client and the tenacity retry policy
       used by the identity resolver and the OAuth client.

Retry Policy:
    Only transport failures (connect errors, timeouts, dropped connections)
    are retried, with exponential backoff plus jitter. HTTP error statuses
    are answers, not transient faults, and are returned to the caller.
"""

import logging

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from onelyid import __version__
from onelyid.config import OnelyidConfig

logger = logging.getLogger(__name__)

USER_AGENT = f"onelyid/{__version__}"


def create_http_client(config: OnelyidConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.http_timeout),
        headers={"User-Agent": USER_AGENT},
        follow_redirects=False,
    )


def http_retry(config: OnelyidConfig):
    """Tenacity decorator configured from ``config``'s retry settings."""
    return retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(config.retry_max_attempts),
        wait=wait_exponential_jitter(
            initial=config.retry_min_wait,
            max=config.retry_max_wait,
            jitter=config.retry_min_wait,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
