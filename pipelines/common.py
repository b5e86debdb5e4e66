"""Shared utilities for retrieving external API responses."""

from __future__ import annotations

from typing import Any, Mapping, MutableMapping

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

DEFAULT_TIMEOUT_SECONDS = 30.0
_DEFAULT_WAIT = wait_exponential(min=1, max=16)


Headers = Mapping[str, str] | None
Params = Mapping[str, Any] | None
Data = MutableMapping[str, Any] | bytes | str | None
JsonData = Any


async def fetch_json(
    url: str,
    *,
    headers: Headers = None,
    params: Params = None,
    method: str = "GET",
    data: Data = None,
    json: JsonData = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    attempts: int = 1,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Any:
    """Execute an HTTP request and return the decoded JSON payload.

    Only transport-level failures are retried, and only when ``attempts`` is
    greater than one; non-success statuses raise ``httpx.HTTPStatusError``
    immediately. The helper keeps the interface close to
    ``httpx.AsyncClient.request`` so source clients can forward API-specific
    requirements (headers, params, JSON body, etc.) without reimplementing
    networking concerns.
    """

    request_method = method.upper()
    retrying = AsyncRetrying(
        wait=_DEFAULT_WAIT,
        stop=stop_after_attempt(max(1, attempts)),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                response = await client.request(
                    request_method,
                    url,
                    headers=headers,
                    params=params,
                    data=data,
                    json=json,
                )

    response.raise_for_status()
    return response.json()


__all__ = ["fetch_json", "DEFAULT_TIMEOUT_SECONDS"]
