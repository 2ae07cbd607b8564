import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx

from .core.batch import (
    BatchItemResult,
    decode_graph_batch,
    decode_rest_batch,
    encode_graph_batch,
    encode_rest_batch,
    outcome,
)
from .core.errors import (
    ClientError,
    HTTPError,
    ParseError,
    RetryableHTTPError,
    http_error,
)
from .core.metadata import ApiType
from .core.requests import GRAPH_JSON, REST_JSON, RequestDescriptor

TokenSource = Union[str, Callable[[], Union[str, Awaitable[str]]]]

REQUEST_ID_HEADER = "client-request-id"


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3  # total extra attempts
    backoff_base_seconds: float = 0.3  # 0.3, 0.6, 1.2...
    max_backoff_seconds: float = 30.0
    retry_statuses: frozenset[int] = frozenset({429, 502, 503, 504})


class BearerTokenAuth(httpx.Auth):
    """Adds ``Authorization: Bearer`` from a fixed token or a token callable."""

    def __init__(self, token: TokenSource):
        self._token = token

    async def _resolve(self) -> str:
        token = self._token
        if callable(token):
            token = token()
            if inspect.isawaitable(token):
                token = await token
        return str(token)

    async def async_auth_flow(self, request: httpx.Request):
        request.headers["Authorization"] = f"Bearer {await self._resolve()}"
        yield request


class ApiClient:
    """
    HTTP transport for one API flavour (REST or Graph).
    - Handles bearer auth, base URL, timeouts, retries
    - Sends RequestDescriptors and batch envelopes, returns parsed JSON
    - No query/merge logic; the core owns those decisions
    """

    def __init__(
        self,
        *,
        base_url: str,
        api: ApiType,
        token: TokenSource,
        timeout_seconds: float = 10.0,
        retry: Optional[RetryConfig] = None,
        logger: Optional[logging.Logger] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        base_url = (base_url or "").rstrip("/")
        if not base_url:
            raise ValueError("base_url must be provided.")
        if not token:
            raise ValueError("token must be provided.")

        self.base_url = base_url
        self.api = api
        self.timeout_seconds = timeout_seconds
        self.retry = retry if retry is not None else RetryConfig()
        self.log = logger or logging.getLogger("entity_bridge.client")

        # Applied per request; an injected client carries neither.
        self._auth = BearerTokenAuth(token)
        self._accept = REST_JSON if api == ApiType.REST else GRAPH_JSON
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout_seconds)

    def _url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _backoff(self, attempt: int, resp: Optional[httpx.Response] = None) -> float:
        delay = self.retry.backoff_base_seconds * (2**attempt)
        if resp is not None:
            retry_after = resp.headers.get("Retry-After", "")
            if retry_after.isdigit():
                delay = float(retry_after)
        return min(delay, self.retry.max_backoff_seconds)

    async def request_raw(
        self,
        method: str,
        url: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        content: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Core request method.
        - Retries on transient failures (network/timeouts + 429/502/503/504),
          honouring a numeric Retry-After header
        - Raises RetryableHTTPError / TerminalHTTPError on non-2xx responses
        - Raises ClientError on network/timeout errors after retries
        """
        method = method.upper()
        start = time.perf_counter()
        request_id = uuid.uuid4().hex
        send_headers = {"Accept": self._accept}
        send_headers.update(headers or {})
        send_headers[REQUEST_ID_HEADER] = request_id
        target = self._url(url)

        attempt = 0

        while True:
            try:
                resp = await self.http.request(
                    method,
                    target,
                    json=json,
                    content=content,
                    headers=send_headers,
                    auth=self._auth,
                )
                duration_ms = int((time.perf_counter() - start) * 1000)

                self.log.debug(
                    "op.request",
                    extra={
                        "request_id": request_id,
                        "api": self.api.value,
                        "method": method,
                        "uri": str(resp.request.url),
                        "status": resp.status_code,
                        "duration_ms": duration_ms,
                        "attempt": attempt,
                    },
                )

                if resp.status_code in self.retry.retry_statuses:
                    if attempt < self.retry.max_retries:
                        await asyncio.sleep(self._backoff(attempt, resp))
                        attempt += 1
                        continue

                if resp.status_code < 200 or resp.status_code >= 300:
                    raise self._to_http_error(resp, method=method)

                return resp

            except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout) as exc:
                if attempt < self.retry.max_retries:
                    await asyncio.sleep(self._backoff(attempt))
                    attempt += 1
                    continue
                raise ClientError(
                    f"Network/timeout error calling {method} {url}: {exc}"
                ) from exc

            except httpx.HTTPError as exc:
                # Other httpx exceptions (rare) - do not blindly retry
                raise ClientError(f"HTTPX error calling {method} {url}: {exc}") from exc

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        resp = await self.request_raw(method, url, json=json, headers=headers)
        return self._safe_json(resp)

    async def send(self, request: RequestDescriptor) -> Dict[str, Any]:
        return await self.request(
            request.method,
            request.uri,
            json=request.json_body(),
            headers=dict(request.headers),
        )

    async def send_batch(
        self, requests: Sequence[RequestDescriptor]
    ) -> List[BatchItemResult]:
        """
        Send one batch envelope and return per-item outcomes in submission
        order. Item failures are reported in the outcome, not raised.
        """
        if not requests:
            return []
        start = time.perf_counter()
        if self.api == ApiType.GRAPH:
            envelope = encode_graph_batch(requests, self.base_url)
            resp = await self.request_raw(
                "POST",
                "$batch",
                json=envelope,
                headers={"Content-Type": GRAPH_JSON},
            )
            pairs = decode_graph_batch(self._safe_json(resp), len(requests))
        else:
            content_type, body = encode_rest_batch(requests, self.base_url)
            resp = await self.request_raw(
                "POST",
                "_api/$batch",
                content=body,
                headers={"Content-Type": content_type},
            )
            pairs = decode_rest_batch(resp.text)
            if len(pairs) != len(requests):
                raise ParseError(
                    f"REST batch returned {len(pairs)} responses"
                    f" for {len(requests)} requests."
                )

        self.log.debug(
            "op.batch",
            extra={
                "api": self.api.value,
                "count": len(requests),
                "status": resp.status_code,
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return [
            outcome(i, req, status, body)
            for i, (req, (status, body)) in enumerate(zip(requests, pairs))
        ]

    def _safe_json(self, resp: httpx.Response) -> Dict[str, Any]:
        # Handle empty responses (204 No Content, etc.)
        if not resp.content:
            return {}

        try:
            data = resp.json()
        except Exception as exc:
            snippet = (resp.text or "")[:500]
            raise ParseError(
                f"Expected JSON from {resp.request.method} "
                f"{resp.request.url}, got non-JSON body snippet: "
                f"{snippet!r}"
            ) from exc

        if not isinstance(data, dict):
            raise ParseError(
                f"Expected top-level JSON object from "
                f"{resp.request.method} {resp.request.url}, "
                f"got {type(data).__name__}"
            )
        return data

    def _to_http_error(self, resp: httpx.Response, *, method: str) -> HTTPError:
        url = str(resp.request.url)
        # Try JSON first; fall back to text snippet.
        response_json: Optional[Dict[str, Any]] = None
        response_text: Optional[str] = None

        try:
            parsed = resp.json()
            if isinstance(parsed, dict):
                response_json = parsed
        except Exception:
            response_text = (resp.text or "")[:500]

        return http_error(
            status_code=resp.status_code,
            method=method,
            url=url,
            response_json=response_json,
            response_text=response_text,
        )


__all__ = [
    "ApiClient",
    "BearerTokenAuth",
    "RetryConfig",
    "RetryableHTTPError",
    "REQUEST_ID_HEADER",
]
