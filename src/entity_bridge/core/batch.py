"""
Deferred execution: a Batch collects request descriptors and is flushed as
one multi-part exchange per target API. Also holds the two envelope
codecs (Graph JSON ``$batch`` and REST ``multipart/mixed``).
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import BatchError, HTTPError, http_error
from .metadata import ApiType
from .requests import RequestDescriptor

GRAPH_BATCH_LIMIT = 20
REST_BATCH_LIMIT = 100
BATCH_LIMITS = {ApiType.GRAPH: GRAPH_BATCH_LIMIT, ApiType.REST: REST_BATCH_LIMIT}

CRLF = "\r\n"
STATUS_LINE = re.compile(r"^HTTP/\d(?:\.\d)? (\d{3})")
WRITE_METHODS = {"POST", "PATCH", "PUT", "MERGE", "DELETE"}

ResultCallback = Callable[[Dict[str, Any]], Any]


@dataclass(frozen=True)
class BatchItemResult:
    index: int
    status: int
    body: Dict[str, Any]
    error: Optional[HTTPError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchItem:
    index: int
    request: RequestDescriptor
    on_result: Optional[ResultCallback] = None
    result: Optional[BatchItemResult] = None


class Batch:
    """
    Ordered set of deferred requests. Requests keep submission order within
    each exchange; separate batches are independent of each other.
    """

    def __init__(self) -> None:
        self.id = uuid.uuid4().hex
        self._items: List[BatchItem] = []
        self.executed = False

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[BatchItem]:
        return iter(self._items)

    def add(
        self, request: RequestDescriptor, on_result: Optional[ResultCallback] = None
    ) -> int:
        if self.executed:
            raise BatchError(f"Batch {self.id} was already executed.")
        item = BatchItem(index=len(self._items), request=request, on_result=on_result)
        self._items.append(item)
        return item.index

    def groups(self) -> List[Tuple[ApiType, List[BatchItem]]]:
        """Items per API in submission order, chunked to the API's limit."""
        by_api: Dict[ApiType, List[BatchItem]] = {}
        for item in self._items:
            by_api.setdefault(item.request.api, []).append(item)
        out: List[Tuple[ApiType, List[BatchItem]]] = []
        for api, items in by_api.items():
            size = BATCH_LIMITS[api]
            for start in range(0, len(items), size):
                out.append((api, items[start : start + size]))
        return out

    @property
    def results(self) -> List[Optional[BatchItemResult]]:
        return [item.result for item in self._items]


def outcome(
    index: int, request: RequestDescriptor, status: int, body: Any
) -> BatchItemResult:
    body = body if isinstance(body, dict) else {}
    error = None
    if status < 200 or status >= 300:
        error = http_error(
            status_code=status,
            method=request.method,
            url=request.uri,
            response_json=body or None,
        )
    return BatchItemResult(index=index, status=status, body=body, error=error)


# --- Graph JSON envelope --------------------------------------------------- #


def _relative(uri: str, base_url: str) -> str:
    base = base_url.rstrip("/")
    if uri.startswith(base):
        uri = uri[len(base) :]
    return uri if uri.startswith("/") else "/" + uri


def encode_graph_batch(
    requests: Sequence[RequestDescriptor], base_url: str
) -> Dict[str, Any]:
    entries = []
    for i, req in enumerate(requests):
        entry: Dict[str, Any] = {
            "id": str(i + 1),
            "method": req.method,
            "url": _relative(req.uri, base_url),
            "headers": dict(req.headers),
        }
        if req.body is not None:
            entry["body"] = req.json_body()
        entries.append(entry)
    return {"requests": entries}


def decode_graph_batch(
    payload: Dict[str, Any], count: int
) -> List[Tuple[int, Dict[str, Any]]]:
    """Responses may arrive in any order; correlate them by id."""
    responses = payload.get("responses")
    if not isinstance(responses, list):
        raise BatchError("Graph batch response carries no 'responses' list.")
    by_id: Dict[str, Tuple[int, Dict[str, Any]]] = {}
    for resp in responses:
        if not isinstance(resp, dict):
            continue
        body = resp.get("body")
        by_id[str(resp.get("id"))] = (
            int(resp.get("status", 0)),
            body if isinstance(body, dict) else {},
        )
    ordered = []
    for i in range(count):
        try:
            ordered.append(by_id[str(i + 1)])
        except KeyError:
            raise BatchError(f"Graph batch response is missing item {i + 1}.") from None
    return ordered


# --- REST multipart envelope ----------------------------------------------- #


def _absolute(uri: str, base_url: str) -> str:
    if uri.startswith("http://") or uri.startswith("https://"):
        return uri
    return base_url.rstrip("/") + "/" + uri.lstrip("/")


def _http_part(req: RequestDescriptor, base_url: str) -> List[str]:
    lines = [
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        "",
        f"{req.method} {_absolute(req.uri, base_url)} HTTP/1.1",
    ]
    lines.extend(f"{k}: {v}" for k, v in req.headers.items())
    lines.append("")
    if req.body is not None:
        lines.append(json.dumps(req.json_body()))
    lines.append("")
    return lines


def encode_rest_batch(
    requests: Sequence[RequestDescriptor],
    base_url: str,
    boundary: Optional[str] = None,
) -> Tuple[str, str]:
    """Returns (content_type, body). Writes travel in their own changeset."""
    boundary = boundary or f"batch_{uuid.uuid4()}"
    lines: List[str] = []
    for req in requests:
        lines.append(f"--{boundary}")
        if req.method in WRITE_METHODS:
            changeset = f"changeset_{uuid.uuid4()}"
            lines.append(f'Content-Type: multipart/mixed; boundary="{changeset}"')
            lines.append("")
            lines.append(f"--{changeset}")
            lines.extend(_http_part(req, base_url))
            lines.append(f"--{changeset}--")
            lines.append("")
        else:
            lines.extend(_http_part(req, base_url))
    lines.append(f"--{boundary}--")
    lines.append("")
    return f"multipart/mixed; boundary={boundary}", CRLF.join(lines)


def decode_rest_batch(text: str) -> List[Tuple[int, Dict[str, Any]]]:
    """
    Pull (status, json body) pairs out of a multipart batch response, in
    the order the server wrote them.
    """
    results: List[Tuple[int, Dict[str, Any]]] = []
    lines = text.replace(CRLF, "\n").split("\n")
    i = 0
    while i < len(lines):
        match = STATUS_LINE.match(lines[i])
        if not match:
            i += 1
            continue
        status = int(match.group(1))
        i += 1
        while i < len(lines) and lines[i].strip():
            i += 1  # response headers
        body_lines: List[str] = []
        while i < len(lines) and not lines[i].startswith("--"):
            body_lines.append(lines[i])
            i += 1
        raw = "\n".join(body_lines).strip()
        body: Dict[str, Any] = {}
        if raw:
            try:
                parsed = json.loads(raw)
            except ValueError:
                parsed = {"message": raw[:500]}
            body = parsed if isinstance(parsed, dict) else {"value": parsed}
        results.append((status, body))
    return results


__all__ = [
    "Batch",
    "BatchItem",
    "BatchItemResult",
    "outcome",
    "encode_graph_batch",
    "decode_graph_batch",
    "encode_rest_batch",
    "decode_rest_batch",
    "GRAPH_BATCH_LIMIT",
    "REST_BATCH_LIMIT",
]
