"""
Cursor-driven paging for one Collection.

States: Unloaded -> Loaded(HasMore) -> Loaded(Exhausted). Fetches on one
collection are serialized by an asyncio.Lock. State and merged data only
change after a page has fully arrived, so a failed or cancelled fetch
leaves both untouched and ``next_page()`` can simply be called again.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .errors import PagingError, ParseError
from .observability import get_logger, log_event
from .payload import collection_elements, next_link

if TYPE_CHECKING:  # pragma: no cover
    from .batch import Batch
    from .model import Collection, Instance

log = get_logger("paging")


class PagingPhase(str, Enum):
    UNLOADED = "Unloaded"
    HAS_MORE = "HasMore"
    EXHAUSTED = "Exhausted"


@dataclass(frozen=True)
class PagingState:
    """
    ``skip`` and ``take`` are what is left of the query's client-side
    window once the pages seen so far have been consumed.
    """

    cursor: Optional[str] = None
    loaded: bool = False
    exhausted: bool = False
    skip: int = 0
    take: Optional[int] = None

    @property
    def phase(self) -> PagingPhase:
        if not self.loaded:
            return PagingPhase.UNLOADED
        return PagingPhase.EXHAUSTED if self.exhausted else PagingPhase.HAS_MORE

    @classmethod
    def after_page(
        cls, cursor: Optional[str], skip: int = 0, take: Optional[int] = None
    ) -> "PagingState":
        if take == 0:
            cursor = None
        return cls(
            cursor=cursor,
            loaded=True,
            exhausted=cursor is None,
            skip=skip,
            take=take,
        )


def window(
    records: List[Any], skip: int, take: Optional[int]
) -> Tuple[List[Any], int, Optional[int]]:
    """Apply a skip/take window to one page; returns (kept, skip left, take left)."""
    skipped = min(skip, len(records))
    kept = records[skipped:]
    if take is not None:
        kept = kept[:take]
        take -= len(kept)
    return kept, skip - skipped, take


class PagingController:
    def __init__(self, collection: "Collection"):
        self._collection = collection
        self._lock = asyncio.Lock()
        self.state = PagingState()

    @property
    def can_page(self) -> bool:
        """True once a first page has been seen (no cursor exists before)."""
        return self.state.loaded

    @property
    def exhausted(self) -> bool:
        return self.state.loaded and self.state.exhausted

    def mark_loaded(self, cursor: Optional[str]) -> None:
        """Record a page that arrived inline (e.g. an expanded property)."""
        self.state = PagingState.after_page(cursor)

    def reset(self) -> None:
        self.state = PagingState()

    # --- fetches ---

    async def load(self, *, batch: Optional["Batch"] = None) -> List["Instance"]:
        """Initial fetch with the collection's current query."""
        ctx = self._collection.context
        request = ctx.materializer.read(self._collection)
        if batch is not None:
            batch.add(request, on_result=self._apply_first)
            return []
        async with self._lock:
            payload = await ctx.send(request)
            return self._apply_first(payload)

    async def next_page(self) -> List["Instance"]:
        """
        Fetch the page behind the stored cursor and append it. A no-op once
        exhausted; performs the initial load while still Unloaded.
        """
        async with self._lock:
            if not self.state.loaded:
                ctx = self._collection.context
                payload = await ctx.send(ctx.materializer.read(self._collection))
                return self._apply_first(payload)
            if self.state.exhausted or self.state.cursor is None:
                return []
            ctx = self._collection.context
            request = ctx.materializer.follow(self._collection, self.state.cursor)
            payload = await ctx.send(request)
            cursor = next_link(payload)
            if cursor is not None and cursor == self.state.cursor:
                raise PagingError(
                    f"Server repeated cursor {cursor!r} for"
                    f" {self._collection.descriptor.tag}."
                )
            records, skip, take = window(
                self._records(payload), self.state.skip, self.state.take
            )
            instances = self._merge(records)
            self.state = PagingState.after_page(cursor, skip, take)
            self._log("page_loaded", instances)
            return instances

    async def all_pages(self) -> List["Instance"]:
        """Load until exhausted; idempotent once the collection is exhausted."""
        while not self.exhausted:
            await self.next_page()
        return list(self._collection)

    # --- merging ---

    def _apply_first(self, payload: Dict[str, Any]) -> List["Instance"]:
        query = self._collection.query_descriptor
        records, skip, take = window(self._records(payload), query.skip, query.take)
        instances = self._merge(records)
        self.state = PagingState.after_page(next_link(payload), skip, take)
        self._log("collection_loaded", instances)
        return instances

    def _records(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            return collection_elements(payload)
        except ValueError as exc:
            raise ParseError(
                f"Malformed collection payload for {self._collection.descriptor.tag}:"
                f" {exc}"
            ) from exc

    def _merge(self, records: List[Dict[str, Any]]) -> List["Instance"]:
        coll = self._collection
        identity = coll.context.identity
        return identity.merge_all(
            coll.descriptor.tag, records, collection=coll, parent=coll.parent
        )

    def _log(self, event: str, instances: List["Instance"]) -> None:
        log_event(
            event,
            logger=log,
            entity=self._collection.descriptor.tag,
            api=self._collection.descriptor.api,
            count=len(instances),
            has_more=not self.state.exhausted,
        )


__all__ = ["PagingPhase", "PagingState", "PagingController", "window"]
