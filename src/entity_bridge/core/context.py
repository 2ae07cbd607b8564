"""
DataContext: owns the identity map and the collections built from one
metadata registry, and routes request descriptors to a transport per API.

A context is not safe for concurrent mutation from several logical
operations; use one context per independent unit of parallel work.
"""

from __future__ import annotations

import logging
import time
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from .batch import Batch, BatchItemResult
from .errors import BatchError, MetadataError
from .identity import IdentityMap
from .metadata import ApiType, MetadataRegistry, Operation
from .model import Collection, Instance
from .mutations import build_add, build_delete, build_update
from .observability import get_logger, log_event, request_fields
from .query import QueryDescriptor
from .requests import RequestDescriptor, RequestMaterializer

log = get_logger("context")


@runtime_checkable
class Transport(Protocol):
    async def send(self, request: RequestDescriptor) -> Dict[str, Any]: ...

    async def send_batch(
        self, requests: Sequence[RequestDescriptor]
    ) -> List[BatchItemResult]: ...


class DataContext:
    def __init__(
        self,
        registry: MetadataRegistry,
        transports: Mapping[ApiType, Transport],
        *,
        default_page_size: Optional[int] = None,
    ):
        registry.freeze()
        self.registry = registry
        self.transports: Dict[ApiType, Transport] = dict(transports)
        self.default_page_size = default_page_size
        self.identity = IdentityMap(registry, self)
        self.materializer = RequestMaterializer(registry)
        self._roots: Dict[str, Instance] = {}

    # --- wiring ---

    def transport(self, api: ApiType) -> Transport:
        try:
            return self.transports[api]
        except KeyError:
            raise MetadataError(
                f"No transport configured for the {api.value} API."
            ) from None

    def root(self, tag: str, **values: Any) -> Instance:
        """Singleton entry point (site web, team, ...) collections hang off."""
        existing = self._roots.get(tag)
        if existing is not None:
            for name, value in values.items():
                existing._load_value(name, value)
            return existing
        descriptor = self.registry.get(tag)
        model = descriptor.model or Instance
        instance = model(descriptor, context=self)
        for name, value in values.items():
            instance._load_value(name, value)
        self._roots[tag] = self.identity.register(instance)
        return self._roots[tag]

    def collection(
        self, tag: str, parent: Optional[Instance] = None, member: Optional[str] = None
    ) -> Collection:
        return Collection(self, self.registry.get(tag), parent=parent, member=member)

    def new_batch(self) -> Batch:
        return Batch()

    # --- sending ---

    async def send(self, request: RequestDescriptor) -> Dict[str, Any]:
        return await self.transport(request.api).send(request)

    async def _dispatch(
        self,
        request: RequestDescriptor,
        apply: Callable[[Dict[str, Any]], Any],
        batch: Optional[Batch],
    ) -> Any:
        if batch is not None:
            batch.add(request, on_result=apply)
            log_event(
                "request_batched",
                logger=log,
                level=logging.DEBUG,
                batch=batch.id,
                **request_fields(request),
            )
            return None
        return apply(await self.send(request))

    async def execute(
        self, batch: Batch, *, raise_on_error: bool = True
    ) -> List[Optional[BatchItemResult]]:
        """
        Flush a batch: one exchange per API (chunked to the API's limit),
        results correlated to submission order. Callbacks of successful
        items run in submission order once every exchange has returned.

        If an exchange itself fails, the items of exchanges that already
        completed are still applied before the exchange error propagates;
        items of the failed and later exchanges are left without a result.
        """
        if batch.executed:
            raise BatchError(f"Batch {batch.id} was already executed.")
        batch.executed = True
        start = time.perf_counter()

        try:
            for api, items in batch.groups():
                requests = [i.request for i in items]
                results = await self.transport(api).send_batch(requests)
                for item, result in zip(items, results):
                    item.result = BatchItemResult(
                        index=item.index,
                        status=result.status,
                        body=result.body,
                        error=result.error,
                    )
        finally:
            first_error = self._apply_results(batch)
            log_event(
                "batch_executed",
                logger=log,
                count=len(batch),
                completed=sum(1 for item in batch if item.result is not None),
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
        if first_error is not None and raise_on_error:
            raise first_error
        return batch.results

    def _apply_results(self, batch: Batch) -> Optional[Exception]:
        first_error = None
        for item in batch:
            if item.result is None:
                continue
            if item.result.error is not None:
                first_error = first_error or item.result.error
                continue
            if item.on_result is not None:
                item.on_result(item.result.body)
        return first_error

    # --- single-instance operations ---

    async def get(
        self,
        instance: Instance,
        *,
        select: Iterable[str] = (),
        expand: Iterable[str] = (),
        batch: Optional[Batch] = None,
    ) -> Instance:
        query = QueryDescriptor(select=tuple(select), expand=tuple(expand))
        request = self.materializer.build(
            instance.tag, Operation.GET, instance, query, scope=_scope(instance)
        )

        def apply(payload: Dict[str, Any]) -> Instance:
            return self.identity.merge(
                instance.tag, payload, parent=instance.parent, into=instance
            )

        await self._dispatch(request, apply, batch)
        return instance

    async def add(
        self, instance: Instance, *, batch: Optional[Batch] = None
    ) -> Instance:
        descriptor = instance.descriptor
        payload = build_add(descriptor, instance)
        request = self.materializer.build(
            instance.tag, Operation.ADD, instance, scope=_scope(instance), body=payload
        )

        def apply(response: Dict[str, Any]) -> Instance:
            collection = instance.collection
            if response:
                self.identity.merge(
                    instance.tag,
                    response,
                    collection=collection,
                    parent=instance.parent,
                    into=instance,
                )
            else:
                instance.clear_changes()
                if collection is not None:
                    collection._append(instance)
            log_event(
                "entity_added",
                logger=log,
                entity=instance.tag,
                operation=Operation.ADD,
                api=descriptor.api,
            )
            return instance

        await self._dispatch(request, apply, batch)
        return instance

    async def update(
        self, instance: Instance, *, batch: Optional[Batch] = None
    ) -> Instance:
        payload = build_update(instance.descriptor, instance)
        sent = instance.changed
        request = self.materializer.build(
            instance.tag,
            Operation.UPDATE,
            instance,
            scope=_scope(instance),
            body=payload,
        )

        def apply(response: Dict[str, Any]) -> Instance:
            instance.clear_changes(sent)
            log_event(
                "entity_updated",
                logger=log,
                entity=instance.tag,
                operation=Operation.UPDATE,
                api=instance.descriptor.api,
                count=len(sent),
            )
            return instance

        await self._dispatch(request, apply, batch)
        return instance

    async def delete(
        self, instance: Instance, *, batch: Optional[Batch] = None
    ) -> None:
        request = self.materializer.build(
            instance.tag,
            Operation.DELETE,
            instance,
            scope=_scope(instance),
            body=build_delete(instance.descriptor, instance),
        )

        def apply(response: Dict[str, Any]) -> None:
            collection = instance.collection
            if collection is not None:
                collection._remove(instance)
            self.identity.evict(instance)
            instance.deleted = True
            log_event(
                "entity_deleted",
                logger=log,
                entity=instance.tag,
                operation=Operation.DELETE,
                api=instance.descriptor.api,
            )

        await self._dispatch(request, apply, batch)


def _scope(instance: Instance) -> Optional[str]:
    parent = instance.parent
    return parent.tag if parent is not None else None


__all__ = ["DataContext", "Transport"]
