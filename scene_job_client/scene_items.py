"""Dependency-ordered creation of scene items through queued batches.

Scene-item requests form a forest keyed by supplied id. Items are created a
depth layer at a time so that every parent exists before its children are
submitted. Each layer is split into batches, submitted concurrently, and the
resulting queued batches are polled until the platform reports one outcome
per operation.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from scene_job_client.client import PlatformClient
from scene_job_client.errors import BatchRejectedError, SceneRequestError
from scene_job_client.models import (
    ApiError,
    Batch,
    BatchOperation,
    CreateSceneAndSceneItemsResult,
    CreateSceneItemsResult,
    ErrorSource,
    Failure,
    OperationRef,
    Polling,
    PollOutcome,
    PollResultKind,
    QueuedBatchOps,
    ResourceIdentifier,
    ResourceRef,
    SceneItemError,
    SceneItemRequest,
)
from scene_job_client.polling import (
    DEFAULT_POLLING,
    TRANSPORT_ERRORS,
    classify_response,
    client_failure,
    poll_queued_job,
    raise_for_outcome,
)
from scene_job_client.scenes import commit_and_fit_scene, create_scene
from scene_job_client.utils import chunked, partition

MAX_BATCH_OPERATIONS = 500
MAX_POLL_CONCURRENCY = 100
DEFAULT_PARALLELISM = 20

PARENT_POINTER = "/data/attributes/parent"
SOURCE_POINTER = "/data/relationships/source"

MISSING_SOURCE_TYPE_KEY = "system:missing-source-type"
MISSING_SOURCE_ID_KEY = "system:missing-source-id"

ProgressCallback = Callable[[int, int], Any]


def build_child_index(
    requests: Sequence[SceneItemRequest],
) -> Dict[Optional[str], List[SceneItemRequest]]:
    """Group requests by parent supplied id, ``None`` holding the roots."""
    index: Dict[Optional[str], List[SceneItemRequest]] = {}
    for request in requests:
        index.setdefault(request.parent or None, []).append(request)
    return index


def assign_ordinals(requests: Sequence[SceneItemRequest]) -> List[SceneItemRequest]:
    """Default each missing ordinal to the item's position among its siblings."""
    positions: Dict[Optional[str], int] = {}
    ordered = []
    for request in requests:
        key = request.parent or None
        position = positions.get(key, 0)
        positions[key] = position + 1
        if request.ordinal is None:
            request = request.model_copy(update={"ordinal": position})
        ordered.append(request)
    return ordered


def _parent_not_found(request: SceneItemRequest) -> SceneItemError:
    return SceneItemError(
        request=request,
        api_error=ApiError(
            status="404",
            code="NotFound",
            title="Parent scene item not found.",
            detail=f"Parent '{request.parent}' of scene item '{request.supplied_id}' "
            "is not created by this request set.",
            source=ErrorSource(pointer=PARENT_POINTER),
        ),
    )


def depth_layers(
    requests: Sequence[SceneItemRequest],
) -> Tuple[List[List[SceneItemRequest]], List[SceneItemError]]:
    """Order requests into parent-before-child layers.

    Layer 0 holds the roots, layer N the children of layer N-1. Requests that
    never get placed (missing parent, descendant of one, or part of a cycle)
    are returned as NotFound item errors.
    """
    index = build_child_index(requests)
    layers: List[List[SceneItemRequest]] = []
    placed = set()
    expanded = set()

    layer = index.get(None, [])
    while layer:
        layers.append(layer)
        placed.update(id(request) for request in layer)
        children = []
        for parent in layer:
            if parent.supplied_id in expanded:
                continue
            expanded.add(parent.supplied_id)
            children.extend(c for c in index.get(parent.supplied_id, []) if id(c) not in placed)
        layer = children

    errors = [_parent_not_found(r) for r in requests if id(r) not in placed]
    return layers, errors


def is_missing_source(error: ApiError) -> bool:
    pointer = error.pointer or ""
    return error.code == "NotFound" and pointer.startswith(SOURCE_POINTER)


def placeholder_request(request: SceneItemRequest) -> SceneItemRequest:
    """Copy of ``request`` without its source, flagged for later backfill."""
    metadata = dict(request.metadata or {})
    if request.source is not None:
        metadata[MISSING_SOURCE_TYPE_KEY] = request.source.data.type
        metadata[MISSING_SOURCE_ID_KEY] = request.source.data.id
    return request.model_copy(update={"source": None, "metadata": metadata})


def batch_operations(scene_id: str, requests: Sequence[SceneItemRequest]) -> List[BatchOperation]:
    ref = OperationRef(type="scene", id=scene_id)
    return [BatchOperation(op="add", ref=ref, data=request) for request in requests]


async def _submit_batch(
    client: PlatformClient, ops: List[BatchOperation], limiter: asyncio.Semaphore
) -> QueuedBatchOps:
    async with limiter:
        try:
            response = await client.create_batch(
                {"batch:operations": [op.to_wire() for op in ops]}
            )
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Error submitting batch of {len(ops)} operations: {e!r}")
            return QueuedBatchOps(ops=ops, result=client_failure(e))

    result = classify_response(response.status, response.body)
    if result.kind == PollResultKind.queued:
        return QueuedBatchOps(ops=ops, result=result.job)
    if result.failure is not None:
        return QueuedBatchOps(ops=ops, result=result.failure)
    return QueuedBatchOps(
        ops=ops,
        result=Failure(
            errors=[
                ApiError(
                    status=str(response.status),
                    code="UnexpectedResponse",
                    title="Batch submission did not return a queued batch.",
                )
            ]
        ),
    )


async def submit_batches(
    client: PlatformClient,
    scene_id: str,
    requests: Sequence[SceneItemRequest],
    limiter: asyncio.Semaphore,
    batch_size: int = MAX_BATCH_OPERATIONS,
    fail_fast: bool = False,
) -> List[QueuedBatchOps]:
    """Submit ``requests`` as concurrent batches of at most ``batch_size``."""
    ops = batch_operations(scene_id, requests)
    submitted = await asyncio.gather(
        *[_submit_batch(client, chunk, limiter) for chunk in chunked(ops, batch_size)]
    )
    for queued in submitted:
        if queued.failure is not None:
            logger.warning(f"Batch of {len(queued.ops)} operations rejected")
            if fail_fast:
                raise BatchRejectedError(queued.ops, queued.failure)
    return list(submitted)


async def poll_batches(
    client: PlatformClient,
    queued: Sequence[QueuedBatchOps],
    polling: Polling,
    limiter: asyncio.Semaphore,
) -> List[Tuple[QueuedBatchOps, PollOutcome]]:
    outcomes = await asyncio.gather(
        *[
            poll_queued_job(
                q.job.id,
                client.get_queued_batch,
                polling=polling,
                allow_not_found=True,
                limiter=limiter,
                parse=Batch.model_validate,
            )
            for q in queued
        ]
    )
    return list(zip(queued, outcomes))


def _missing_result(batch_id: str, index: int) -> ApiError:
    return ApiError(
        status="500",
        code="MissingResult",
        title="Batch returned no result for this operation.",
        detail=f"Queued batch {batch_id} has no result at index {index}.",
    )


def _resolved_outcomes(
    polled: Sequence[Tuple[QueuedBatchOps, PollOutcome]], fail_fast: bool
) -> Tuple[List[Tuple[BatchOperation, Any]], List[QueuedBatchOps]]:
    """Pair each operation with its outcome; collect batches whose job failed.

    A batch still queued after its budget always raises; a failed batch job
    raises only in fail-fast mode. Operations the batch returned no result for
    are paired with a MissingResult error.
    """
    results: List[Tuple[BatchOperation, Any]] = []
    failed: List[QueuedBatchOps] = []
    for queued, outcome in polled:
        if outcome.exhausted or fail_fast:
            raise_for_outcome(outcome)
        if not outcome.resolved:
            failed.append(QueuedBatchOps(ops=queued.ops, result=outcome.result.failure))
            continue
        batch: Batch = outcome.value
        if len(batch.results) != len(queued.ops):
            logger.warning(
                f"Queued batch {outcome.id} returned {len(batch.results)} results "
                f"for {len(queued.ops)} operations"
            )
        results.extend(zip(queued.ops, batch.results))
        results.extend(
            (op, _missing_result(outcome.id, index))
            for index, op in enumerate(queued.ops[len(batch.results):], start=len(batch.results))
        )
    return results, failed


def _item_errors(results: Sequence[Tuple[BatchOperation, Any]]) -> List[SceneItemError]:
    return [
        SceneItemError(request=op.data, api_error=result)
        for op, result in results
        if isinstance(result, ApiError)
    ]


class _LayerRunner:
    """Shared state for one run of the layered pipeline."""

    def __init__(
        self,
        client: PlatformClient,
        scene_id: str,
        parallelism: int,
        polling: Polling,
        fail_fast: bool,
        placeholders: bool,
        batch_size: int,
        total: int,
        on_progress: Optional[ProgressCallback],
    ):
        self.client = client
        self.scene_id = scene_id
        self.polling = polling
        self.fail_fast = fail_fast
        self.placeholders = placeholders
        self.batch_size = batch_size
        self.total = total
        self.on_progress = on_progress
        self.complete = 0
        self.submit_limiter = asyncio.Semaphore(parallelism)
        self.poll_limiter = asyncio.Semaphore(min(parallelism, MAX_POLL_CONCURRENCY))
        self.logger = logger

    def _progress(self, count: int) -> None:
        self.complete += count
        if self.on_progress is not None:
            self.on_progress(self.complete, self.total)

    async def submit(self, requests: Sequence[SceneItemRequest]) -> List[QueuedBatchOps]:
        return await submit_batches(
            self.client,
            self.scene_id,
            requests,
            self.submit_limiter,
            batch_size=self.batch_size,
            fail_fast=self.fail_fast,
        )

    async def poll(
        self, accepted: Sequence[QueuedBatchOps]
    ) -> Tuple[List[Tuple[BatchOperation, Any]], List[QueuedBatchOps]]:
        polled = await poll_batches(self.client, accepted, self.polling, self.poll_limiter)
        return _resolved_outcomes(polled, self.fail_fast)

    async def retry_with_placeholders(
        self, errors: List[SceneItemError]
    ) -> Tuple[List[SceneItemError], List[QueuedBatchOps], List[QueuedBatchOps]]:
        """Create a placeholder for every item whose source was not found.

        Each missing-source error gets exactly one retry; the error is kept and
        annotated with the placeholder that stands in for the item.
        """
        missing = [e for e in errors if is_missing_source(e.api_error)]
        if not missing:
            return errors, [], []

        self.logger.info(f"Creating {len(missing)} placeholder scene items for missing sources")
        submitted = await self.submit([placeholder_request(e.request) for e in missing])
        accepted, rejected = partition(submitted, lambda q: q.job is not None)
        results, failed = await self.poll(accepted)

        created: Dict[str, ResourceIdentifier] = {}
        for op, result in results:
            if isinstance(result, ResourceRef):
                created[op.data.supplied_id] = result.data
            else:
                self.logger.warning(
                    f"Placeholder for scene item {op.data.supplied_id} failed: {result.code}"
                )

        annotated = [
            e.model_copy(update={"placeholder_item_ref": created[e.request.supplied_id]})
            if is_missing_source(e.api_error) and e.request.supplied_id in created
            else e
            for e in errors
        ]
        return annotated, accepted, rejected + failed

    async def run_layer(
        self, depth: int, layer: List[SceneItemRequest]
    ) -> Tuple[List[QueuedBatchOps], List[QueuedBatchOps], List[SceneItemError]]:
        submitted = await self.submit(layer)
        accepted, rejected = partition(submitted, lambda q: q.job is not None)
        self._progress(sum(len(q.ops) for q in rejected))
        self.logger.info(
            f"Layer {depth}: submitted {len(layer)} scene items in {len(submitted)} batches, "
            f"{len(rejected)} rejected"
        )
        if not accepted:
            return [], rejected, []

        results, failed = await self.poll(accepted)
        self._progress(sum(len(q.ops) for q in accepted))

        item_errors = _item_errors(results)
        placeholder_queued: List[QueuedBatchOps] = []
        placeholder_errors: List[QueuedBatchOps] = []
        if self.placeholders:
            item_errors, placeholder_queued, placeholder_errors = (
                await self.retry_with_placeholders(item_errors)
            )
        return (
            accepted + placeholder_queued,
            rejected + failed + placeholder_errors,
            item_errors,
        )


async def create_scene_items_in_layers(
    client: PlatformClient,
    scene_id: str,
    requests: Sequence[SceneItemRequest],
    parallelism: int = DEFAULT_PARALLELISM,
    polling: Optional[Polling] = None,
    fail_fast: bool = False,
    placeholders: bool = True,
    batch_size: int = MAX_BATCH_OPERATIONS,
    on_progress: Optional[ProgressCallback] = None,
) -> CreateSceneItemsResult:
    """Create ``requests`` in ``scene_id`` one depth layer at a time.

    Each layer's batches are submitted and resolved before the next layer
    starts. Stops early with ``aborted`` set when a layer has no accepted
    batch, or when nothing was accepted at all.
    """
    if not 1 <= batch_size <= MAX_BATCH_OPERATIONS:
        raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_OPERATIONS}")

    layers, structural_errors = depth_layers(assign_ordinals(requests))
    runner = _LayerRunner(
        client,
        scene_id,
        parallelism,
        polling or DEFAULT_POLLING,
        fail_fast,
        placeholders,
        batch_size,
        len(requests),
        on_progress,
    )

    if structural_errors:
        logger.warning(f"{len(structural_errors)} scene items reference a missing parent")
        runner._progress(len(structural_errors))

    queued_batches: List[QueuedBatchOps] = []
    batch_errors: List[QueuedBatchOps] = []
    scene_item_errors: List[SceneItemError] = list(structural_errors)

    for depth, layer in enumerate(layers):
        accepted, errors, item_errors = await runner.run_layer(depth, layer)
        queued_batches.extend(accepted)
        batch_errors.extend(errors)
        scene_item_errors.extend(item_errors)
        if not accepted:
            logger.error(f"Every batch in layer {depth} was rejected, aborting")
            return CreateSceneItemsResult(
                queued_batches=queued_batches,
                batch_errors=batch_errors,
                scene_item_errors=scene_item_errors,
                aborted=True,
            )

    return CreateSceneItemsResult(
        queued_batches=queued_batches,
        batch_errors=batch_errors,
        scene_item_errors=scene_item_errors,
        aborted=not queued_batches,
    )


async def create_scene_and_scene_items(
    client: PlatformClient,
    scene_attributes: dict,
    requests: Sequence[SceneItemRequest],
    parallelism: int = DEFAULT_PARALLELISM,
    polling: Optional[Polling] = None,
    scene_ready_polling: Optional[Polling] = None,
    fail_fast: bool = False,
    placeholders: bool = True,
    batch_size: int = MAX_BATCH_OPERATIONS,
    on_progress: Optional[ProgressCallback] = None,
) -> CreateSceneAndSceneItemsResult:
    """Create a scene, its scene items, commit it and fit its camera.

    Item and batch failures are aggregated into the result unless
    ``fail_fast`` is set. If nothing was accepted the scene is returned
    uncommitted along with the errors.
    """
    scene = await create_scene(client, scene_attributes)
    created = await create_scene_items_in_layers(
        client,
        scene.id,
        requests,
        parallelism=parallelism,
        polling=polling,
        fail_fast=fail_fast,
        placeholders=placeholders,
        batch_size=batch_size,
        on_progress=on_progress,
    )

    if not created.aborted:
        scene = await commit_and_fit_scene(client, scene.id, scene_ready_polling)

    return CreateSceneAndSceneItemsResult(
        scene=scene,
        queued_batches=created.queued_batches,
        batch_errors=created.batch_errors,
        scene_item_errors=created.scene_item_errors,
    )


async def create_scene_item(
    client: PlatformClient,
    scene_id: str,
    request: SceneItemRequest,
    polling: Optional[Polling] = None,
) -> ResourceRef:
    """Create a single scene item and wait for it to resolve."""
    response = await client.create_scene_item(scene_id, {"data": request.to_wire()})
    result = classify_response(response.status, response.body)
    if result.kind != PollResultKind.queued:
        raise SceneRequestError(response.status, response.body)
    logger.debug(f"Created scene-item with queued-scene-item {result.job.id}")

    outcome = await poll_queued_job(
        result.job.id,
        client.get_queued_scene_item,
        polling=polling,
        parse=ResourceRef.model_validate,
    )
    raise_for_outcome(outcome)
    logger.debug(f"Created scene-item {outcome.value.data.id}")
    return outcome.value
