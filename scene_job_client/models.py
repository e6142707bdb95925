from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from scene_job_client.backoff import (
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_POLL_TIMEOUT_SECONDS,
    compute_max_attempts,
)

CLIENT_ERROR_ID = "client-error"
DEFAULT_REQUEST_TIMEOUT_MS = 8000


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class JobStatus(str, Enum):
    queued = "queued"
    executing = "executing"
    complete = "complete"
    error = "error"


class SceneState(str, Enum):
    draft = "draft"
    commit = "commit"
    ready = "ready"


class ErrorSource(WireModel):
    pointer: Optional[str] = None


class ApiError(WireModel):
    id: Optional[str] = None
    status: str
    code: str
    title: Optional[str] = None
    detail: Optional[str] = None
    source: Optional[ErrorSource] = None

    @property
    def pointer(self) -> Optional[str]:
        return self.source.pointer if self.source else None


class Failure(WireModel):
    errors: List[ApiError] = Field(min_length=1)

    @property
    def is_client_error(self) -> bool:
        return self.errors[0].id == CLIENT_ERROR_ID


class QueuedJobAttributes(WireModel):
    status: JobStatus
    created: Optional[str] = None


class QueuedJobData(WireModel):
    id: str
    type: str
    attributes: QueuedJobAttributes


class QueuedJob(WireModel):
    """A unit of work accepted by the platform but not yet resolved."""

    data: QueuedJobData

    @property
    def id(self) -> str:
        return self.data.id

    @property
    def status(self) -> JobStatus:
        return self.data.attributes.status

    @property
    def pending(self) -> bool:
        return self.status in (JobStatus.queued, JobStatus.executing)


class ResourceIdentifier(WireModel):
    id: str
    type: str


class ResourceRef(WireModel):
    data: ResourceIdentifier


class Batch(WireModel):
    results: List[Union[ApiError, ResourceRef]] = Field(alias="batch:results")


class Relationship(WireModel):
    data: ResourceIdentifier


class SceneItemRequest(WireModel):
    """Attributes and relationships of one scene item to create.

    ``parent`` is the supplied id of another request in the same set; the
    platform resolves it once the parent has been created.
    """

    supplied_id: str = Field(alias="suppliedId")
    parent: Optional[str] = None
    ordinal: Optional[int] = None
    source: Optional[Relationship] = None
    name: Optional[str] = None
    visible: Optional[bool] = None
    transform: Optional[Dict[str, Any]] = None
    material_override: Optional[Dict[str, Any]] = Field(default=None, alias="materialOverride")
    metadata: Optional[Dict[str, str]] = None

    def to_wire(self) -> dict:
        attributes = self.model_dump(
            by_alias=True, exclude_none=True, exclude={"source"}, mode="json"
        )
        data: Dict[str, Any] = {"type": "scene-item", "attributes": attributes}
        if self.source is not None:
            data["relationships"] = {"source": self.source.to_wire()}
        return data


class OperationRef(WireModel):
    type: str = "scene"
    id: str


class BatchOperation(WireModel):
    op: str = "add"
    ref: OperationRef
    data: SceneItemRequest

    def to_wire(self) -> dict:
        return {"op": self.op, "ref": self.ref.to_wire(), "data": self.data.to_wire()}


class QueuedBatchOps(BaseModel):
    """A submitted batch paired with its queue handle or its rejection."""

    ops: List[BatchOperation]
    result: Optional[Union[QueuedJob, Failure]] = None

    @property
    def job(self) -> Optional[QueuedJob]:
        return self.result if isinstance(self.result, QueuedJob) else None

    @property
    def failure(self) -> Optional[Failure]:
        return self.result if isinstance(self.result, Failure) else None


class SceneItemError(BaseModel):
    request: SceneItemRequest
    api_error: ApiError
    placeholder_item_ref: Optional[ResourceIdentifier] = None


class SceneAttributes(WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    state: SceneState = SceneState.draft
    name: Optional[str] = None
    supplied_id: Optional[str] = Field(default=None, alias="suppliedId")


class SceneData(WireModel):
    id: str
    type: str = "scene"
    attributes: SceneAttributes


class Scene(WireModel):
    data: SceneData

    @property
    def id(self) -> str:
        return self.data.id

    @property
    def state(self) -> SceneState:
        return self.data.attributes.state


class ExportAttributes(WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    download_url: Optional[str] = Field(default=None, alias="downloadUrl")


class ExportData(WireModel):
    id: str
    type: str = "export"
    attributes: ExportAttributes = Field(default_factory=ExportAttributes)


class Export(WireModel):
    data: ExportData

    @property
    def id(self) -> str:
        return self.data.id


class ApiResponse(BaseModel):
    status: int
    body: Any = None


class Polling(BaseModel):
    """How often and how long to poll a queued job.

    With a ``backoff`` table the attempt budget is always derived from the
    table and ``max_poll_duration_seconds`` so that the duration bound holds.
    """

    interval_ms: int = Field(default=DEFAULT_POLL_INTERVAL_MS, ge=0)
    max_attempts: int = Field(ge=1)
    backoff: Optional[Dict[int, int]] = None
    max_poll_duration_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS
    request_timeout_ms: Optional[int] = DEFAULT_REQUEST_TIMEOUT_MS
    max_client_errors: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="before")
    @classmethod
    def derive_max_attempts(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        backoff = values.get("backoff")
        if backoff and values.get("max_attempts") is not None:
            raise ValueError(
                "max_attempts is derived from backoff and max_poll_duration_seconds"
            )
        if values.get("max_attempts") is None:
            values = dict(values)
            values["max_attempts"] = compute_max_attempts(
                values.get("interval_ms", DEFAULT_POLL_INTERVAL_MS),
                values.get("max_poll_duration_seconds", DEFAULT_POLL_TIMEOUT_SECONDS),
                backoff,
            )
        return values


class PollResultKind(str, Enum):
    resolved = "resolved"
    queued = "queued"
    failed = "failed"
    client_error = "client_error"


class PollResult(BaseModel):
    """Classification of a single poll attempt."""

    kind: PollResultKind
    value: Optional[Any] = None
    job: Optional[QueuedJob] = None
    failure: Optional[Failure] = None

    @model_validator(mode="after")
    def check_variant(self) -> "PollResult":
        populated = [f for f in ("value", "job", "failure") if getattr(self, f) is not None]
        expected = {
            PollResultKind.resolved: "value",
            PollResultKind.queued: "job",
            PollResultKind.failed: "failure",
            PollResultKind.client_error: "failure",
        }[self.kind]
        if populated != [expected]:
            raise ValueError(f"{self.kind.value} result must only populate {expected}")
        return self

    @classmethod
    def resolved(cls, value: Any) -> "PollResult":
        return cls(kind=PollResultKind.resolved, value=value)

    @classmethod
    def queued(cls, job: QueuedJob) -> "PollResult":
        return cls(kind=PollResultKind.queued, job=job)

    @classmethod
    def failed(cls, failure: Failure) -> "PollResult":
        kind = PollResultKind.client_error if failure.is_client_error else PollResultKind.failed
        return cls(kind=kind, failure=failure)

    @property
    def is_error(self) -> bool:
        return self.kind in (PollResultKind.failed, PollResultKind.client_error)

    def payload(self) -> Any:
        if self.value is not None:
            return self.value
        return self.job if self.job is not None else self.failure


class PollOutcome(BaseModel):
    id: str
    result: PollResult
    http_status: int
    attempts: int
    elapsed_time: float = 0.0

    @property
    def resolved(self) -> bool:
        return self.result.kind == PollResultKind.resolved

    @property
    def value(self) -> Any:
        return self.result.value

    @property
    def exhausted(self) -> bool:
        """Still queued after the attempt budget was spent."""
        return self.result.kind == PollResultKind.queued


class CreateSceneAndSceneItemsResult(BaseModel):
    scene: Scene
    queued_batches: List[QueuedBatchOps] = []
    batch_errors: List[QueuedBatchOps] = []
    scene_item_errors: List[SceneItemError] = []


class CreateSceneItemsResult(BaseModel):
    queued_batches: List[QueuedBatchOps] = []
    batch_errors: List[QueuedBatchOps] = []
    scene_item_errors: List[SceneItemError] = []
    aborted: bool = False
