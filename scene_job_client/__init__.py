"""Async job orchestration for the scene platform API."""

from scene_job_client.backoff import compute_max_attempts, delay_for_attempt
from scene_job_client.client import PlatformClient
from scene_job_client.errors import (
    BatchRejectedError,
    PollingError,
    PollTimeoutError,
    QueuedJobFailedError,
    SceneClientError,
    SceneNotReadyError,
    SceneRequestError,
)
from scene_job_client.exports import create_export
from scene_job_client.models import (
    ApiError,
    Batch,
    CreateSceneAndSceneItemsResult,
    Export,
    Failure,
    Polling,
    PollOutcome,
    PollResult,
    QueuedJob,
    Scene,
    SceneItemError,
    SceneItemRequest,
)
from scene_job_client.polling import (
    DEFAULT_POLLING,
    DEFAULT_SHORT_POLLING,
    poll_queued_job,
    polling_configuration,
    raise_for_outcome,
)
from scene_job_client.scene_items import (
    create_scene_and_scene_items,
    create_scene_item,
    create_scene_items_in_layers,
)
from scene_job_client.scenes import commit_and_fit_scene, poll_scene_ready, update_scene

__version__ = "0.1.0"
__all__ = [
    "ApiError",
    "Batch",
    "BatchRejectedError",
    "CreateSceneAndSceneItemsResult",
    "DEFAULT_POLLING",
    "DEFAULT_SHORT_POLLING",
    "Export",
    "Failure",
    "PlatformClient",
    "PollOutcome",
    "PollResult",
    "PollTimeoutError",
    "Polling",
    "PollingError",
    "QueuedJob",
    "QueuedJobFailedError",
    "Scene",
    "SceneClientError",
    "SceneItemError",
    "SceneItemRequest",
    "SceneNotReadyError",
    "SceneRequestError",
    "commit_and_fit_scene",
    "compute_max_attempts",
    "create_export",
    "create_scene_and_scene_items",
    "create_scene_item",
    "create_scene_items_in_layers",
    "delay_for_attempt",
    "poll_queued_job",
    "poll_scene_ready",
    "polling_configuration",
    "raise_for_outcome",
]
