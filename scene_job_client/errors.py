"""Typed exceptions raised when a queued job or scene gives up."""
from typing import Any, List, Optional

from scene_job_client.utils import pretty_json


class SceneClientError(Exception):
    """Base exception for all job orchestration errors."""


class PollingError(SceneClientError):
    def __init__(self, job_id: str, attempts: int, payload: Any, message: str) -> None:
        self.job_id = job_id
        self.attempts = attempts
        self.payload = payload
        super().__init__(f"{message}\n{pretty_json(payload)}")


class QueuedJobFailedError(PollingError):
    """Raised when a queued job resolves to an error or a Failure."""

    def __init__(self, job_id: str, attempts: int, payload: Any) -> None:
        super().__init__(job_id, attempts, payload, f"Error getting queued job {job_id}.")


class PollTimeoutError(PollingError):
    """Raised when a queued job is still pending after every attempt."""

    def __init__(self, job_id: str, attempts: int, payload: Any) -> None:
        super().__init__(
            job_id, attempts, payload, f"Polled queued job {job_id} {attempts} times, giving up."
        )


class SceneNotReadyError(SceneClientError):
    def __init__(self, scene_id: str, attempts: int, state: Optional[str] = None) -> None:
        self.scene_id = scene_id
        self.attempts = attempts
        self.state = state
        super().__init__(
            f"Polled scene {scene_id} {attempts} times, giving up (last state {state})."
        )


class BatchRejectedError(SceneClientError):
    """Raised in fail-fast mode when the platform rejects a submitted batch."""

    def __init__(self, operations: List[Any], failure: Any) -> None:
        self.operations = operations
        self.failure = failure
        super().__init__(
            f"Batch of {len(operations)} operations rejected.\n{pretty_json(failure)}"
        )


class SceneRequestError(SceneClientError):
    """Raised when a synchronous scene call returns a non-success status."""

    def __init__(self, status: int, payload: Any) -> None:
        self.status = status
        self.payload = payload
        super().__init__(f"HTTP {status}: {pretty_json(payload)}")
