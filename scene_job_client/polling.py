import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple, Union

import aiohttp
from loguru import logger
from pydantic import ValidationError

from scene_job_client.backoff import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_POLL_TIMEOUT_SECONDS,
    DEFAULT_SHORT_BACKOFF_MS,
    DEFAULT_SHORT_POLL_INTERVAL_MS,
    DEFAULT_SHORT_POLL_TIMEOUT_SECONDS,
    delay_for_attempt,
)
from scene_job_client.errors import PollTimeoutError, QueuedJobFailedError
from scene_job_client.models import (
    CLIENT_ERROR_ID,
    ApiError,
    ApiResponse,
    Failure,
    JobStatus,
    Polling,
    PollOutcome,
    PollResult,
    PollResultKind,
    QueuedJob,
)

Fetch = Callable[[str], Awaitable[ApiResponse]]
Parse = Callable[[Any], Any]

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def polling_configuration(
    backoff: Optional[dict] = None,
    interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    max_poll_duration_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS,
) -> Polling:
    """Build a Polling whose attempt budget matches the requested duration"""
    return Polling(
        interval_ms=interval_ms,
        backoff=backoff,
        max_poll_duration_seconds=max_poll_duration_seconds,
    )


DEFAULT_POLLING = polling_configuration(backoff=DEFAULT_BACKOFF_MS)

# For operations that complete quickly
DEFAULT_SHORT_POLLING = polling_configuration(
    backoff=DEFAULT_SHORT_BACKOFF_MS,
    interval_ms=DEFAULT_SHORT_POLL_INTERVAL_MS,
    max_poll_duration_seconds=DEFAULT_SHORT_POLL_TIMEOUT_SECONDS,
)


def polling_delay(attempt: int, polling: Polling) -> float:
    """Seconds to wait before the poll following ``attempt``"""
    return (polling.interval_ms + delay_for_attempt(attempt, polling.backoff)) / 1000


def client_failure(error: Union[BaseException, str]) -> Failure:
    """A retryable Failure standing in for a transport error"""
    return Failure(
        errors=[
            ApiError(
                id=CLIENT_ERROR_ID,
                status="503",
                code="ServiceUnavailable",
                title="Client caught error while polling.",
                detail=str(error) or type(error).__name__,
            )
        ]
    )


def _as_queued_job(body: Any) -> Optional[QueuedJob]:
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict) or not str(data.get("type", "")).startswith("queued-"):
        return None
    try:
        return QueuedJob.model_validate(body)
    except ValidationError:
        return None


def _as_failure(body: Any) -> Optional[Failure]:
    if not isinstance(body, dict) or not body.get("errors"):
        return None
    try:
        return Failure.model_validate(body)
    except ValidationError:
        return None


def classify_response(status: int, body: Any, parse: Optional[Parse] = None) -> PollResult:
    """Turn a raw queued-job response into a PollResult.

    This is the only place the payload shape is inspected; everything
    downstream works on the tagged result.
    """
    failure = _as_failure(body)
    if failure is not None:
        return PollResult.failed(failure)

    job = _as_queued_job(body)
    if job is not None:
        if job.status == JobStatus.error:
            return PollResult.failed(
                Failure(
                    errors=[
                        ApiError(
                            id=job.id,
                            status="500",
                            code="QueuedJobError",
                            title=f"Queued job {job.id} ended in error status.",
                        )
                    ]
                )
            )
        return PollResult.queued(job)

    if status >= 400 or body is None:
        return PollResult.failed(
            Failure(
                errors=[
                    ApiError(
                        status=str(status),
                        code="UnexpectedResponse",
                        title="Unexpected response while polling queued job.",
                        detail=str(body),
                    )
                ]
            )
        )

    if parse is None:
        return PollResult.resolved(body)
    try:
        return PollResult.resolved(parse(body))
    except ValidationError as e:
        return PollResult.failed(
            Failure(
                errors=[
                    ApiError(
                        status=str(status),
                        code="InvalidResponse",
                        title="Resolved queued job did not match the expected resource.",
                        detail=str(e),
                    )
                ]
            )
        )


class QueuedJobPoller:
    """Polls a queued job until it resolves, fails, or runs out of attempts."""

    def __init__(
        self,
        fetch: Fetch,
        polling: Optional[Polling] = None,
        allow_not_found: bool = False,
        limiter: Optional[asyncio.Semaphore] = None,
        parse: Optional[Parse] = None,
    ):
        self.fetch = fetch
        self.polling = polling or DEFAULT_POLLING
        self.allow_not_found = allow_not_found
        self.limiter = limiter
        self.parse = parse
        self.logger = logger

    async def _get_status_once(self, job_id: str, attempt: int) -> Tuple[int, PollResult]:
        """Fetches the queued job once, folding transport errors into a client Failure"""
        timeout = self.polling.request_timeout_ms
        try:
            if self.limiter is not None:
                async with self.limiter:
                    response = await self._fetch_with_timeout(job_id, timeout)
            else:
                response = await self._fetch_with_timeout(job_id, timeout)
        except TRANSPORT_ERRORS as e:
            self.logger.warning(f"[id={job_id}, attempt={attempt}] error polling queued job: {e!r}")
            return 503, PollResult.failed(client_failure(e))

        if self.allow_not_found and response.status == 404:
            return response.status, PollResult.queued(_not_found_placeholder(job_id))
        if response.status >= 500 and response.body is None:
            self.logger.warning(
                f"[id={job_id}, attempt={attempt}] HTTP {response.status} without a JSON body"
            )
            return response.status, PollResult.failed(
                client_failure(f"HTTP {response.status} without a JSON body")
            )
        return response.status, classify_response(response.status, response.body, self.parse)

    async def _fetch_with_timeout(self, job_id: str, timeout_ms: Optional[int]) -> ApiResponse:
        if timeout_ms is None:
            return await self.fetch(job_id)
        return await asyncio.wait_for(self.fetch(job_id), timeout=timeout_ms / 1000)

    def _calculate_delay(self, attempt: int) -> float:
        return polling_delay(attempt, self.polling)

    async def _wait_before_retry(self, job_id: str, attempt: int) -> None:
        delay = self._calculate_delay(attempt)
        self.logger.debug(
            f"[id={job_id}, attempt={attempt}] still pending, waiting {delay:.3f}s"
        )
        await asyncio.sleep(delay)

    def _should_continue(self, result: PollResult, client_errors: int) -> bool:
        if result.kind == PollResultKind.queued:
            return True
        if result.kind == PollResultKind.client_error:
            limit = self.polling.max_client_errors
            return limit is None or client_errors < limit
        return False

    async def poll_until_complete(self, job_id: str) -> PollOutcome:
        start_time = asyncio.get_event_loop().time()
        attempts = 1
        client_errors = 0
        status, result = await self._get_status_once(job_id, attempts)

        while True:
            if result.kind == PollResultKind.client_error:
                client_errors += 1
            if not self._should_continue(result, client_errors):
                break
            if attempts >= self.polling.max_attempts:
                self.logger.debug(f"[id={job_id}] attempt budget of {attempts} spent")
                break
            await self._wait_before_retry(job_id, attempts)
            attempts += 1
            status, result = await self._get_status_once(job_id, attempts)

        return PollOutcome(
            id=job_id,
            result=result,
            http_status=status,
            attempts=attempts,
            elapsed_time=asyncio.get_event_loop().time() - start_time,
        )


def _not_found_placeholder(job_id: str) -> QueuedJob:
    # 404 while the queued job is not visible yet counts as still queued
    return QueuedJob.model_validate(
        {"data": {"id": job_id, "type": "queued-job", "attributes": {"status": "queued"}}}
    )


async def poll_queued_job(
    id: str,
    fetch: Fetch,
    polling: Optional[Polling] = None,
    allow_not_found: bool = False,
    limiter: Optional[asyncio.Semaphore] = None,
    parse: Optional[Parse] = None,
) -> PollOutcome:
    """Poll ``fetch`` until the queued job resolves, fails or exhausts ``polling``.

    Never raises for job outcomes; pass the result to ``raise_for_outcome`` to
    give up on anything other than a resolved value.
    """
    poller = QueuedJobPoller(
        fetch, polling=polling, allow_not_found=allow_not_found, limiter=limiter, parse=parse
    )
    return await poller.poll_until_complete(id)


def raise_for_outcome(outcome: PollOutcome) -> None:
    """Raise a descriptive error unless ``outcome`` resolved."""
    if outcome.resolved:
        return
    payload = outcome.result.payload()
    if outcome.exhausted:
        logger.error(f"Gave up on queued job {outcome.id} after {outcome.attempts} attempts")
        raise PollTimeoutError(outcome.id, outcome.attempts, payload)
    logger.error(f"Queued job {outcome.id} failed after {outcome.attempts} attempts")
    raise QueuedJobFailedError(outcome.id, outcome.attempts, payload)
