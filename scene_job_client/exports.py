from typing import Optional

from loguru import logger

from scene_job_client.client import PlatformClient
from scene_job_client.errors import SceneRequestError
from scene_job_client.models import Export, Polling, PollResultKind
from scene_job_client.polling import (
    DEFAULT_SHORT_POLLING,
    classify_response,
    poll_queued_job,
    raise_for_outcome,
)


async def create_export(
    client: PlatformClient, attributes: dict, polling: Optional[Polling] = None
) -> Export:
    """Create an export and return the resolved export once it completes"""
    response = await client.create_export({"data": {"type": "export", "attributes": attributes}})
    result = classify_response(response.status, response.body)
    if result.kind != PollResultKind.queued:
        raise SceneRequestError(response.status, response.body)
    logger.info(f"Created export with queued-export {result.job.id}")

    outcome = await poll_queued_job(
        result.job.id,
        client.get_queued_export,
        polling=polling or DEFAULT_SHORT_POLLING,
        parse=Export.model_validate,
    )
    raise_for_outcome(outcome)
    logger.info(f"Completed export {outcome.value.id}")
    return outcome.value
