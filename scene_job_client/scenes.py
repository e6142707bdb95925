import asyncio
from typing import Optional

from loguru import logger

from scene_job_client.client import PlatformClient
from scene_job_client.errors import SceneNotReadyError, SceneRequestError
from scene_job_client.models import ApiResponse, Polling, Scene, SceneState
from scene_job_client.polling import TRANSPORT_ERRORS

# Fixed one second interval for up to an hour
SCENE_READY_POLLING = Polling(interval_ms=1000, max_attempts=3600)

FIT_VISIBLE_SCENE_ITEMS = "fit-visible-scene-items"


def _scene_or_raise(status: int, body: dict) -> Scene:
    if status >= 400:
        raise SceneRequestError(status, body)
    return Scene.model_validate(body)


async def create_scene(client: PlatformClient, attributes: dict) -> Scene:
    response = await client.create_scene({"data": {"type": "scene", "attributes": attributes}})
    scene = _scene_or_raise(response.status, response.body)
    logger.info(f"Created scene {scene.id}")
    return scene


async def update_scene(client: PlatformClient, scene_id: str, attributes: dict) -> Scene:
    response = await client.update_scene(
        scene_id, {"data": {"type": "scene", "attributes": attributes}}
    )
    return _scene_or_raise(response.status, response.body)


async def _get_scene_with_timeout(
    client: PlatformClient, scene_id: str, timeout_ms: Optional[int]
) -> ApiResponse:
    if timeout_ms is None:
        return await client.get_scene(scene_id)
    return await asyncio.wait_for(client.get_scene(scene_id), timeout=timeout_ms / 1000)


async def poll_scene_ready(
    client: PlatformClient, scene_id: str, polling: Optional[Polling] = None
) -> Scene:
    """Poll the scene until its state is ready.

    Transport errors, attempts exceeding ``request_timeout_ms`` and 5xx
    responses are retried within the same attempt budget. Running out of
    attempts raises SceneNotReadyError, since the scene is unusable until
    committed.
    """
    polling = polling or SCENE_READY_POLLING
    attempts = 0
    state: Optional[str] = None

    while attempts < polling.max_attempts:
        attempts += 1
        await asyncio.sleep(polling.interval_ms / 1000)
        try:
            response = await _get_scene_with_timeout(client, scene_id, polling.request_timeout_ms)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"[scene={scene_id}, attempt={attempts}] error polling scene: {e!r}")
            continue
        if response.status >= 500:
            logger.warning(f"[scene={scene_id}, attempt={attempts}] HTTP {response.status}")
            continue

        scene = _scene_or_raise(response.status, response.body)
        state = scene.state.value
        if scene.state == SceneState.ready:
            return scene
        logger.debug(f"[scene={scene_id}, attempt={attempts}] state {state}")

    logger.error(f"Scene {scene_id} not ready after {attempts} attempts")
    raise SceneNotReadyError(scene_id, attempts, state)


async def commit_and_fit_scene(
    client: PlatformClient, scene_id: str, polling: Optional[Polling] = None
) -> Scene:
    """Commit the scene, wait until it is ready, then fit the camera to it."""
    logger.info(f"Committing scene {scene_id} and polling until ready...")
    await update_scene(client, scene_id, {"state": SceneState.commit.value})
    await poll_scene_ready(client, scene_id, polling)

    logger.info(f"Fitting scene {scene_id} camera to scene-items...")
    return await update_scene(client, scene_id, {"camera": {"type": FIT_VISIBLE_SCENE_ITEMS}})
