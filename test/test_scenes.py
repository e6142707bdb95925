import asyncio

import aiohttp
import pytest
from fake_platform import FakePlatform
from scene_job_client.errors import SceneNotReadyError, SceneRequestError
from scene_job_client.models import ApiResponse, Polling, SceneState
from scene_job_client.scenes import commit_and_fit_scene, poll_scene_ready, update_scene


@pytest.mark.asyncio
async def test_poll_scene_ready_waits_for_ready(polling):
    fake = FakePlatform(ready_polls=3)
    fake.scene_state = "commit"

    scene = await poll_scene_ready(fake, "scene-1", polling)

    assert scene.state == SceneState.ready
    assert [e[0] for e in fake.events].count("get_scene") == 3


@pytest.mark.asyncio
async def test_poll_scene_ready_gives_up():
    fake = FakePlatform()
    fake.scene_state = "commit"
    fake.ready_polls = 100

    with pytest.raises(SceneNotReadyError) as exc_info:
        await poll_scene_ready(fake, "scene-1", Polling(interval_ms=0, max_attempts=4))

    assert exc_info.value.attempts == 4
    assert exc_info.value.state == "commit"


@pytest.mark.asyncio
async def test_poll_scene_ready_retries_transport_errors(polling):
    class FlakyPlatform(FakePlatform):
        failures = 2

        async def get_scene(self, id):
            if self.failures:
                self.failures -= 1
                raise aiohttp.ServerDisconnectedError()
            return await super().get_scene(id)

    fake = FlakyPlatform()
    fake.scene_state = "commit"

    scene = await poll_scene_ready(fake, "scene-1", polling)

    assert scene.state == SceneState.ready


@pytest.mark.asyncio
async def test_hung_scene_request_times_out_and_is_retried():
    class HungPlatform(FakePlatform):
        async def get_scene(self, id):
            if not self.events:
                self.events.append(("hung", id))
                await asyncio.sleep(30)
            return await super().get_scene(id)

    fake = HungPlatform()
    fake.scene_state = "commit"
    polling = Polling(interval_ms=0, max_attempts=5, request_timeout_ms=20)

    scene = await asyncio.wait_for(poll_scene_ready(fake, "scene-1", polling), timeout=2)

    assert scene.state == SceneState.ready
    assert [e[0] for e in fake.events] == ["hung", "get_scene"]


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(polling):
    class MissingScene(FakePlatform):
        async def get_scene(self, id):
            return ApiResponse(status=404, body={"errors": [{"status": "404", "code": "NotFound"}]})

    with pytest.raises(SceneRequestError) as exc_info:
        await poll_scene_ready(MissingScene(), "scene-1", polling)

    assert exc_info.value.status == 404


@pytest.mark.asyncio
async def test_commit_and_fit_scene(polling):
    fake = FakePlatform(ready_polls=2)

    scene = await commit_and_fit_scene(fake, "scene-1", polling)

    updates = [e[1] for e in fake.events if e[0] == "update_scene"]
    assert updates == [{"state": "commit"}, {"camera": {"type": "fit-visible-scene-items"}}]
    assert scene.state == SceneState.ready


@pytest.mark.asyncio
async def test_update_scene_returns_scene():
    scene = await update_scene(FakePlatform(), "scene-1", {"name": "renamed"})

    assert scene.id == "scene-1"
    assert scene.data.attributes.name == "renamed"
