import asyncio

import pytest
from aiohttp import web
from scene_job_client.client import PlatformClient
from scene_job_client.errors import QueuedJobFailedError
from scene_job_client.exports import create_export
from scene_job_client.models import Polling, PollResultKind, SceneItemRequest, SceneState
from scene_job_client.polling import poll_queued_job, raise_for_outcome
from scene_job_client.scene_items import create_scene_and_scene_items, create_scene_item

FAST = Polling(interval_ms=10, max_attempts=20, request_timeout_ms=2000)


def part(revision_id):
    return {"data": {"id": revision_id, "type": "part-revision"}}


@pytest.mark.asyncio
async def test_scene_with_scene_items(server):
    server_instance, base_url = server
    server_instance.missing_sources = {"rev-missing"}
    requests = [
        SceneItemRequest(supplied_id="root"),
        SceneItemRequest(supplied_id="wheel", parent="root", source=part("rev-1")),
        SceneItemRequest(supplied_id="axle", parent="root", source=part("rev-missing")),
        SceneItemRequest(supplied_id="bolt", parent="axle", source=part("rev-2")),
    ]

    async with PlatformClient(base_url) as client:
        result = await create_scene_and_scene_items(
            client, {"name": "Car"}, requests, polling=FAST, scene_ready_polling=FAST
        )

    assert result.scene.state == SceneState.ready
    assert result.scene.data.attributes.camera == {"type": "fit-visible-scene-items"}
    assert [e.request.supplied_id for e in result.scene_item_errors] == ["axle"]
    assert result.scene_item_errors[0].placeholder_item_ref is not None
    # the placeholder stands in for the axle so its child still resolves
    assert set(server_instance.scene_items[result.scene.id]) == {"root", "wheel", "axle", "bolt"}
    assert server_instance.submitted == [["root"], ["wheel", "axle"], ["axle"], ["bolt"]]


@pytest.mark.asyncio
async def test_failed_batch_jobs_are_reported(server):
    server_instance, base_url = server
    server_instance.failed_batches = True

    async with PlatformClient(base_url) as client:
        result = await create_scene_and_scene_items(
            client,
            {"name": "Broken"},
            [SceneItemRequest(supplied_id="root")],
            polling=FAST,
            scene_ready_polling=FAST,
        )

    assert len(result.batch_errors) == 1
    assert result.batch_errors[0].failure.errors[0].code == "QueuedJobError"


@pytest.mark.asyncio
async def test_single_scene_item(server):
    server_instance, base_url = server

    async with PlatformClient(base_url) as client:
        scene = (await client.create_scene({"data": {"type": "scene", "attributes": {}}})).body
        ref = await create_scene_item(
            client, scene["data"]["id"], SceneItemRequest(supplied_id="solo"), polling=FAST
        )

    assert ref.data.type == "scene-item"


@pytest.mark.asyncio
async def test_single_scene_item_failure_raises(server):
    server_instance, base_url = server
    server_instance.missing_sources = {"rev-gone"}

    async with PlatformClient(base_url) as client:
        scene = (await client.create_scene({"data": {"type": "scene", "attributes": {}}})).body
        with pytest.raises(QueuedJobFailedError):
            await create_scene_item(
                client,
                scene["data"]["id"],
                SceneItemRequest(supplied_id="solo", source=part("rev-gone")),
                polling=FAST,
            )


@pytest.mark.asyncio
async def test_export(server):
    _, base_url = server

    async with PlatformClient(base_url) as client:
        export = await create_export(client, {"format": "jt"}, polling=FAST)

    assert export.data.type == "export"
    assert export.data.attributes.download_url.startswith("https://")


@pytest.mark.asyncio
async def test_unknown_queued_job_is_tolerated_when_allowed(server):
    _, base_url = server
    polling = Polling(interval_ms=0, max_attempts=3)

    async with PlatformClient(base_url) as client:
        outcome = await poll_queued_job(
            "does-not-exist", client.get_queued_batch, polling=polling, allow_not_found=True
        )

    assert outcome.exhausted
    assert outcome.http_status == 404
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_server_unavailable(unused_tcp_port_factory):
    """Transport errors are retried until the budget runs out, then reported as data."""
    polling = Polling(interval_ms=0, max_attempts=3, request_timeout_ms=2000)
    base_url = f"http://localhost:{unused_tcp_port_factory()}"

    async with PlatformClient(base_url) as client:
        outcome = await poll_queued_job("job-1", client.get_queued_batch, polling=polling)

    assert outcome.result.kind == PollResultKind.client_error
    assert outcome.attempts == 3
    with pytest.raises(QueuedJobFailedError):
        raise_for_outcome(outcome)


@pytest.mark.asyncio
async def test_gateway_error_page_is_retried(unused_tcp_port_factory):
    """An HTML error page from a proxy is retried like a transport error."""
    calls = []

    async def handle_queued_batch(request):
        calls.append(request.match_info["id"])
        if len(calls) == 1:
            return web.Response(
                status=502, text="<html>Bad Gateway</html>", content_type="text/html"
            )
        return web.json_response({"batch:results": []})

    app = web.Application()
    app.router.add_get("/queued-batches/{id}", handle_queued_batch)
    runner = web.AppRunner(app)
    await runner.setup()
    port = unused_tcp_port_factory()
    await web.TCPSite(runner, "localhost", port).start()

    try:
        async with PlatformClient(f"http://localhost:{port}") as client:
            outcome = await poll_queued_job(
                "job-1", client.get_queued_batch, polling=Polling(interval_ms=0, max_attempts=3)
            )
    finally:
        await runner.cleanup()

    assert outcome.resolved
    assert outcome.value == {"batch:results": []}
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_multiple_scenes_concurrently(server):
    _, base_url = server

    async def build(name):
        requests = [SceneItemRequest(supplied_id=f"{name}-{i}") for i in range(3)]
        return await create_scene_and_scene_items(
            client, {"name": name}, requests, polling=FAST, scene_ready_polling=FAST
        )

    async with PlatformClient(base_url) as client:
        results = await asyncio.gather(*[build(f"scene-{i}") for i in range(3)])

    assert len({r.scene.id for r in results}) == 3
    assert all(r.scene.state == SceneState.ready for r in results)
    assert all(r.scene_item_errors == [] for r in results)
