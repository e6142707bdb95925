import asyncio

from platform_server import PlatformServer
from scene_job_client.client import PlatformClient
from scene_job_client.models import Polling, Relationship, SceneItemRequest
from scene_job_client.scene_items import create_scene_and_scene_items


def on_progress(complete: int, total: int):
    print(f"Scene items resolved: {complete}/{total}")


def build_requests():
    def part(revision_id: str) -> Relationship:
        return Relationship(data={"id": revision_id, "type": "part-revision"})

    requests = [
        SceneItemRequest(supplied_id="assembly", name="Assembly"),
        SceneItemRequest(supplied_id="fixtures", name="Fixtures"),
    ]
    for i in range(1200):
        requests.append(
            SceneItemRequest(
                supplied_id=f"bolt-{i}",
                parent="assembly",
                source=part("missing-rev" if i % 400 == 0 else f"rev-{i}"),
            )
        )
    return requests


async def main():
    PORT = 8000
    server = PlatformServer(completion_polls=3, ready_polls=2, missing_sources={"missing-rev"})
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    polling = Polling(interval_ms=200, max_attempts=50)
    scene_ready_polling = Polling(interval_ms=200, max_attempts=50)

    async with PlatformClient(f"http://localhost:{PORT}") as client:
        try:
            result = await create_scene_and_scene_items(
                client,
                {"name": "Example scene"},
                build_requests(),
                parallelism=10,
                polling=polling,
                scene_ready_polling=scene_ready_polling,
                on_progress=on_progress,
            )
            print(f"Scene {result.scene.id} is {result.scene.state.value}")
            print(f"Batches queued: {len(result.queued_batches)}")
            for error in result.scene_item_errors:
                placeholder = error.placeholder_item_ref.id if error.placeholder_item_ref else None
                print(
                    f"{error.request.supplied_id}: {error.api_error.code} "
                    f"(placeholder {placeholder})"
                )
        except Exception as e:
            print(f"Error occurred: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
