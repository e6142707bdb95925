import uuid
from typing import Dict, List, Optional, Set

from aiohttp import web
from loguru import logger

MAX_BATCH_OPERATIONS = 500


def _error(status: int, code: str, title: str, pointer: Optional[str] = None) -> dict:
    error = {"id": str(uuid.uuid4()), "status": str(status), "code": code, "title": title}
    if pointer is not None:
        error["source"] = {"pointer": pointer}
    return error


def _queued(job_id: str, job_type: str, status: str = "queued") -> dict:
    return {"data": {"id": job_id, "type": job_type, "attributes": {"status": status}}}


class PlatformServer:
    """In-memory stand-in for the scene platform's queued-job endpoints.

    Queued jobs resolve after ``completion_polls`` GETs and scenes become ready
    ``ready_polls`` GETs after being committed. Scene items whose source id is
    in ``missing_sources`` fail with a NotFound on the source relationship.
    """

    def __init__(
        self,
        completion_polls: int = 2,
        ready_polls: int = 1,
        missing_sources: Optional[Set[str]] = None,
        reject_batches: bool = False,
        failed_batches: bool = False,
    ):
        self.completion_polls = completion_polls
        self.ready_polls = ready_polls
        self.missing_sources = missing_sources or set()
        self.reject_batches = reject_batches
        self.failed_batches = failed_batches
        self.scenes: Dict[str, dict] = {}
        self.scene_items: Dict[str, Dict[str, str]] = {}
        self.batches: Dict[str, dict] = {}
        self.exports: Dict[str, dict] = {}
        self.submitted: List[List[str]] = []
        self.logger = logger

        self.app = web.Application()
        self.app.router.add_post("/scenes", self.handle_create_scene)
        self.app.router.add_get("/scenes/{id}", self.handle_get_scene)
        self.app.router.add_patch("/scenes/{id}", self.handle_update_scene)
        self.app.router.add_post("/scenes/{id}/scene-items", self.handle_create_scene_item)
        self.app.router.add_post("/batches", self.handle_create_batch)
        self.app.router.add_get("/queued-batches/{id}", self.handle_queued_batch)
        self.app.router.add_get("/batches/{id}", self.handle_get_batch)
        self.app.router.add_get("/queued-scene-items/{id}", self.handle_queued_scene_item)
        self.app.router.add_get("/scene-items/{id}", self.handle_get_scene_item)
        self.app.router.add_post("/exports", self.handle_create_export)
        self.app.router.add_get("/queued-exports/{id}", self.handle_queued_export)
        self.app.router.add_get("/exports/{id}", self.handle_get_export)

    def _scene_json(self, scene: dict) -> dict:
        return {"data": {"id": scene["id"], "type": "scene", "attributes": scene["attributes"]}}

    def _create_item(self, scene_id: str, data: dict) -> dict:
        attributes = data.get("attributes", {})
        source = data.get("relationships", {}).get("source", {}).get("data")
        items = self.scene_items.setdefault(scene_id, {})
        if source is not None and source.get("id") in self.missing_sources:
            return _error(404, "NotFound", "Source not found.", "/data/relationships/source")
        parent = attributes.get("parent")
        if parent and parent not in items:
            return _error(404, "NotFound", "Parent not found.", "/data/attributes/parent")
        item_id = str(uuid.uuid4())
        items[attributes["suppliedId"]] = item_id
        return {"data": {"id": item_id, "type": "scene-item"}}

    async def handle_create_scene(self, request):
        body = await request.json()
        scene_id = str(uuid.uuid4())
        attributes = dict(body["data"].get("attributes", {}))
        attributes["state"] = "draft"
        self.scenes[scene_id] = {"id": scene_id, "attributes": attributes, "polls": 0}
        self.logger.info(f"Created scene {scene_id}")
        return web.json_response(self._scene_json(self.scenes[scene_id]), status=201)

    async def handle_get_scene(self, request):
        scene = self.scenes.get(request.match_info["id"])
        if scene is None:
            return web.json_response({"errors": [_error(404, "NotFound", "Scene not found.")]}, status=404)
        if scene["attributes"]["state"] == "commit":
            scene["polls"] += 1
            if scene["polls"] >= self.ready_polls:
                scene["attributes"]["state"] = "ready"
        return web.json_response(self._scene_json(scene))

    async def handle_update_scene(self, request):
        scene = self.scenes.get(request.match_info["id"])
        if scene is None:
            return web.json_response({"errors": [_error(404, "NotFound", "Scene not found.")]}, status=404)
        body = await request.json()
        scene["attributes"].update(body["data"].get("attributes", {}))
        self.logger.info(f"Updated scene {scene['id']}: {body['data'].get('attributes')}")
        return web.json_response(self._scene_json(scene))

    async def handle_create_batch(self, request):
        body = await request.json()
        ops = body.get("batch:operations", [])
        if self.reject_batches or not ops or len(ops) > MAX_BATCH_OPERATIONS:
            self.logger.info("Rejecting batch")
            return web.json_response(
                {"errors": [_error(400, "InvalidBatch", "Batch rejected.", "/batch:operations")]},
                status=400,
            )
        batch_id = str(uuid.uuid4())
        self.batches[batch_id] = {"ops": ops, "polls": 0, "results": None}
        self.submitted.append([op["data"]["attributes"]["suppliedId"] for op in ops])
        self.logger.info(f"Queued batch {batch_id} with {len(ops)} operations")
        return web.json_response(_queued(batch_id, "queued-batch"), status=202)

    async def handle_queued_batch(self, request):
        batch_id = request.match_info["id"]
        batch = self.batches.get(batch_id)
        if batch is None:
            return web.json_response({"errors": [_error(404, "NotFound", "Not found.")]}, status=404)
        batch["polls"] += 1
        if batch["polls"] < self.completion_polls:
            return web.json_response(_queued(batch_id, "queued-batch", "executing"))
        if self.failed_batches:
            return web.json_response(_queued(batch_id, "queued-batch", "error"))
        if batch["results"] is None:
            batch["results"] = [
                self._create_item(op["ref"]["id"], op["data"]) for op in batch["ops"]
            ]
        raise web.HTTPSeeOther(location=f"/batches/{batch_id}")

    async def handle_get_batch(self, request):
        batch = self.batches[request.match_info["id"]]
        return web.json_response({"batch:results": batch["results"]})

    async def handle_create_scene_item(self, request):
        body = await request.json()
        job_id = str(uuid.uuid4())
        self.batches[job_id] = {"scene_id": request.match_info["id"], "data": body["data"], "polls": 0}
        return web.json_response(_queued(job_id, "queued-scene-item"), status=202)

    async def handle_queued_scene_item(self, request):
        job_id = request.match_info["id"]
        job = self.batches[job_id]
        job["polls"] += 1
        if job["polls"] < self.completion_polls:
            return web.json_response(_queued(job_id, "queued-scene-item", "executing"))
        if "result" not in job:
            job["result"] = self._create_item(job["scene_id"], job["data"])
        if "code" in job["result"]:
            return web.json_response({"errors": [job["result"]]}, status=404)
        raise web.HTTPSeeOther(location=f"/scene-items/{job_id}")

    async def handle_get_scene_item(self, request):
        return web.json_response(self.batches[request.match_info["id"]]["result"])

    async def handle_create_export(self, request):
        body = await request.json()
        export_id = str(uuid.uuid4())
        self.exports[export_id] = {"attributes": body["data"]["attributes"], "polls": 0}
        return web.json_response(_queued(export_id, "queued-export"), status=202)

    async def handle_queued_export(self, request):
        export_id = request.match_info["id"]
        export = self.exports[export_id]
        export["polls"] += 1
        if export["polls"] < self.completion_polls:
            return web.json_response(_queued(export_id, "queued-export", "executing"))
        raise web.HTTPSeeOther(location=f"/exports/{export_id}")

    async def handle_get_export(self, request):
        export_id = request.match_info["id"]
        return web.json_response(
            {
                "data": {
                    "id": export_id,
                    "type": "export",
                    "attributes": {"downloadUrl": f"https://downloads.example.com/{export_id}"},
                }
            }
        )

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        await self.runner.cleanup()
