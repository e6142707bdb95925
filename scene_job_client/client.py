from typing import Any, Optional

import aiohttp
from loguru import logger

from scene_job_client.models import ApiResponse

JSON_API = "application/vnd.api+json"


class PlatformClient:
    """Thin aiohttp adapter over the platform's scene and queued-job endpoints.

    Every call returns the HTTP status with the decoded JSON body and never
    raises for an error status; transport errors propagate to the caller.
    """

    def __init__(
        self,
        base_url: str,
        request_timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "PlatformClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                headers={"Accept": JSON_API},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> ApiResponse:
        url = f"{self.base_url}{path}"
        async with self.session.request(method, url, json=body) as response:
            try:
                data = await response.json(content_type=None)
            except ValueError:
                # gateway error pages are usually HTML
                self.logger.warning(f"Non-JSON body with HTTP {response.status} from {method} {url}")
                data = None
            if response.status >= 400:
                self.logger.debug(f"HTTP {response.status} from {method} {url}")
            return ApiResponse(status=response.status, body=data)

    async def create_scene(self, body: dict) -> ApiResponse:
        return await self._request("POST", "/scenes", body)

    async def get_scene(self, id: str) -> ApiResponse:
        return await self._request("GET", f"/scenes/{id}")

    async def update_scene(self, id: str, body: dict) -> ApiResponse:
        return await self._request("PATCH", f"/scenes/{id}", body)

    async def create_batch(self, body: dict) -> ApiResponse:
        return await self._request("POST", "/batches", body)

    async def get_queued_batch(self, id: str) -> ApiResponse:
        return await self._request("GET", f"/queued-batches/{id}")

    async def create_scene_item(self, scene_id: str, body: dict) -> ApiResponse:
        return await self._request("POST", f"/scenes/{scene_id}/scene-items", body)

    async def get_queued_scene_item(self, id: str) -> ApiResponse:
        return await self._request("GET", f"/queued-scene-items/{id}")

    async def create_export(self, body: dict) -> ApiResponse:
        return await self._request("POST", "/exports", body)

    async def get_queued_export(self, id: str) -> ApiResponse:
        return await self._request("GET", f"/queued-exports/{id}")
