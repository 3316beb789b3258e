"""
Downstream notifications issued after an attempt: points, certificate, streak.

Each call raises on transport or HTTP errors; the quiz session runs them as
detached tasks and only logs the failures.
"""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, base_url: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _post(self, path: str, payload: Optional[dict] = None) -> dict:
        resp = await self._client.post(path, json=payload or {})
        resp.raise_for_status()
        logger.debug(f"POST {path} -> {resp.status_code}")
        return resp.json() if resp.content else {}

    async def award_points(self, user_id: str, points: int, reason: str) -> dict:
        return await self._post("/api/gamification", {
            "action": "award_points", "user_id": user_id,
            "points": points, "reason": reason,
        })

    async def request_certificate(self, user_id: str, module_id: str) -> dict:
        return await self._post("/api/generate-certificate",
                                {"user_id": user_id, "moduleId": module_id})

    async def update_streak(self, user_id: str) -> dict:
        return await self._post("/api/streaks", {"user_id": user_id})

    async def aclose(self):
        await self._client.aclose()
