import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp


class VenueAPIError(Exception):
    def __init__(self, status: int, code: Optional[Any], msg: Optional[str], body: str, url: str = ""):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        self.url = url
        text = f"HTTP {status}" + (f" (code={code}, msg={msg})" if code is not None or msg else "")
        super().__init__(text)


class RESTClient:
    """Shared aiohttp session for public venue REST endpoints."""

    def __init__(self, timeout_s: float = 15.0, user_agent: str = "btc-live-feed/1.0"):
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(headers={"User-Agent": self.user_agent})
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=timeout_s or self.timeout_s)

        async with session.get(url, params=params, timeout=timeout) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "json" in content_type or text[:1] in ("{", "["):
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text
            else:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg") or payload.get("message")
                raise VenueAPIError(resp.status, code, msg, text, url=url)

            return payload
