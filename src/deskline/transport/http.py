"""
REST HTTP client for the Deskline backend.
"""

from typing import Any, Optional

import httpx

from deskline.errors import DesklineError

DEFAULT_BASE_URL = "http://localhost:54321"


class HttpClient:
    def __init__(self, base_url: str = DEFAULT_BASE_URL, token: Optional[str] = None, timeout: float = 30.0):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"User-Agent": "deskline-sdk/0.1.0", "Accept": "application/json"},
            timeout=timeout,
        )

    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        self._token = token

    def _auth_headers(self, authenticated: bool, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if authenticated and self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if extra:
            headers.update(extra)
        return headers

    @staticmethod
    def _unwrap(json_data: Any) -> Any:
        """Unwrap the standard response: { "status": "success", "data": <actual_data> }"""
        if isinstance(json_data, dict) and "status" in json_data and "data" in json_data:
            return json_data["data"]
        return json_data

    @staticmethod
    def _check(resp: httpx.Response) -> None:
        if resp.status_code >= 400:
            raise DesklineError(
                "http_error",
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                {"status_code": resp.status_code},
            )

    def _decode(self, resp: httpx.Response) -> Any:
        self._check(resp)
        if not resp.content:
            return None
        return self._unwrap(resp.json())

    async def get(self, path: str, params: Optional[dict[str, Any]] = None, authenticated: bool = True) -> Any:
        resp = await self._client.get(path, params=params, headers=self._auth_headers(authenticated))
        return self._decode(resp)

    async def post(
        self,
        path: str,
        body: Optional[Any] = None,
        authenticated: bool = True,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        resp = await self._client.post(path, json=body, headers=self._auth_headers(authenticated, headers))
        return self._decode(resp)

    async def close(self) -> None:
        await self._client.aclose()
