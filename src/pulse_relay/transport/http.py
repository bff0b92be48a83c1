"""
REST HTTP client for the news-site API.
"""

from typing import Any, Optional

import httpx

from pulse_relay.errors import CollaboratorError

DEFAULT_API_URL = "http://localhost:8080/api"


class HttpClient:
    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"User-Agent": "pulse-relay/0.1.0", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def set_token(self, token: Optional[str]) -> None:
        self._token = token

    def _auth_headers(self, token: Optional[str]) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        bearer = token or self._token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    @staticmethod
    def _unwrap(resp: httpx.Response) -> Any:
        """Unwrap the standard API response: { "success": true, "data": <actual_data> }"""
        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.status_code >= 400 or (isinstance(body, dict) and body.get("success") is False):
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict):
                code = error.get("code") or "http_error"
                message = error.get("message") or resp.reason_phrase
            else:
                code, message = "http_error", resp.text[:200]
            raise CollaboratorError(
                f"HTTP {resp.status_code}: {message}",
                code=code,
                details={"status": resp.status_code},
            )
        if isinstance(body, dict) and "success" in body and "data" in body:
            return body["data"]
        return body

    async def get(self, path: str, token: Optional[str] = None) -> Any:
        try:
            resp = await self._client.get(path, headers=self._auth_headers(token))
        except httpx.HTTPError as e:
            raise CollaboratorError(f"GET {path} failed: {e}", code="transport_error")
        return self._unwrap(resp)

    async def post(self, path: str, body: Optional[dict[str, Any]] = None, token: Optional[str] = None) -> Any:
        try:
            resp = await self._client.post(path, json=body, headers=self._auth_headers(token))
        except httpx.HTTPError as e:
            raise CollaboratorError(f"POST {path} failed: {e}", code="transport_error")
        return self._unwrap(resp)

    async def close(self) -> None:
        await self._client.aclose()
