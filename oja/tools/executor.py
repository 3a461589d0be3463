from abc import ABC, abstractmethod

import httpx
from loguru import logger

from core.errors import ToolExecutionFailure


class ToolExecutionService(ABC):
    """Backend that actually performs tool calls (queries and mutations)."""

    @abstractmethod
    async def execute(self, name: str, arguments: dict) -> dict:
        """Run one tool.

        Returns:
            The tool's result payload.

        Raises:
            ToolExecutionFailure: if the backend rejected or could not run the call.
        """
        ...

    async def close(self) -> None:
        pass


class HttpToolExecutor(ToolExecutionService):
    """Calls the app's serverless backend over HTTP.

    Each tool maps to ``POST {base_url}/voice/tools/{name}`` with the tool
    arguments as the JSON body.
    """

    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=self.timeout)
        return self._client

    async def execute(self, name: str, arguments: dict) -> dict:
        if not self.base_url:
            raise ToolExecutionFailure(name, "backend URL not configured")

        client = self._ensure_client()
        try:
            response = await client.post(f"/voice/tools/{name}", json=arguments)
        except httpx.HTTPError as e:
            raise ToolExecutionFailure(name, f"transport error: {e}") from e

        if response.status_code >= 400:
            raise ToolExecutionFailure(name, f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise ToolExecutionFailure(name, "backend returned invalid JSON") from e

        logger.debug("[TOOL] {} -> {} bytes", name, len(response.content))
        return payload if isinstance(payload, dict) else {"result": payload}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
