"""Bridge from catalog tools to the business API that implements them."""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from verifolio_chat.exceptions import ToolExecutionError
from verifolio_chat.logging import get_logger
from verifolio_chat.tools.catalog import CATALOG, ToolArguments, ToolSpec
from verifolio_chat.tools.registry import SpecTool, ToolContext, ToolRegistry

log = get_logger(__name__)


class ToolBackend(ABC):
    """External collaborator executing business tools."""

    @abstractmethod
    async def invoke(
        self,
        context: ToolContext,
        user_id: str | None,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> Any:
        """Run ``tool_name`` and return ``{success, message, data?}``."""
        pass

    async def describe_context(self, context_type: str, context_id: str) -> str | None:
        """Short text summary of the open entity, if the backend offers one."""
        return None

    async def close(self) -> None:
        return None


class HttpToolBackend(ToolBackend):
    """Business API reached over HTTP.

    ``POST {base_url}/tools/{name}`` runs a tool,
    ``GET {base_url}/context/{type}/{id}`` summarizes an entity.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        # Tool deadlines are raced by ToolRegistry.dispatch
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=10.0),
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def invoke(
        self,
        context: ToolContext,
        user_id: str | None,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> Any:
        url = f"{self.base_url}/tools/{tool_name}"
        body = {
            "userId": user_id,
            "context": {"contextId": context.context_id, "mode": context.mode},
            "arguments": arguments,
        }
        try:
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise ToolExecutionError(tool_name, f"backend unreachable: {e}")

        if response.status_code >= 500:
            raise ToolExecutionError(tool_name, f"backend error {response.status_code}")

        try:
            return response.json()
        except ValueError:
            raise ToolExecutionError(tool_name, "backend reply is not JSON")

    async def describe_context(self, context_type: str, context_id: str) -> str | None:
        url = f"{self.base_url}/context/{context_type}/{context_id}"
        try:
            response = await self.client.get(url, headers=self._headers())
            if not response.is_success:
                log.warning("Context summary unavailable", context_type=context_type, status=response.status_code)
                return None
            summary = response.json().get("summary")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            log.warning("Context summary failed", context_type=context_type, error=str(e))
            return None
        return summary if isinstance(summary, str) and summary.strip() else None

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class BackendTool(SpecTool):
    """Catalog tool executed by a ``ToolBackend``."""

    def __init__(self, spec: ToolSpec, backend: ToolBackend):
        super().__init__(spec)
        self.backend = backend

    async def execute(self, context: ToolContext, arguments: ToolArguments) -> Any:
        return await self.backend.invoke(
            context,
            context.user_id,
            self.name,
            arguments.model_dump(exclude_none=True),
        )


def build_registry(backend: ToolBackend) -> ToolRegistry:
    """Register every catalog tool against ``backend``."""
    registry = ToolRegistry()
    for spec in CATALOG:
        registry.register(BackendTool(spec, backend))
    return registry
