"""Notion knowledge base using direct REST API calls.

Workflows live in one database, stage output pages in a second and
subagent tasks in a third. Page properties used:

- Workflows: ``Status`` (select), ``Updated`` (date)
- Stage pages: ``Title``, ``Workflow`` (relation), ``Stage`` (select),
  ``Status`` (select), ``Content`` (rich text)
- Subagent tasks: ``Title``, ``Parent Page`` (relation), ``Status`` (select),
  ``Output``, ``Worktree``, ``Git Refs`` (rich text)

Rate-limited calls (HTTP 429) are retried with exponential backoff; every
other HTTP error is raised as ``ExternalServiceError``.
"""

import asyncio
from typing import Any

import httpx
import structlog

from code_diffusion.config.settings import NotionConfig
from code_diffusion.engine.types import utcnow
from code_diffusion.enums import WorkflowStage
from code_diffusion.exceptions import ConfigurationError, ExternalServiceError, RateLimitedError
from code_diffusion.providers.base import KnowledgeBase, TaskRecord
from code_diffusion.utils.retry import async_retry

log = structlog.get_logger(__name__)

RICH_TEXT_LIMIT = 2000


def rich_text(content: str) -> dict[str, Any]:
    """Build a rich_text property, split into chunks Notion accepts."""
    chunks = [content[i : i + RICH_TEXT_LIMIT] for i in range(0, len(content), RICH_TEXT_LIMIT)] or [""]
    return {"rich_text": [{"text": {"content": chunk}} for chunk in chunks]}


def select(name: str) -> dict[str, Any]:
    return {"select": {"name": name}}


def _plain_text(prop: dict[str, Any] | None) -> str:
    if not prop:
        return ""
    items = prop.get("title") or prop.get("rich_text") or []
    return "".join(item.get("plain_text") or item.get("text", {}).get("content", "") for item in items)


class NotionKnowledgeBase(KnowledgeBase):
    """Notion implementation of the knowledge base.

    Args:
        config: Notion connection settings
        client: Preconfigured HTTP client; one is created on first use if omitted
    """

    def __init__(self, config: NotionConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Create the HTTP client if none was injected."""
        async with self._lock:
            if self._client is not None:
                return
            api_key = self.config.api_key.get_secret_value()
            if not api_key:
                raise ConfigurationError("Notion api_key is not configured")
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                http2=True,
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Notion-Version": self.config.api_version,
                    "Content-Type": "application/json",
                },
            )
            self._owns_client = True
            log.info("notion_connected", base_url=self.config.base_url)

    async def disconnect(self) -> None:
        async with self._lock:
            if self._client is not None and self._owns_client:
                await self._client.aclose()
                self._client = None

    async def __aenter__(self) -> "NotionKnowledgeBase":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    @async_retry(max_attempts=3, base_delay=1.0, exceptions=(RateLimitedError,))
    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._client is None:
            await self.connect()
        assert self._client is not None

        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Notion request failed: {method} {path}: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitedError(
                f"Notion rate limited: {method} {path}",
                retry_after=float(retry_after) if retry_after else None,
                response_text=response.text,
            )
        if response.is_error:
            raise ExternalServiceError(
                f"Notion request failed: {method} {path}",
                status_code=response.status_code,
                response_text=response.text,
            )
        return response.json()

    async def update_status(self, workflow_id: str, status: WorkflowStage) -> None:
        log.info("notion_update_status", workflow_id=workflow_id, status=str(status))
        await self._request(
            "PATCH",
            f"/pages/{workflow_id}",
            json={
                "properties": {
                    "Status": select(str(status)),
                    "Updated": {"date": {"start": utcnow().isoformat()}},
                }
            },
        )

    async def create_stage_record(self, workflow_id: str, stage: WorkflowStage, content: str) -> str:
        log.info("notion_create_stage_page", workflow_id=workflow_id, stage=str(stage))
        page = await self._request(
            "POST",
            "/pages",
            json={
                "parent": {"database_id": self.config.stages_database_id},
                "properties": {
                    "Title": {"title": [{"text": {"content": f"{stage} - {utcnow().isoformat()}"}}]},
                    "Workflow": {"relation": [{"id": workflow_id}]},
                    "Stage": select(str(stage)),
                    "Status": select("complete"),
                    "Content": rich_text(content),
                },
            },
        )
        return str(page["id"])

    async def query_tasks(self, workflow_id: str) -> list[TaskRecord]:
        log.info("notion_query_tasks", workflow_id=workflow_id)
        tasks: list[TaskRecord] = []
        body: dict[str, Any] = {
            "filter": {"property": "Parent Page", "relation": {"contains": workflow_id}},
        }
        while True:
            result = await self._request("POST", f"/databases/{self.config.tasks_database_id}/query", json=body)
            tasks.extend(self._parse_task(page) for page in result.get("results", []))
            if not result.get("has_more") or not result.get("next_cursor"):
                return tasks
            body["start_cursor"] = result["next_cursor"]

    async def update_task(
        self,
        task_id: str,
        status: str | None = None,
        output: str | None = None,
        worktree: str | None = None,
        git_refs: str | None = None,
    ) -> None:
        properties: dict[str, Any] = {}
        if status is not None:
            properties["Status"] = select(status)
        if output is not None:
            properties["Output"] = rich_text(output)
        if worktree is not None:
            properties["Worktree"] = rich_text(worktree)
        if git_refs is not None:
            properties["Git Refs"] = rich_text(git_refs)
        if not properties:
            return

        log.info("notion_update_task", task_id=task_id, fields=sorted(properties))
        await self._request("PATCH", f"/pages/{task_id}", json={"properties": properties})

    @staticmethod
    def _parse_task(page: dict[str, Any]) -> TaskRecord:
        properties = page.get("properties", {})
        status = (properties.get("Status") or {}).get("select") or {}
        return TaskRecord(
            task_id=page["id"],
            title=_plain_text(properties.get("Title")),
            status=status.get("name"),
            properties=properties,
        )
