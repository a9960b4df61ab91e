"""
Workspace client for a Notion-compatible REST API.

Covers what the tool layer needs: search, page read, page create, database
entry create/query, property update, block append, and a "changes since"
listing. HTTP failures are translated into typed ``IntegrationError``s.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog

from zenna_shared.errors import IntegrationError

logger = structlog.get_logger()

SERVICE_NAME = "Workspace"
API_VERSION = "2022-06-28"


@dataclass
class WorkspaceItem:
    id: str
    title: str
    object_type: str = "page"
    url: Optional[str] = None
    last_edited: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        line = f"- {self.title} ({self.object_type}, id: {self.id})"
        if self.last_edited:
            line += f" edited {self.last_edited}"
        return line


def _plain_text(rich_text: List[Dict[str, Any]]) -> str:
    return "".join(part.get("plain_text", "") for part in rich_text or [])


def _title_of(obj: Dict[str, Any]) -> str:
    if obj.get("object") == "database":
        return _plain_text(obj.get("title", [])) or "Untitled"
    for prop in (obj.get("properties") or {}).values():
        if prop.get("type") == "title":
            return _plain_text(prop.get("title", [])) or "Untitled"
    return "Untitled"


def _simple_properties(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten page properties into plain values for display."""
    flat: Dict[str, Any] = {}
    for name, prop in (obj.get("properties") or {}).items():
        kind = prop.get("type")
        value = prop.get(kind)
        if kind in ("title", "rich_text"):
            flat[name] = _plain_text(value)
        elif kind in ("select", "status"):
            flat[name] = (value or {}).get("name")
        elif kind == "multi_select":
            flat[name] = [option.get("name") for option in value or []]
        elif kind == "people":
            flat[name] = [person.get("name") or person.get("id") for person in value or []]
        elif kind in ("number", "checkbox", "url", "email"):
            flat[name] = value
        elif kind == "date":
            flat[name] = (value or {}).get("start")
    return flat


def _to_item(obj: Dict[str, Any]) -> WorkspaceItem:
    return WorkspaceItem(
        id=obj["id"],
        title=_title_of(obj),
        object_type=obj.get("object", "page"),
        url=obj.get("url"),
        last_edited=obj.get("last_edited_time"),
        properties=_simple_properties(obj),
    )


def _paragraphs(text: str) -> List[Dict[str, Any]]:
    return [
        {
            "object": "block",
            "type": "paragraph",
            "paragraph": {"rich_text": [{"type": "text", "text": {"content": chunk[:2000]}}]},
        }
        for chunk in text.split("\n\n") if chunk.strip()
    ]


def _as_property(value: Any) -> Dict[str, Any]:
    """Best-effort conversion of a plain value into a property payload."""
    if isinstance(value, dict):
        return value
    if isinstance(value, bool):
        return {"checkbox": value}
    if isinstance(value, (int, float)):
        return {"number": value}
    if isinstance(value, list):
        return {"multi_select": [{"name": str(v)} for v in value]}
    return {"rich_text": [{"type": "text", "text": {"content": str(value)}}]}


class WorkspaceClient:

    def __init__(self, base_url: str, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, token: str, what: str = "that",
                       json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Notion-Version": API_VERSION,
            "Content-Type": "application/json",
        }
        try:
            response = await self.client.request(method, path, headers=headers, json=json)
        except httpx.TransportError as e:
            logger.warning("workspace_network_error", path=path, error=str(e))
            raise IntegrationError.from_transport(SERVICE_NAME, e) from e
        if response.is_error:
            logger.warning("workspace_api_error", path=path, status_code=response.status_code)
            raise IntegrationError.from_status(SERVICE_NAME, response.status_code, what=what,
                                               detail=response.text[:200])
        return response.json() if response.content else {}

    async def search(self, token: str, query: str, object_type: Optional[str] = None,
                     limit: int = 10) -> List[WorkspaceItem]:
        body: Dict[str, Any] = {"query": query, "page_size": limit}
        if object_type in ("page", "database"):
            body["filter"] = {"property": "object", "value": object_type}
        data = await self._request("POST", "/search", token, json=body)
        return [_to_item(obj) for obj in data.get("results", [])]

    async def get_page_text(self, token: str, page_id: str) -> str:
        page = await self._request("GET", f"/pages/{page_id}", token, what="that page")
        blocks = await self._request("GET", f"/blocks/{page_id}/children?page_size=100", token, what="that page")
        lines = [f"# {_title_of(page)}"]
        for block in blocks.get("results", []):
            kind = block.get("type")
            text = _plain_text((block.get(kind) or {}).get("rich_text", []))
            if not text:
                continue
            if kind and kind.startswith("heading"):
                lines.append(f"## {text}")
            elif kind in ("bulleted_list_item", "numbered_list_item", "to_do"):
                lines.append(f"- {text}")
            else:
                lines.append(text)
        return "\n".join(lines)

    async def create_page(self, token: str, title: str, content: str = "",
                          parent_id: Optional[str] = None) -> WorkspaceItem:
        if not parent_id:
            roots = await self.search(token, "", object_type="page", limit=1)
            if not roots:
                raise IntegrationError.from_status(SERVICE_NAME, 404, what="a page to create under")
            parent_id = roots[0].id
        body = {
            "parent": {"page_id": parent_id},
            "properties": {"title": {"title": [{"type": "text", "text": {"content": title}}]}},
            "children": _paragraphs(content),
        }
        return _to_item(await self._request("POST", "/pages", token, what="the parent page", json=body))

    async def add_entry(self, token: str, database_id: str, title: str,
                        properties: Optional[Dict[str, Any]] = None,
                        title_property: str = "Name") -> WorkspaceItem:
        props = {name: _as_property(value) for name, value in (properties or {}).items()}
        props[title_property] = {"title": [{"type": "text", "text": {"content": title}}]}
        body = {"parent": {"database_id": database_id}, "properties": props}
        return _to_item(await self._request("POST", "/pages", token, what="that database", json=body))

    async def query_database(self, token: str, database_id: str,
                             filters: Optional[Dict[str, Any]] = None, limit: int = 50) -> List[WorkspaceItem]:
        body: Dict[str, Any] = {"page_size": limit}
        if filters:
            body["filter"] = filters
        data = await self._request("POST", f"/databases/{database_id}/query", token,
                                   what="that database", json=body)
        return [_to_item(obj) for obj in data.get("results", [])]

    async def update_page(self, token: str, page_id: str, properties: Dict[str, Any]) -> WorkspaceItem:
        body = {"properties": {name: _as_property(value) for name, value in properties.items()}}
        return _to_item(await self._request("PATCH", f"/pages/{page_id}", token, what="that task", json=body))

    async def append_text(self, token: str, page_id: str, text: str) -> None:
        await self._request("PATCH", f"/blocks/{page_id}/children", token, what="that page",
                            json={"children": _paragraphs(text)})

    async def changes_since(self, token: str, since: datetime, limit: int = 25) -> List[WorkspaceItem]:
        body = {
            "page_size": limit,
            "sort": {"direction": "descending", "timestamp": "last_edited_time"},
        }
        data = await self._request("POST", "/search", token, json=body)
        changed = []
        for obj in data.get("results", []):
            edited = obj.get("last_edited_time")
            if edited and datetime.fromisoformat(edited.replace("Z", "+00:00")) >= since:
                changed.append(_to_item(obj))
        return changed
