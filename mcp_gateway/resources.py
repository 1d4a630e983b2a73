"""Resource collaborator: static prompt/context documents served to callers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


class ResourceNotFound(LookupError):
    pass


class ResourceProvider(Protocol):
    async def list_resources(self) -> list[dict[str, Any]]:
        ...

    async def read_resource(self, uri: str) -> dict[str, Any]:
        """Return one content entry: {"uri", "mimeType", "text"}."""
        ...


@dataclass
class StaticResource:
    uri: str
    name: str
    text: str
    description: str = ""
    mime_type: str = "text/markdown"

    def descriptor(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }


class StaticResourceProvider:
    def __init__(self, resources: list[StaticResource] | None = None):
        self._resources = {r.uri: r for r in resources or []}

    async def list_resources(self) -> list[dict[str, Any]]:
        return [r.descriptor() for r in self._resources.values()]

    async def read_resource(self, uri: str) -> dict[str, Any]:
        resource = self._resources.get(uri)
        if resource is None:
            raise ResourceNotFound(f"Resource not found: {uri}")
        return {"uri": uri, "mimeType": resource.mime_type, "text": resource.text}
