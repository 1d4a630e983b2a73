"""
Gateway-local tools.

These tools are answered by the gateway itself instead of an upstream.
Each one is a LocalTool subclass:

    class MyTool(LocalTool):
        name = "my_tool"
        description = "Does something useful"
        parameters = {"input": {"type": "string", "description": "The input"}}
        required = ["input"]

        async def handle(self, arguments: dict) -> ToolResult:
            return text_result(f"processed: {arguments['input']}")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from mcp_gateway.errors import StoreUnavailable
from mcp_gateway.messages import ToolResult, error_result, json_result
from mcp_gateway.profiles import CompanyProfileStore

logger = logging.getLogger(__name__)


class LocalTool(ABC):
    """Base class for a gateway-local tool."""

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    async def handle(self, arguments: dict[str, Any]) -> ToolResult:
        """Execute the tool. Must return a ToolResult, never raise for bad input."""
        ...

    def get_schema(self) -> dict:
        """Return the tool descriptor for tools/list."""
        schema: dict[str, Any] = {"type": "object", "properties": self.parameters}
        if self.required:
            schema["required"] = list(self.required)
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": schema,
        }


def _company_id(arguments: dict[str, Any]) -> str | None:
    value = arguments.get("companyId")
    if value is None or str(value).strip() == "":
        return None
    return str(value)


def _int_argument(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class ProfileTool(LocalTool):
    def __init__(self, store: CompanyProfileStore):
        self.store = store


class GetCompanyProfileTool(ProfileTool):
    name = "get_company_profile"
    description = "Get company profile data from the gateway database"
    parameters = {
        "companyId": {"type": "string", "description": "Company ID to retrieve profile for"},
    }
    required = ["companyId"]

    async def handle(self, arguments: dict[str, Any]) -> ToolResult:
        company_id = _company_id(arguments)
        if company_id is None:
            return error_result("companyId is required")
        try:
            lookup = await self.store.get_profile(company_id)
        except StoreUnavailable as e:
            return error_result(f"Error retrieving company profile: {e}")
        return json_result(lookup.to_dict())


class UpdateCompanyProfileTool(ProfileTool):
    name = "update_company_profile"
    description = "Update company profile data in the gateway database"
    parameters = {
        "companyId": {"type": "string", "description": "Company ID to update"},
        "profileData": {"type": "object", "description": "Profile data to update"},
    }
    required = ["companyId", "profileData"]

    async def handle(self, arguments: dict[str, Any]) -> ToolResult:
        company_id = _company_id(arguments)
        profile_data = arguments.get("profileData")
        if company_id is None:
            return error_result("companyId is required")
        if not isinstance(profile_data, dict):
            return error_result("profileData must be an object")
        try:
            write = await self.store.update_profile(company_id, profile_data)
        except StoreUnavailable as e:
            return error_result(f"Error updating company profile: {e}")

        payload: dict[str, Any] = {
            "success": True,
            "message": "Company profile updated successfully",
            "companyId": company_id,
            "updatedAt": write.profile.updated_at.isoformat(),
        }
        if write.warning:
            payload["warning"] = write.warning
        return json_result(payload)


class DeleteCompanyProfileTool(ProfileTool):
    name = "delete_company_profile"
    description = "Delete company profile data from the gateway database"
    parameters = {
        "companyId": {"type": "string", "description": "Company ID to delete"},
    }
    required = ["companyId"]

    async def handle(self, arguments: dict[str, Any]) -> ToolResult:
        company_id = _company_id(arguments)
        if company_id is None:
            return error_result("companyId is required")
        try:
            deleted = await self.store.delete_profile(company_id)
        except StoreUnavailable as e:
            return error_result(f"Error deleting company profile: {e}")

        payload: dict[str, Any] = {
            "success": deleted.existed,
            "message": (
                "Company profile deleted successfully"
                if deleted.existed
                else "Company profile not found"
            ),
            "companyId": company_id,
        }
        if deleted.warning:
            payload["warning"] = deleted.warning
        return json_result(payload)


class ListCompanyProfilesTool(ProfileTool):
    name = "list_company_profiles"
    description = "List all company profiles in the gateway database"
    parameters = {
        "limit": {"type": "number", "description": "Maximum number of profiles to return (default: 50)"},
        "offset": {"type": "number", "description": "Number of profiles to skip (default: 0)"},
    }

    def __init__(self, store: CompanyProfileStore, default_limit: int = 50, max_limit: int = 500):
        super().__init__(store)
        self.default_limit = default_limit
        self.max_limit = max_limit

    async def handle(self, arguments: dict[str, Any]) -> ToolResult:
        limit = min(max(_int_argument(arguments.get("limit"), self.default_limit), 1), self.max_limit)
        offset = max(_int_argument(arguments.get("offset"), 0), 0)
        try:
            profiles = await self.store.list_profiles(limit, offset)
        except StoreUnavailable as e:
            return error_result(f"Error listing company profiles: {e}")

        return json_result({
            "success": True,
            "count": len(profiles),
            "limit": limit,
            "offset": offset,
            "profiles": [
                {
                    "companyId": p.company_id,
                    **p.json_data,
                    "updatedAt": p.updated_at.isoformat(),
                }
                for p in profiles
            ],
        })


def profile_tools(
    store: CompanyProfileStore, default_limit: int = 50, max_limit: int = 500
) -> list[LocalTool]:
    """The fixed set of company profile CRUD tools."""
    return [
        GetCompanyProfileTool(store),
        UpdateCompanyProfileTool(store),
        DeleteCompanyProfileTool(store),
        ListCompanyProfilesTool(store, default_limit, max_limit),
    ]
