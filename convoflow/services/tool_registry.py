from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

import httpx

from convoflow.errors import ToolExecutionError
from convoflow.logging_config import logger
from convoflow.settings import settings

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    timeout_seconds: float | None = None

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ActionTool(Protocol):
    spec: ToolSpec

    async def invoke(self, input: dict[str, Any], *, idempotency_key: str | None = None) -> Any: ...


class CallableActionTool:
    """Wraps an in-process coroutine as an action backend."""

    def __init__(self, spec: ToolSpec, handler: ToolHandler) -> None:
        self.spec = spec
        self._handler = handler

    async def invoke(self, input: dict[str, Any], *, idempotency_key: str | None = None) -> Any:
        return await self._handler(input)


def _retryable_status(status_code: int) -> bool:
    if status_code >= 500:
        return True
    return status_code in (408, 425, 429)


class HttpActionTool:
    """
    POSTs the tool input as JSON to an external endpoint and returns the
    decoded JSON body. Transport errors, 5xx and 429 are retryable; other 4xx
    are business failures. The action_id goes out as ``Idempotency-Key`` so the
    backend can collapse a retry of a request whose first response was lost.
    """

    def __init__(
        self,
        spec: ToolSpec,
        *,
        url: str,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.spec = spec
        self.url = url
        self.headers = dict(headers or {})
        self._transport = transport

    async def invoke(self, input: dict[str, Any], *, idempotency_key: str | None = None) -> Any:
        timeout = self.spec.timeout_seconds or settings.action_default_timeout_seconds
        headers = dict(self.headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=input, headers=headers)
        except httpx.HTTPError as exc:
            raise ToolExecutionError(f"{self.spec.name}: transport error: {exc}", retryable=True) from exc

        if resp.status_code >= 400:
            raise ToolExecutionError(
                f"{self.spec.name}: backend returned HTTP {resp.status_code}: {resp.text[:300]}",
                retryable=_retryable_status(resp.status_code),
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return {"text": resp.text}


_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


def validate_input(spec: ToolSpec, input: dict[str, Any]) -> list[str]:
    """
    Shallow check of the declared object schema: required keys present and
    primitive types matching. Returns a list of problems (empty when valid).
    """
    schema = spec.input_schema or {}
    problems: list[str] = []
    if not isinstance(input, dict):
        return ["input must be an object"]
    for key in schema.get("required") or []:
        if key not in input:
            problems.append(f"missing required field '{key}'")
    properties = schema.get("properties") or {}
    for key, value in input.items():
        prop = properties.get(key)
        if not isinstance(prop, dict):
            continue
        expected = _JSON_TYPES.get(str(prop.get("type") or ""))
        if expected is None:
            continue
        # bool is an int subclass
        if isinstance(value, bool) and bool not in expected:
            problems.append(f"field '{key}' must be {prop['type']}")
        elif not isinstance(value, expected):
            problems.append(f"field '{key}' must be {prop['type']}")
    return problems


class ToolRegistry:
    """Fixed set of tools exposed to the model and executed by the dispatcher."""

    def __init__(self, tools: list[ActionTool] | None = None) -> None:
        self._tools: dict[str, ActionTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ActionTool) -> None:
        name = tool.spec.name
        if name in self._tools:
            raise ValueError(f"tool {name!r} is already registered")
        self._tools[name] = tool

    def get(self, name: str) -> ActionTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        """Tool schema list in the OpenAI ``tools`` shape."""
        return [self._tools[name].spec.to_openai_tool() for name in self.names()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def build_registry_from_settings(raw: str | None = None) -> ToolRegistry:
    """
    Load HTTP tools from ACTION_TOOLS, e.g.
    [{"name": "create_ticket", "url": "http://ticketing/api/tickets", ...}]
    """
    text = settings.action_tools if raw is None else raw
    try:
        items = json.loads(text or "[]")
    except json.JSONDecodeError as exc:
        raise ValueError(f"ACTION_TOOLS is not valid JSON: {exc}") from exc
    if not isinstance(items, list):
        raise ValueError("ACTION_TOOLS must be a JSON array")

    registry = ToolRegistry()
    for item in items:
        if not isinstance(item, dict) or not item.get("name") or not item.get("url"):
            logger.warning("tool_registry: skipping malformed ACTION_TOOLS entry: %r", item)
            continue
        spec = ToolSpec(
            name=str(item["name"]),
            description=str(item.get("description") or ""),
            input_schema=dict(item.get("input_schema") or {"type": "object", "properties": {}}),
            timeout_seconds=item.get("timeout_seconds"),
        )
        registry.register(
            HttpActionTool(spec, url=str(item["url"]), headers=item.get("headers") or None)
        )
    return registry


__all__ = [
    "ActionTool",
    "CallableActionTool",
    "HttpActionTool",
    "ToolRegistry",
    "ToolSpec",
    "build_registry_from_settings",
    "validate_input",
]
