"""
推理网关

- 把会话历史 + 本轮新增消息组装成 OpenAI 兼容的 chat-completions 请求；
- 解析响应为 FinalResponse（最终文本）或 ActionRequested（请求执行一个工具）；
- 把后端错误归类为 InferenceUnavailable（可重试）或 InferenceRejected（终止）。

重试与超时由编排器负责，这里只做单次调用。
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol, Sequence, Union

import httpx

from convoflow.errors import InferenceRejected, InferenceUnavailable
from convoflow.logging_config import logger
from convoflow.schemas import ActionRequest, Message, MessageRole, Session
from convoflow.services.tool_registry import ToolRegistry
from convoflow.settings import settings

_POLICY_MARKERS = (
    "content policy",
    "content_policy",
    "content filter",
    "content_filter",
    "safety",
    "policy",
    "moderation",
    "flagged",
)


@dataclass(frozen=True)
class FinalResponse:
    text: str


@dataclass(frozen=True)
class ActionRequested:
    request: ActionRequest
    partial_text: str = ""


InferenceOutcome = Union[FinalResponse, ActionRequested]


class InferenceBackend(Protocol):
    async def complete(self, payload: dict[str, Any]) -> dict[str, Any]: ...


def _extract_error_message(text: str) -> str:
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    if isinstance(parsed, dict):
        # OpenAI: {"error": {"message": "..."}}
        err = parsed.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        for key in ("message", "detail"):
            if isinstance(parsed.get(key), str):
                return parsed[key]
    return text


def classify_http_error(status_code: int, error_text: str | None) -> Exception:
    """
    Map a non-2xx backend response onto the gateway error taxonomy.

    只有命中内容策略关键字的 400/403/422 才算"模型拒绝"；401/403/404 这类
    鉴权或路由配置错误是服务不可用，不能当成对用户请求的拒答。
    """
    message = _extract_error_message(error_text or "")[:300]
    if status_code >= 500 or status_code in (408, 425, 429):
        return InferenceUnavailable(
            f"inference backend returned HTTP {status_code}: {message}", status_code=status_code
        )
    lowered = message.lower()
    if status_code in (400, 403, 422) and any(marker in lowered for marker in _POLICY_MARKERS):
        return InferenceRejected(
            f"inference backend refused the request: {message}", status_code=status_code
        )
    if status_code in (401, 403, 404, 405):
        logger.error(
            "inference: backend answered HTTP %s (check INFERENCE_BASE_URL / INFERENCE_API_KEY / "
            "INFERENCE_MODEL): %s",
            status_code,
            message,
        )
        return InferenceUnavailable(
            f"inference backend is misconfigured (HTTP {status_code}): {message}",
            status_code=status_code,
        )
    return InferenceRejected(
        f"inference backend rejected the request with HTTP {status_code}: {message}",
        status_code=status_code,
    )


class HttpInferenceBackend:
    """POST {INFERENCE_BASE_URL}/chat/completions via httpx."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.inference_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.inference_api_key
        self.timeout_seconds = float(timeout_seconds or settings.inference_timeout_seconds)
        self._transport = transport

    async def complete(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        url = f"{self.base_url}/chat/completions"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise InferenceUnavailable(f"inference transport error: {exc}") from exc

        if resp.status_code >= 400:
            raise classify_http_error(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as exc:
            raise InferenceUnavailable("inference backend returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise InferenceUnavailable("inference backend returned an unexpected payload")
        return data


def _tool_call_id(content: dict[str, Any], fallback_seq: int) -> str:
    return str(content.get("action_id") or f"call_{fallback_seq}")


def _history_to_openai(message: Message) -> list[dict[str, Any]]:
    if message.role == MessageRole.USER:
        return [{"role": "user", "content": message.text}]
    if message.role == MessageRole.AGENT:
        return [{"role": "assistant", "content": message.text}]

    content = message.content
    if isinstance(content, dict) and content.get("tool_name"):
        call_id = _tool_call_id(content, message.turn_seq)
        return [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": str(content["tool_name"]),
                            "arguments": json.dumps(content.get("input") or {}, ensure_ascii=False),
                        },
                    }
                ],
            },
            {
                "role": "tool",
                "tool_call_id": call_id,
                "content": json.dumps(
                    {
                        "status": content.get("status"),
                        "output": content.get("output"),
                        "error_detail": content.get("error_detail"),
                    },
                    ensure_ascii=False,
                    default=str,
                ),
            },
        ]
    # tool message without request details: hand it to the model as plain context
    serialized = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False, default=str)
    return [{"role": "user", "content": f"[tool result] {serialized}"}]


def _first_choice(data: dict[str, Any]) -> dict[str, Any]:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise InferenceUnavailable("inference response has no choices")
    return choices[0]


class InferenceGateway:
    def __init__(
        self,
        backend: InferenceBackend,
        registry: ToolRegistry,
        *,
        model: str | None = None,
        persona: str | None = None,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._model = model or settings.inference_model
        self._persona = persona if persona is not None else settings.system_persona

    def build_payload(
        self,
        session: Session,
        new_user_message: Message | None = None,
        tool_results: Sequence[Message] = (),
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = [{"role": "system", "content": self._persona}]
        for msg in sorted(session.messages, key=lambda m: m.turn_seq):
            messages.extend(_history_to_openai(msg))
        if new_user_message is not None:
            messages.extend(_history_to_openai(new_user_message))
        for msg in tool_results:
            messages.extend(_history_to_openai(msg))

        payload: dict[str, Any] = {"model": self._model, "messages": messages}
        tools = self._registry.schemas()
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def generate(
        self,
        session: Session,
        new_user_message: Message | None = None,
        tool_results: Sequence[Message] = (),
    ) -> InferenceOutcome:
        payload = self.build_payload(session, new_user_message, tool_results)
        data = await self._backend.complete(payload)

        # turn_seq the action will be recorded at: next free slot after everything so far
        seqs = [m.turn_seq for m in session.messages]
        if new_user_message is not None:
            seqs.append(new_user_message.turn_seq)
        seqs.extend(m.turn_seq for m in tool_results)
        next_seq = (max(seqs) if seqs else 0) + 1

        return self._parse(session.session_id, next_seq, data)

    def _parse(self, session_id: str, next_seq: int, data: dict[str, Any]) -> InferenceOutcome:
        choice = _first_choice(data)
        if choice.get("finish_reason") == "content_filter":
            raise InferenceRejected("inference output was blocked by the content filter")

        message = choice.get("message")
        if not isinstance(message, dict):
            raise InferenceUnavailable("inference response has no message")
        text = message.get("content") if isinstance(message.get("content"), str) else ""

        tool_calls = message.get("tool_calls")
        if isinstance(tool_calls, list) and tool_calls:
            if len(tool_calls) > 1:
                logger.warning(
                    "inference: model requested %d tool calls; only the first is executed (session_id=%s)",
                    len(tool_calls),
                    session_id,
                )
            function = (tool_calls[0] or {}).get("function") if isinstance(tool_calls[0], dict) else None
            if not isinstance(function, dict) or not function.get("name"):
                raise InferenceUnavailable("inference tool call is missing a function name")
            raw_args = function.get("arguments")
            if isinstance(raw_args, dict):
                args = raw_args
            else:
                try:
                    args = json.loads(raw_args or "{}")
                except (TypeError, ValueError) as exc:
                    raise InferenceUnavailable("inference tool call arguments are not valid JSON") from exc
            if not isinstance(args, dict):
                raise InferenceUnavailable("inference tool call arguments must be an object")

            tool_name = str(function["name"])
            if tool_name not in self._registry:
                logger.info("inference: model requested unknown tool %r (session_id=%s)", tool_name, session_id)
            request = ActionRequest.build(
                session_id=session_id, turn_seq=next_seq, tool_name=tool_name, input=args
            )
            return ActionRequested(request=request, partial_text=text or "")

        if not text.strip():
            raise InferenceUnavailable("inference response is empty")
        return FinalResponse(text=text)


__all__ = [
    "ActionRequested",
    "FinalResponse",
    "HttpInferenceBackend",
    "InferenceBackend",
    "InferenceGateway",
    "InferenceOutcome",
    "classify_http_error",
]
