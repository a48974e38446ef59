import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import CollaboratorError, ProtocolError
from .schemas import Message, ModelReply, TextPart, ToolCallPart, ToolCallRequest, ToolResultPart, Usage


logger = logging.getLogger("uvicorn.error")


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            return json.dumps(data, ensure_ascii=True)
    except ValueError:
        pass
    return response.text


def to_chat_messages(history: List[Message], system_prompt: str) -> List[Dict[str, Any]]:
    """Render the session log in OpenAI chat-completions shape."""
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for message in history:
        if message.role == "user":
            messages.append({"role": "user", "content": message.text})
            continue
        if message.role == "tool":
            for part in message.parts:
                if isinstance(part, ToolResultPart):
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": part.result.call_id,
                            "name": part.result.name,
                            "content": json.dumps(part.result.to_model_payload(), ensure_ascii=False, default=str),
                        }
                    )
            continue
        entry: Dict[str, Any] = {"role": "assistant"}
        text = "".join(part.text for part in message.parts if isinstance(part, TextPart))
        calls = [part.call for part in message.parts if isinstance(part, ToolCallPart)]
        entry["content"] = text or None
        if calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
                }
                for call in calls
            ]
        messages.append(entry)
    return messages


def _parse_tool_call(raw: Dict[str, Any]) -> ToolCallRequest:
    function = raw.get("function") if isinstance(raw, dict) else None
    if not isinstance(function, dict):
        raise ProtocolError("Tool call without a function", detail={"call": raw})
    name = function.get("name")
    if not name:
        raise ProtocolError("Tool call without a function name", detail={"call": raw})
    arguments = function.get("arguments") or {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except ValueError as exc:
            raise ProtocolError(f"Tool call arguments for {name} are not valid JSON", detail={"call": raw}) from exc
    if not isinstance(arguments, dict):
        raise ProtocolError(f"Tool call arguments for {name} must be an object", detail={"call": raw})
    if raw.get("id"):
        return ToolCallRequest(id=str(raw["id"]), name=name, arguments=arguments)
    return ToolCallRequest(name=name, arguments=arguments)


def parse_completion(data: Dict[str, Any]) -> ModelReply:
    if not isinstance(data, dict):
        raise CollaboratorError("model", "Model returned an unexpected response shape")
    choices = data.get("choices") or []
    if not choices:
        raise CollaboratorError("model", "Model returned no choices")
    try:
        message = choices[0].get("message") or {}
        text = message.get("content") or ""
        if isinstance(text, list):
            text = "".join(str(chunk.get("text", "")) for chunk in text if isinstance(chunk, dict))
        raw_usage = data.get("usage") or {}
        usage = Usage(
            prompt_tokens=int(raw_usage.get("prompt_tokens") or 0),
            completion_tokens=int(raw_usage.get("completion_tokens") or 0),
            total_tokens=int(raw_usage.get("total_tokens") or 0),
        )
    except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
        raise CollaboratorError("model", f"Model returned a malformed completion: {exc}") from exc
    if not isinstance(text, str):
        raise CollaboratorError("model", "Model returned a malformed completion: content is not text")
    try:
        raw_calls = message.get("tool_calls") or []
        if not isinstance(raw_calls, list):
            raise ProtocolError("Tool calls must be a list", detail={"calls": raw_calls})
        tool_calls = [_parse_tool_call(raw) for raw in raw_calls]
    except ProtocolError as exc:
        exc.detail["text"] = text
        exc.detail["usage"] = usage
        raise
    return ModelReply(text=text, tool_calls=tool_calls, usage=usage)


class ModelClient:
    """Stateless client for an OpenAI-compatible chat completions endpoint.

    The system prompt is passed on every call; nothing about a session is kept
    on the client.
    """

    def __init__(
        self,
        base_url: str,
        model_id: str,
        api_key: Optional[str] = None,
        *,
        temperature: float = 0.7,
        max_tokens: int = 8192,
        timeout_s: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model_id = model_id
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = httpx.AsyncClient(
            timeout=timeout_s,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    async def generate(
        self,
        history: List[Message],
        *,
        system_prompt: str,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ModelReply:
        payload: Dict[str, Any] = {
            "model": self.model_id,
            "messages": to_chat_messages(history, system_prompt),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        data = await self._post("/chat/completions", payload)
        return parse_completion(data)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(f"{self.base_url}{path}", json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("Model request timed out: %s", exc)
            raise CollaboratorError("model", "Model request timed out") from exc
        except httpx.HTTPStatusError as exc:
            detail = _extract_error_detail(exc.response)
            logger.warning("Model request failed (%s): %s", exc.response.status_code, detail)
            raise CollaboratorError(
                "model", f"Model request failed: {detail}", status=exc.response.status_code
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("Model request error: %s", exc)
            raise CollaboratorError("model", f"Model request error: {exc}") from exc
        try:
            return resp.json()
        except ValueError as exc:
            raise CollaboratorError("model", "Model returned a non-JSON response") from exc

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
