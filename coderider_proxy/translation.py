import time
from typing import Any
from uuid import uuid4

CLAUDE_MODEL_MAP = {
    "claude-3-5-sonnet-20241022": "maas-minimax-m2",
    "claude-3-5-haiku-20241022": "maas-deepseek-v3.1",
    "claude-3-opus-20240229": "maas-glm-4.6",
    "claude-sonnet-4-5-20250929": "maas-minimax-m2",
    "claude-haiku-4-5-20251001": "maas-deepseek-v3.1",
    "claude-opus-4-5-20251101": "maas-glm-4.6",
}

STATIC_MODELS = [
    {"id": "maas-minimax-m2", "provider": "minimax"},
    {"id": "maas-deepseek-v3.1", "provider": "deepseek"},
    {"id": "maas-glm-4.6", "provider": "glm"},
]

CLAUDE_PASSTHROUGH_PARAMS = ("temperature", "top_p", "top_k")


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            block.get("text", "") for block in content if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def claude_messages_to_openai(messages: list[dict], system: Any = None) -> list[dict]:
    """Flatten Claude content blocks into OpenAI chat messages."""
    converted = []
    system_text = _text_of(system)
    if system_text:
        converted.append({"role": "system", "content": system_text})
    for msg in messages:
        converted.append({"role": msg.get("role", "user"), "content": _text_of(msg.get("content"))})
    return converted


def claude_model_to_coderider(model: str | None) -> str | None:
    if not model:
        return None
    return CLAUDE_MODEL_MAP.get(model, model)


def claude_extra_params(payload: dict[str, Any]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if payload.get("max_tokens"):
        params["max_tokens"] = payload["max_tokens"]
    for name in CLAUDE_PASSTHROUGH_PARAMS:
        if payload.get(name) is not None:
            params[name] = payload[name]
    if payload.get("stop_sequences"):
        params["stop"] = payload["stop_sequences"]
    return params


def openai_response_to_claude(result: dict[str, Any], model: str | None) -> dict[str, Any]:
    choices = result.get("choices") or []
    first = choices[0] if choices else {}
    text = (first.get("message") or {}).get("content")
    usage = result.get("usage") or {}
    return {
        "id": result.get("id") or f"msg-{uuid4().hex[:24]}",
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": text}] if text else [],
        "model": model,
        "stop_reason": first.get("finish_reason") or "end_turn",
        "stop_sequence": None,
        "usage": {
            "input_tokens": usage.get("prompt_tokens", 0),
            "output_tokens": usage.get("completion_tokens", 0),
        },
    }


def static_model_list(default_model: str) -> dict[str, Any]:
    data = [{"id": default_model, "object": "model", "owned_by": "coderider"}]
    data.extend({"id": m["id"], "object": "model", "owned_by": "coderider"} for m in STATIC_MODELS)
    return {"object": "list", "data": data}


def model_config_to_openai(config: dict[str, Any]) -> dict[str, Any]:
    params_by_name = {item.get("name", ""): item for item in config.get("llm_models_params") or []}

    def entry(tag: str, model_type: str) -> dict[str, Any]:
        bare = tag.split("/", 1)[1] if "/" in tag else tag
        params = params_by_name.get(bare) or {}
        return {
            "id": tag,
            "object": "model",
            "created": int(time.time()),
            "owned_by": "coderider",
            "type": model_type,
            "name": bare,
            "provider": params.get("provider"),
            "context_window": params.get("context_window"),
            "temperature": params.get("temperature"),
            "raw": params or None,
        }

    data = []
    for key, model_type in (
        ("chat_models", "chat"),
        ("code_completion_models", "code_completion"),
        ("loom_models", "loom"),
    ):
        data.extend(entry(tag, model_type) for tag in config.get(key) or [])

    known = {item["id"] for item in data}
    for model in STATIC_MODELS:
        if model["id"] in known:
            continue
        data.append(
            {
                "id": model["id"],
                "object": "model",
                "created": int(time.time()),
                "owned_by": "coderider",
                "type": "chat",
                "name": model["id"],
                "provider": model["provider"],
                "context_window": None,
                "temperature": None,
                "raw": None,
            }
        )
    return {"object": "list", "data": data}
