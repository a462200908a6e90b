from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Credentials(BaseModel):
    username: str = ""
    password: str = ""


class ApiKeyCreate(BaseModel):
    name: str | None = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    messages: list[dict[str, Any]] = Field(default_factory=list)
    model: str | None = None
    stream: bool = False

    def extra_params(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class ClaudeMessagesRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)
    system: str | list[dict[str, Any]] | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: list[str] | None = None
