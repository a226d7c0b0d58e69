"""Pydantic schemas for OpenAI-compatible chat completion payloads.

Responses are validated at the boundary; anything that does not match is
rejected as a whole rather than partially consumed.
"""

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ChatMessage(_WireModel):
    role: str | None = None
    content: str | None = None


class ChatChoice(_WireModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class Usage(_WireModel):
    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(ge=0)


class ChatCompletion(_WireModel):
    """Body of a non-streaming ``/chat/completions`` response."""

    model: str | None = None
    choices: list[ChatChoice] = Field(min_length=1)
    usage: Usage | None = None


class ChunkDelta(_WireModel):
    role: str | None = None
    content: str | None = None


class ChunkChoice(_WireModel):
    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: str | None = None


class ChatCompletionChunk(_WireModel):
    """One ``data:`` event of a streaming response."""

    choices: list[ChunkChoice] = Field(default_factory=list)
    usage: Usage | None = None
