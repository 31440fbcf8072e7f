"""Language-model completion collaborator.

Phase runners never talk to a provider SDK directly. They hold a
ReasoningEngine and call complete() (or the complete_json() helper), so the
provider can be swapped through configuration and replaced by an AsyncMock
in tests.

Prompt wording is not part of any contract here: runners pass a system
prompt and a user prompt and read back a JSON object plus token usage.

Also owns ReasoningSettings (pydantic-settings) so provider configuration is
read from the environment / .env in one place.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("workflow_orchestrator.reasoning")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single conversation turn.

    role values:
      "user"        - prompt turn
      "assistant"   - model turn (may include tool_calls)
      "tool_result" - result of a tool call, sent back to the model
    """

    role: str
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ToolDef:
    """A tool the model may call. parameters is a JSON Schema object."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class EngineResponse:
    """Model reply plus the usage the session accounts for."""

    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class ReasoningEngine(ABC):
    """Abstract base class for any model provider."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.2,
    ) -> EngineResponse:
        """Send a conversation to the model and return its response."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Provider/model string for logging, e.g. 'anthropic/claude-sonnet-4-6'."""
        ...


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(ReasoningEngine):
    """Engine backed by Anthropic's Messages API (AsyncAnthropic)."""

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-6", max_tokens: int = 8192) -> None:
        try:
            import anthropic as _anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for ClaudeEngine. "
                "Install it with: pip install anthropic"
            )
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY is required for ClaudeEngine. "
                "Set it in your environment or .env file."
            )
        self._client = _anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        self._max_tokens = max_tokens
        logger.info("ClaudeEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"anthropic/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.2,
    ) -> EngineResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": _to_anthropic_messages(messages),
            "max_tokens": self._max_tokens,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]

        logger.debug("ClaudeEngine.complete: %d messages, %d tools", len(messages), len(tools or []))
        response = await self._client.messages.create(**kwargs)

        tool_calls: list[ToolCall] = []
        text_parts: list[str] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=block.input))

        usage = getattr(response, "usage", None)
        return EngineResponse(
            content="".join(text_parts) or None,
            tool_calls=tool_calls,
            stop_reason=response.stop_reason or "end_turn",
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )


def _to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert Message list to Anthropic format.

    Consecutive tool results are batched into one user message of
    tool_result blocks; assistant tool calls become tool_use blocks.
    """
    result: list[dict[str, Any]] = []
    i = 0
    while i < len(messages):
        m = messages[i]
        if m.role == "tool_result":
            blocks: list[dict[str, Any]] = []
            while i < len(messages) and messages[i].role == "tool_result":
                tr = messages[i]
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": tr.tool_call_id,
                    "content": tr.content or "",
                })
                i += 1
            result.append({"role": "user", "content": blocks})
            continue

        if m.role == "assistant" and m.tool_calls:
            blocks = [{"type": "text", "text": m.content}] if m.content else []
            blocks.extend(
                {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                for tc in m.tool_calls
            )
            result.append({"role": "assistant", "content": blocks})
        else:
            result.append({"role": m.role, "content": m.content or ""})
        i += 1
    return result


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------


class OpenAIEngine(ReasoningEngine):
    """Engine backed by the OpenAI Chat Completions API (AsyncOpenAI)."""

    def __init__(self, api_key: str, model: str = "gpt-4o", max_tokens: int = 8192) -> None:
        try:
            import openai as _openai
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for OpenAIEngine. "
                "Install it with: pip install openai"
            )
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY is required for OpenAIEngine. "
                "Set it in your environment or .env file."
            )
        self._client = _openai.AsyncOpenAI(api_key=api_key)
        self._model = model
        self._max_tokens = max_tokens
        logger.info("OpenAIEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"openai/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.2,
    ) -> EngineResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": _to_openai_messages(messages, system),
            "temperature": temperature,
            "max_tokens": self._max_tokens,
        }
        if tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]
            kwargs["tool_choice"] = "auto"

        logger.debug("OpenAIEngine.complete: %d messages, %d tools", len(messages), len(tools or []))
        response = await self._client.chat.completions.create(**kwargs)
        msg = response.choices[0].message

        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=json.loads(tc.function.arguments))
            for tc in (msg.tool_calls or [])
        ]
        usage = getattr(response, "usage", None)
        return EngineResponse(
            content=msg.content,
            tool_calls=tool_calls,
            stop_reason="tool_use" if tool_calls else "end_turn",
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )


def _to_openai_messages(messages: list[Message], system: str | None) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    if system:
        result.append({"role": "system", "content": system})
    for m in messages:
        if m.role == "tool_result":
            result.append({"role": "tool", "tool_call_id": m.tool_call_id, "content": m.content or ""})
        elif m.role == "assistant" and m.tool_calls:
            result.append({
                "role": "assistant",
                "content": m.content,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                    }
                    for tc in m.tool_calls
                ],
            })
        else:
            result.append({"role": m.role, "content": m.content or ""})
    return result


# ---------------------------------------------------------------------------
# JSON completions
# ---------------------------------------------------------------------------


def parse_json_object(text: str | None) -> dict[str, Any]:
    """Extract a JSON object from model output.

    Tolerates ```json fences and prose before the first '{' or after the
    last '}'. Raises ValueError when no JSON object can be decoded.
    """
    if not text or not text.strip():
        raise ValueError("Model returned an empty response")
    stripped = text.strip()
    if stripped.startswith("```"):
        lines = stripped.splitlines()[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        stripped = "\n".join(lines).strip()

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        start, end = stripped.find("{"), stripped.rfind("}")
        if start == -1 or end <= start:
            raise ValueError(f"No JSON object in model response: {stripped[:120]!r}")
        try:
            data = json.loads(stripped[start:end + 1])
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in model response: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


DEFAULT_TOOL_ROUNDS = 6
TOOL_RESULT_LIMIT = 6000

ToolExecutor = dict[str, Callable[..., Awaitable[Any]]]


async def execute_tool(name: str, arguments: dict[str, Any], executor: ToolExecutor) -> str:
    """Run one model-requested tool call. Failures come back as text for the model."""
    fn = executor.get(name)
    if fn is None:
        logger.warning("Unknown tool requested: %r", name)
        return f"Unknown tool: {name!r}. Use one of: {', '.join(sorted(executor))}."
    try:
        raw = await fn(**arguments)
    except TypeError as e:
        logger.warning("Tool %s called with wrong arguments %s: %s", name, arguments, e)
        return f"Wrong arguments for {name}: {e}"
    except Exception as e:
        logger.warning("Tool %s failed: %s", name, e)
        return f"Tool {name} failed: {e}"
    text = raw if isinstance(raw, str) else json.dumps(raw, default=str)
    if len(text) > TOOL_RESULT_LIMIT:
        text = text[:TOOL_RESULT_LIMIT] + "\n... (truncated)"
    logger.debug("Tool %s(%s) -> %d chars", name, ", ".join(arguments), len(text))
    return text


async def complete_json(
    engine: ReasoningEngine,
    system: str,
    prompt: str,
    temperature: float = 0.2,
    tools: list[ToolDef] | None = None,
    executor: ToolExecutor | None = None,
    max_rounds: int = DEFAULT_TOOL_ROUNDS,
) -> tuple[dict[str, Any], EngineResponse]:
    """Completion whose final reply must be one JSON object.

    With tools, the model may call them before answering: each round's tool
    calls are executed and their results sent back, until the model replies
    without tool calls. The last round offers no tools, so the loop always
    ends in an answer. The returned response carries the final content and
    the token usage summed over every round.
    """
    messages: list[Message] = [Message(role="user", content=prompt)]
    total_in = total_out = 0
    rounds = max(1, max_rounds) if tools and executor is not None else 1

    for round_num in range(rounds):
        kwargs: dict[str, Any] = {"system": system, "temperature": temperature}
        if tools and executor is not None and round_num + 1 < rounds:
            kwargs["tools"] = tools
        response = await engine.complete(list(messages), **kwargs)
        total_in += response.input_tokens
        total_out += response.output_tokens

        if not response.has_tool_calls or "tools" not in kwargs:
            break

        logger.debug("Tool round %d: %d tool call(s)", round_num + 1, len(response.tool_calls))
        messages.append(Message(role="assistant", content=response.content, tool_calls=response.tool_calls))
        for tc in response.tool_calls:
            messages.append(Message(
                role="tool_result",
                content=await execute_tool(tc.name, tc.arguments, executor),
                tool_call_id=tc.id,
                tool_name=tc.name,
            ))

    logger.debug(
        "%s replied after %d round(s) (%d in / %d out tokens)",
        engine.model_id, round_num + 1, total_in, total_out,
    )
    final = EngineResponse(
        content=response.content,
        stop_reason=response.stop_reason,
        input_tokens=total_in,
        output_tokens=total_out,
    )
    return parse_json_object(response.content), final


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the swappable reasoning engine.

    Environment variables:
      REASONING_ENGINE      - "claude" | "openai" (default: "claude")
      REASONING_MODEL       - model override; unset for provider default
      ANTHROPIC_API_KEY     - required when provider is "claude"
      OPENAI_API_KEY        - required when provider is "openai"
      REASONING_TEMPERATURE - 0.0–1.0 (default: 0.2)
      REASONING_MAX_TOKENS  - completion cap (default: 8192)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    provider: str = Field(default="claude", validation_alias="REASONING_ENGINE")
    model: str | None = Field(default=None, validation_alias="REASONING_MODEL")
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ANTHROPIC_API_KEY",
        repr=False,
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENAI_API_KEY",
        repr=False,
    )
    temperature: float = Field(default=0.2, validation_alias="REASONING_TEMPERATURE")
    max_tokens: int = Field(default=8192, validation_alias="REASONING_MAX_TOKENS")

    @field_validator("provider", mode="before")
    @classmethod
    def lowercase_provider(cls, v: object) -> str:
        return str(v).lower()

    @field_validator("model", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> str | None:
        if not v:
            return None
        return str(v)

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @classmethod
    def from_env(cls) -> ReasoningSettings:
        return cls()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_engine(settings: ReasoningSettings) -> ReasoningEngine:
    """Instantiate the configured reasoning engine."""
    match settings.provider:
        case "claude" | "anthropic":
            return ClaudeEngine(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.model or "claude-sonnet-4-6",
                max_tokens=settings.max_tokens,
            )
        case "openai" | "gpt":
            return OpenAIEngine(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.model or "gpt-4o",
                max_tokens=settings.max_tokens,
            )
        case _:
            raise ValueError(
                f"Unknown reasoning engine provider: {settings.provider!r}. "
                f"Valid options: 'claude', 'openai'"
            )
