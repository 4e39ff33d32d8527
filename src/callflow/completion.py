"""
Streaming chat completion with mid-stream tool calls.

One completion is a loop of rounds. Each round streams one model response:
- text deltas are cut into speakable segments at the pause marker and emitted
  immediately with a session-wide sequence index
- tool-call deltas are accumulated and, once the stream finishes with
  finish_reason=tool_calls, the tool is announced, invoked, its result is
  appended to the context and a new round starts
- a tool requested in the last allowed round is not run; the caller hears an
  apology instead

The conversation context is append-only and owned by this orchestrator.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import openai
import structlog
from openai import AsyncOpenAI

from src.callflow.config import Config, get_config
from src.callflow.errors import CompletionError, ToolError
from src.callflow.events import SpeakableSegment
from src.callflow.prompts import get_system_prompt
from src.callflow.tools.arguments import parse_tool_arguments
from src.callflow.tools.registry import ToolContext, ToolRegistry, get_registry

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

TOOL_TIMEOUT_REPLY = "I'm sorry, that's taking longer than expected. Could we try that again in a moment?"
TOOL_LIMIT_REPLY = "I'm sorry, I wasn't able to finish that request. Is there anything else I can help you with?"


class Role(str, Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL_RESULT = "tool-result"


class RoundState(str, Enum):
    """Lifecycle of one streamed model response."""
    STREAMING_TEXT = "streaming_text"
    TOOL_CALL_DETECTED = "tool_call_detected"
    INVOKING_TOOL = "invoking_tool"
    RECURSING = "recursing"
    STREAM_DONE = "stream_done"


@dataclass
class PendingToolCall:
    """Tool call being assembled from stream fragments."""
    name: str = ""
    call_id: str = ""
    arguments: str = ""

    def collect(self, fragment: Any) -> None:
        function = getattr(fragment, "function", None)
        call_id = getattr(fragment, "id", None) or ""
        if call_id and not self.call_id:
            self.call_id = call_id

        name = getattr(function, "name", None) or ""
        if name and not self.name:
            self.name = name

        # Arguments may be split across many deltas.
        arguments = getattr(function, "arguments", None) or ""
        if arguments:
            self.arguments += arguments

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Tuple[PendingToolCall, ...] = ()

    def to_openai(self) -> Dict[str, Any]:
        if self.role == Role.TOOL_RESULT:
            if self.tool_call_id:
                return {
                    "role": "tool",
                    "tool_call_id": self.tool_call_id,
                    "name": self.name,
                    "content": self.content,
                }
            # A result handed in without a matching tool call uses the legacy function role.
            return {"role": "function", "name": self.name, "content": self.content}

        message: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.name:
            message["name"] = self.name
        if self.tool_calls:
            message["tool_calls"] = [call.to_openai() for call in self.tool_calls]
        return message


class ConversationContext:
    """Append-only message history for one call."""

    def __init__(self, messages: Optional[List[Message]] = None):
        self._messages: List[Message] = list(messages or [])

    @classmethod
    def for_call(cls, config: Config) -> "ConversationContext":
        return cls(
            [
                Message(role=Role.SYSTEM, content=get_system_prompt(config.pause_marker)),
                Message(role=Role.ASSISTANT, content=config.greeting),
            ]
        )

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def count(self, role: Role) -> int:
        return sum(1 for m in self._messages if m.role == role)

    def to_openai(self) -> List[Dict[str, Any]]:
        return [m.to_openai() for m in self._messages]

    def __len__(self) -> int:
        return len(self._messages)


@dataclass
class RoundResult:
    state: RoundState
    text: str = ""
    tool_call: Optional[PendingToolCall] = None
    segments: int = 0
    first_token_ms: float = 0.0
    started_at: float = field(default_factory=time.time)


def create_llm_client(config: Optional[Config] = None) -> AsyncOpenAI:
    """OpenAI client, pointed at Groq's OpenAI-compatible API when configured."""
    config = config or get_config()
    if config.llm_provider == "groq":
        return AsyncOpenAI(api_key=config.groq_api_key, base_url=GROQ_BASE_URL)
    return AsyncOpenAI(api_key=config.openai_api_key)


SegmentSink = Callable[[SpeakableSegment], Awaitable[None]]


class CompletionOrchestrator:
    """
    Drives streamed completions for one call.

    Speakable segments are handed to `emit` in generation order; the
    sequence index continues across rounds and completions.
    """

    def __init__(
        self,
        emit: SegmentSink,
        registry: Optional[ToolRegistry] = None,
        config: Optional[Config] = None,
        client: Optional[AsyncOpenAI] = None,
        context: Optional[ConversationContext] = None,
        tool_context: Optional[ToolContext] = None,
    ):
        self.config = config or get_config()
        self._emit = emit
        self._registry = registry if registry is not None else get_registry()
        self._client = client or create_llm_client(self.config)
        self.context = context or ConversationContext.for_call(self.config)
        self.tool_context = tool_context or ToolContext(call_sid="", config=self.config)
        self.partial_response_index = 0

    def set_call_sid(self, call_sid: str) -> None:
        self.tool_context = ToolContext(call_sid=call_sid, config=self.tool_context.config)

    async def complete(
        self,
        text: str,
        interaction_id: int,
        role: Union[Role, str] = Role.USER,
        name: str = "user",
    ) -> None:
        """
        Append `text` to the context and stream the model's answer.

        Raises:
            CompletionError: the LLM request or stream failed
            UnknownToolError / ToolArgumentsError: the round's tool call was rejected
        """
        self._append_input(text, Role(role), name)

        for round_number in range(1, self.config.max_tool_rounds + 1):
            result = await self._run_round(interaction_id, round_number)
            if result.state == RoundState.STREAM_DONE:
                return

            if round_number == self.config.max_tool_rounds:
                await self._decline_tool_call(result, interaction_id)
                return

            resolved = await self._resolve_tool_call(result, interaction_id)
            if not resolved:
                return

    def _append_input(self, text: str, role: Role, name: str) -> None:
        # Messages from the caller carry no name; tool results carry the tool's name.
        if role == Role.USER or name == "user":
            self.context.append(Message(role=role, content=text))
        else:
            self.context.append(Message(role=role, content=text, name=name))

    async def _run_round(self, interaction_id: int, round_number: int) -> RoundResult:
        marker = self.config.pause_marker
        result = RoundResult(state=RoundState.STREAMING_TEXT)
        pending_tool = PendingToolCall()
        partial_response = ""
        finish_reason: Optional[str] = None

        request: Dict[str, Any] = {
            "model": self.config.llm_model,
            "messages": self.context.to_openai(),
            "stream": True,
        }
        tools = self._registry.definitions()
        if tools:
            request["tools"] = tools
            # One tool per round; fragments for other indices are never collected.
            request["parallel_tool_calls"] = False

        try:
            stream = await self._client.chat.completions.create(**request)

            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                finish_reason = choice.finish_reason or finish_reason

                if not result.first_token_ms:
                    result.first_token_ms = (time.time() - result.started_at) * 1000

                if delta is not None and delta.tool_calls:
                    for fragment in delta.tool_calls:
                        if (getattr(fragment, "index", 0) or 0) == 0:
                            pending_tool.collect(fragment)
                else:
                    content = (delta.content if delta is not None else None) or ""
                    result.text += content
                    partial_response += content

                stream_ended = finish_reason is not None and finish_reason != "tool_calls"
                if partial_response.strip() and (
                    partial_response.rstrip().endswith(marker) or stream_ended
                ):
                    await self._emit_partial(partial_response, interaction_id)
                    result.segments += 1
                    partial_response = ""

        except openai.OpenAIError as e:
            logger.error(
                "LLM stream failed",
                interaction_id=interaction_id,
                round=round_number,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise CompletionError(f"LLM stream failed: {e}") from e

        if partial_response.strip():
            # Text left over before a tool call, or a stream that ended without a finish reason.
            await self._emit_partial(partial_response, interaction_id)
            result.segments += 1

        if finish_reason == "tool_calls" or (finish_reason is None and pending_tool.name):
            result.state = RoundState.TOOL_CALL_DETECTED
            result.tool_call = pending_tool
            logger.info(
                "Tool call detected",
                interaction_id=interaction_id,
                round=round_number,
                tool=pending_tool.name,
            )
            return result

        result.state = RoundState.STREAM_DONE
        self.context.append(Message(role=Role.ASSISTANT, content=result.text))
        logger.info(
            "Completion round done",
            interaction_id=interaction_id,
            round=round_number,
            segments=result.segments,
            first_token_ms=round(result.first_token_ms, 2),
            context_length=len(self.context),
        )
        return result

    async def _resolve_tool_call(self, result: RoundResult, interaction_id: int) -> bool:
        """Validate, announce and run the round's tool. Returns True when a new round should start."""
        tool_call = result.tool_call
        assert tool_call is not None

        tool = self._registry.get(tool_call.name)
        parsed = parse_tool_arguments(tool_call.arguments)
        arguments = self._registry.validate_arguments(tool_call.name, parsed)
        # The context keeps the repaired JSON, not the raw streamed text.
        tool_call.arguments = json.dumps(parsed)

        # Speak immediately so the caller is not left in silence while the tool runs.
        await self._emit(
            SpeakableSegment(index=None, text=tool.descriptor.say, interaction_id=interaction_id)
        )

        started = time.time()
        logger.info(
            "Invoking tool",
            interaction_id=interaction_id,
            state=RoundState.INVOKING_TOOL.value,
            tool=tool_call.name,
        )
        try:
            output = await asyncio.wait_for(
                self._registry.invoke(tool_call.name, arguments, self.tool_context),
                timeout=self.config.tool_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Tool timed out",
                interaction_id=interaction_id,
                tool=tool_call.name,
                timeout_s=self.config.tool_timeout_seconds,
            )
            await self._emit_partial(TOOL_TIMEOUT_REPLY, interaction_id)
            self.context.append(
                Message(role=Role.ASSISTANT, content=f"{result.text}{TOOL_TIMEOUT_REPLY}".strip())
            )
            return False
        except ToolError:
            raise
        except Exception as e:
            raise ToolError(f"Tool {tool_call.name} failed: {e}") from e

        if not tool_call.call_id:
            tool_call.call_id = f"call_{interaction_id}_{int(started * 1000)}"

        self.context.append(
            Message(role=Role.ASSISTANT, content=result.text, tool_calls=(tool_call,))
        )
        self.context.append(
            Message(
                role=Role.TOOL_RESULT,
                content=output,
                name=tool_call.name,
                tool_call_id=tool_call.call_id,
            )
        )
        logger.info(
            "Tool result appended",
            interaction_id=interaction_id,
            state=RoundState.RECURSING.value,
            tool=tool_call.name,
            tool_ms=round((time.time() - started) * 1000, 2),
        )
        return True

    async def _decline_tool_call(self, result: RoundResult, interaction_id: int) -> None:
        """Last allowed round asked for another tool: apologise instead of running it."""
        logger.warning(
            "Tool round limit reached, tool not invoked",
            interaction_id=interaction_id,
            tool=result.tool_call.name if result.tool_call else "",
            max_tool_rounds=self.config.max_tool_rounds,
        )
        await self._emit_partial(TOOL_LIMIT_REPLY, interaction_id)
        self.context.append(
            Message(role=Role.ASSISTANT, content=f"{result.text}{TOOL_LIMIT_REPLY}".strip())
        )

    async def _emit_partial(self, text: str, interaction_id: int) -> None:
        segment = SpeakableSegment(
            index=self.partial_response_index,
            text=text,
            interaction_id=interaction_id,
        )
        self.partial_response_index += 1
        logger.debug(
            "LLM -> TTS",
            interaction_id=interaction_id,
            index=segment.index,
            text=text,
        )
        await self._emit(segment)
