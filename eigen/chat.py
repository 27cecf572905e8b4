import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .db import Database
from .errors import EigenError
from .events import EventBus
from .llm import CHAT_MODEL, TITLE_MODEL, LlamaServerClient
from .messages import (
    HISTORY_LIMIT,
    AccumulatedToolCall,
    AssistantToolCallsMessage,
    ChatMessage,
    ToolResultMessage,
    build_conversation,
    merge_tool_call_deltas,
    parse_tool_arguments,
    serialize_messages,
)
from .state import CancellationToken, RuntimeState
from .tools import ToolExecutor, get_enabled_tools, tools_to_openai_format

logger = logging.getLogger("uvicorn.error")

MAX_TOOL_ITERATIONS = 10
DEFAULT_TITLE = "New chat"
TITLE_MAX_CHARS = 80
TITLE_INPUT_CHARS = 300
TITLE_SYSTEM_PROMPT = "Generate a short chat title (3-6 words max). Return ONLY the title, no quotes, no explanation."


@dataclass
class FinalAnswer:
    chat_id: str
    visible_text: str
    reasoning_text: str
    duration_ms: int
    iterations: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "visible_text": self.visible_text,
            "reasoning_text": self.reasoning_text,
            "duration_ms": self.duration_ms,
            "iterations": self.iterations,
            "cancelled": self.cancelled,
        }


@dataclass
class _IterationResult:
    content: str
    tool_calls: List[AccumulatedToolCall]


def clean_title(raw: Optional[str]) -> str:
    lines = (raw or "").strip().splitlines()
    first = lines[0].strip().strip('"').strip("'").strip() if lines else ""
    return first[:TITLE_MAX_CHARS] or DEFAULT_TITLE


class ChatOrchestrator:
    def __init__(
        self,
        state: RuntimeState,
        bus: EventBus,
        db: Database,
        llm: LlamaServerClient,
        tools: ToolExecutor,
        *,
        chat_model: str = CHAT_MODEL,
        max_iterations: int = MAX_TOOL_ITERATIONS,
    ) -> None:
        self.state = state
        self.bus = bus
        self.db = db
        self.llm = llm
        self.tools = tools
        self.chat_model = chat_model
        self.max_iterations = max_iterations

    async def _stream_iteration(
        self,
        chat_id: str,
        payload: Dict[str, Any],
        token: CancellationToken,
        totals: Dict[str, List[str]],
    ) -> _IterationResult:
        content_parts: List[str] = []
        tool_calls: List[AccumulatedToolCall] = []
        stream = self.llm.stream_chat(payload)
        try:
            async for delta in stream:
                if token.cancelled:
                    break
                content_delta = delta.get("content") or ""
                reasoning_delta = delta.get("reasoning_content") or delta.get("reasoning") or ""
                if content_delta:
                    content_parts.append(content_delta)
                    totals["content"].append(content_delta)
                if reasoning_delta:
                    totals["reasoning"].append(reasoning_delta)
                if content_delta or reasoning_delta:
                    await self.bus.emit(
                        "chat:delta",
                        {"chatId": chat_id, "delta": content_delta, "reasoningDelta": reasoning_delta},
                    )
                if delta.get("tool_calls"):
                    merge_tool_call_deltas(tool_calls, delta["tool_calls"])
        finally:
            await stream.aclose()
        return _IterationResult(content="".join(content_parts), tool_calls=tool_calls)

    async def _run_tool_calls(
        self,
        chat_id: str,
        calls: Sequence[AccumulatedToolCall],
        conversation: List[ChatMessage],
    ) -> None:
        for call in calls:
            arguments = parse_tool_arguments(call.arguments)
            await self.bus.emit(
                "tool:calling",
                {
                    "chatId": chat_id,
                    "toolId": call.name,
                    "toolName": call.name,
                    "callId": call.id,
                    "arguments": arguments,
                },
            )
            logger.info("Executing tool %s (call %s)", call.name, call.id)
            result = await self.tools.execute(call.name, call.id, arguments)
            await self.bus.emit(
                "tool:result",
                {
                    "chatId": chat_id,
                    "callId": call.id,
                    "toolId": call.name,
                    "success": result.success,
                    "output": result.output,
                    "error": result.error,
                },
            )
            content = result.output if result.success else f"Error: {result.error or ''}"
            conversation.append(ToolResultMessage(tool_call_id=call.id, content=content))

    async def run_turn(self, chat_id: str, prompt: str, images: Optional[Sequence[str]] = None) -> FinalAnswer:
        """Run one user turn to completion, including any tool round-trips.

        The user message is stored before anything is sent, so it survives a
        failed request. The assistant reply (visible text and reasoning from all
        iterations) is stored once the loop ends, whether it finished, hit the
        iteration ceiling or was cancelled.
        """
        started = time.monotonic()
        token = await self.state.begin_generation(chat_id)
        try:
            await self.db.append_message(chat_id, "user", prompt, images=list(images or []))

            settings = await self.state.get_settings()
            history = await self.db.load_recent_messages(chat_id, HISTORY_LIMIT)
            conversation = build_conversation(settings.defaults.system_prompt, history)
            enabled = get_enabled_tools(settings.tools.enabled_tools)
            tools_json = tools_to_openai_format(enabled) if enabled else None

            await self.bus.emit("chat:begin", {"chatId": chat_id})

            totals: Dict[str, List[str]] = {"content": [], "reasoning": []}
            iterations = 0
            for iteration in range(self.max_iterations):
                if token.cancelled:
                    break
                payload: Dict[str, Any] = {
                    "model": self.chat_model,
                    "messages": serialize_messages(conversation),
                    "stream": True,
                    "max_tokens": settings.behavior.max_tokens,
                }
                if tools_json:
                    payload["tools"] = tools_json
                iterations += 1
                result = await self._stream_iteration(chat_id, payload, token, totals)
                if token.cancelled or not result.tool_calls:
                    break
                logger.info("Iteration %s: %s tool calls", iteration, len(result.tool_calls))
                conversation.append(
                    AssistantToolCallsMessage(
                        tool_calls=[call.to_tool_call() for call in result.tool_calls],
                        content=result.content or None,
                    )
                )
                await self._run_tool_calls(chat_id, result.tool_calls, conversation)

            duration_ms = int((time.monotonic() - started) * 1000)
            answer = FinalAnswer(
                chat_id=chat_id,
                visible_text="".join(totals["content"]),
                reasoning_text="".join(totals["reasoning"]),
                duration_ms=duration_ms,
                iterations=iterations,
                cancelled=token.cancelled,
            )
            await self.db.append_message(
                chat_id,
                "assistant",
                answer.visible_text,
                thinking=answer.reasoning_text,
                duration_ms=duration_ms,
            )
            await self.bus.emit("chat:end", {"chatId": chat_id, "durationMs": duration_ms})
            await self.bus.emit("chats:changed", {})
            return answer
        finally:
            await self.state.end_generation(chat_id, token)

    async def cancel_generation(self, chat_id: Optional[str] = None) -> int:
        return await self.state.cancel_generation(chat_id)

    async def generate_chat_title(self, chat_id: str) -> Optional[str]:
        if not self.state.ready:
            logger.info("Server not ready, skipping title generation for %s", chat_id)
            return None
        first_message = await self.db.first_user_message(chat_id)
        if first_message is None:
            return None
        if len(first_message) > TITLE_INPUT_CHARS:
            first_message = first_message[:TITLE_INPUT_CHARS] + "..."
        payload = {
            "model": TITLE_MODEL,
            "messages": [
                {"role": "system", "content": TITLE_SYSTEM_PROMPT},
                {"role": "user", "content": first_message},
            ],
            "stream": False,
            "max_tokens": 30,
        }
        try:
            data = await self.llm.chat_completion(payload)
            choices = data.get("choices") or []
            raw = ((choices[0] if choices else {}).get("message") or {}).get("content")
        except (EigenError, ValueError, AttributeError) as exc:
            logger.warning("Title generation failed for %s: %s", chat_id, exc)
            return None
        title = clean_title(raw)
        await self.db.rename_conversation(chat_id, title)
        await self.bus.emit("chats:changed", {})
        logger.info("Generated title for %s: %s", chat_id, title)
        return title

    async def new_chat(self) -> str:
        convo = await self.db.create_conversation(DEFAULT_TITLE)
        await self.bus.emit("chats:changed", {})
        return convo["id"]

    async def list_chats(self) -> List[dict]:
        return await self.db.list_conversations(limit=100)

    async def get_chat_messages(self, chat_id: str) -> List[dict]:
        return await self.db.list_messages(chat_id)

    async def rename_chat(self, chat_id: str, title: str) -> None:
        await self.db.rename_conversation(chat_id, title)
        await self.bus.emit("chats:changed", {})

    async def delete_chat(self, chat_id: str) -> None:
        await self.db.delete_conversation(chat_id)
        await self.bus.emit("chats:changed", {})
