"""One user utterance in, one grounded answer out.

A turn runs under the session lock and buffers its messages; the buffer is
committed to the session log only once the turn has an answer, so the log
always reads ``user, model(text)`` or ``user, model(call), tool(result),
model(text)``.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .errors import FatalError, HarveyError, ProtocolError
from .llm import ModelClient
from .prompts import build_system_prompt
from .schemas import (
    FileRef,
    Message,
    ModelReply,
    TextPart,
    ToolCallPart,
    ToolCallRequest,
    ToolCallResult,
    ToolSuccess,
    Usage,
)
from .session_store import Session, SessionStore
from .tools import ToolDispatcher, get_tools


logger = logging.getLogger("uvicorn.error")

# Tool calls executed per turn. A call requested after the last hop is reported, not run.
MAX_TOOL_HOPS = 1
FALLBACK_REPLY = "Sorry, I could not process that request. Could you rephrase it?"
UNEXECUTED_NOTE = (
    "\n\n(I also wanted to run {name}, but only one tool call is made per message. "
    "Ask me again if you want me to do that.)"
)


class TurnState(str, Enum):
    RECEIVED = "received"
    MODEL_FIRST_PASS = "model_first_pass"
    DIRECT_ANSWER = "direct_answer"
    TOOL_REQUESTED = "tool_requested"
    TOOL_EXECUTING = "tool_executing"
    TOOL_RESULT_READY = "tool_result_ready"
    MODEL_SECOND_PASS = "model_second_pass"
    ANSWERED = "answered"
    FAILED = "failed"


_TRANSITIONS = {
    TurnState.RECEIVED: {TurnState.MODEL_FIRST_PASS, TurnState.FAILED},
    TurnState.MODEL_FIRST_PASS: {TurnState.DIRECT_ANSWER, TurnState.TOOL_REQUESTED, TurnState.FAILED},
    TurnState.DIRECT_ANSWER: {TurnState.ANSWERED},
    TurnState.TOOL_REQUESTED: {TurnState.TOOL_EXECUTING},
    TurnState.TOOL_EXECUTING: {TurnState.TOOL_RESULT_READY, TurnState.FAILED},
    TurnState.TOOL_RESULT_READY: {TurnState.MODEL_SECOND_PASS},
    TurnState.MODEL_SECOND_PASS: {TurnState.TOOL_REQUESTED, TurnState.ANSWERED},
    TurnState.ANSWERED: set(),
    TurnState.FAILED: set(),
}


@dataclass
class Upload:
    name: str
    data: bytes


@dataclass
class Turn:
    session: Session
    text: str
    state: TurnState = TurnState.RECEIVED
    buffer: List[Message] = field(default_factory=list)
    attached: List[FileRef] = field(default_factory=list)
    tool_call: Optional[ToolCallRequest] = None
    tool_result: Optional[ToolCallResult] = None
    skipped_tool_calls: List[ToolCallRequest] = field(default_factory=list)
    unexecuted_tool_call: Optional[ToolCallRequest] = None
    usage: Usage = field(default_factory=Usage)
    hops: int = 0
    reply: str = ""

    def advance(self, state: TurnState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise FatalError(f"Illegal turn transition {self.state.value} -> {state.value}")
        self.state = state

    @property
    def history(self) -> List[Message]:
        return self.session.messages + self.buffer


class TurnResult(BaseModel):
    reply: str
    state: TurnState
    tool_call: Optional[ToolCallRequest] = None
    tool_result: Optional[ToolCallResult] = None
    unexecuted_tool_call: Optional[ToolCallRequest] = None
    skipped_tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    context_updated: bool = False
    attached_files: List[Dict[str, Any]] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)


def annotate_uploads(text: str, files: Sequence[FileRef]) -> str:
    notes = []
    for ref in files:
        if ref.status == "invalid":
            notes.append(
                f'[Context: User has uploaded a file "{ref.original_name}" with ID "{ref.id}" '
                f"but it failed validation: {ref.validation_error}.]"
            )
        else:
            notes.append(
                f'[Context: User has uploaded a file "{ref.original_name}" with ID "{ref.id}" '
                "that is available for pricing analysis.]"
            )
    if not notes:
        return text
    return text + "\n\n" + "\n".join(notes)


def fallback_text(result: ToolCallResult) -> str:
    """Answer built from the tool result alone, for when the second model pass is unavailable."""
    if isinstance(result.outcome, ToolSuccess):
        text = f"{result.name} finished: {result.outcome.message or 'done'}."
        if result.outcome.payload:
            details = json.dumps(result.outcome.payload, ensure_ascii=False, default=str)
            if len(details) > 1500:
                details = details[:1500] + "..."
            text += f"\n\nResult: {details}"
        return text
    return f"I could not complete {result.name}: {result.outcome.message}"


class ConversationEngine:
    def __init__(
        self,
        store: SessionStore,
        dispatcher: ToolDispatcher,
        model: ModelClient,
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.model = model
        self.tools = tools if tools is not None else get_tools()

    async def run_turn(self, session_id: str, text: str, uploads: Sequence[Upload] = ()) -> TurnResult:
        session = await self.store.get(session_id)
        async with session.lock:
            session.touch()
            context_before = session.pricing_context
            turn = Turn(session=session, text=text)
            for upload in uploads:
                turn.attached.append(await self.store.attach_to(session, upload.data, upload.name))
            turn.buffer.append(Message.user(annotate_uploads(text, turn.attached)))

            turn.advance(TurnState.MODEL_FIRST_PASS)
            try:
                reply = await self._generate(turn)
            except HarveyError:
                turn.advance(TurnState.FAILED)
                logger.warning("Session %s: first model pass failed, turn discarded", session.id)
                raise

            if reply.tool_calls:
                turn.advance(TurnState.TOOL_REQUESTED)
                await self._run_tools(turn, reply)
            else:
                turn.advance(TurnState.DIRECT_ANSWER)
                turn.reply = reply.text or FALLBACK_REPLY
                turn.buffer.append(Message.model_text(turn.reply))
                turn.advance(TurnState.ANSWERED)

            self.store.commit_turn(session, turn.buffer)
            logger.info(
                "Session %s: turn answered (tool=%s, tokens=%d)",
                session.id,
                turn.tool_call.name if turn.tool_call else None,
                turn.usage.total_tokens,
            )
            return TurnResult(
                reply=turn.reply,
                state=turn.state,
                tool_call=turn.tool_call,
                tool_result=turn.tool_result,
                unexecuted_tool_call=turn.unexecuted_tool_call,
                skipped_tool_calls=turn.skipped_tool_calls,
                context_updated=session.pricing_context is not context_before,
                attached_files=[ref.public_dict() for ref in turn.attached],
                usage=turn.usage,
            )

    async def _generate(self, turn: Turn) -> ModelReply:
        # The preamble follows whatever context the session has right now.
        system_prompt = build_system_prompt(turn.session.pricing_context)
        try:
            reply = await self.model.generate(turn.history, system_prompt=system_prompt, tools=self.tools)
        except ProtocolError as exc:
            logger.warning("Session %s: malformed tool call ignored: %s", turn.session.id, exc.message)
            usage = exc.detail.get("usage")
            reply = ModelReply(
                text=exc.detail.get("text") or "",
                usage=usage if isinstance(usage, Usage) else Usage(),
            )
        turn.usage = turn.usage + reply.usage
        return reply

    async def _run_tools(self, turn: Turn, reply: ModelReply) -> None:
        while True:
            call, *rest = reply.tool_calls
            turn.skipped_tool_calls.extend(rest)
            parts: List[Any] = [TextPart(text=reply.text)] if reply.text else []
            parts.append(ToolCallPart(call=call))
            turn.buffer.append(Message(role="model", parts=parts))
            turn.tool_call = call

            turn.advance(TurnState.TOOL_EXECUTING)
            result = await self.dispatcher.execute(call, turn.session)
            turn.tool_result = result
            turn.hops += 1
            turn.advance(TurnState.TOOL_RESULT_READY)
            turn.buffer.append(Message.tool_result(result))

            turn.advance(TurnState.MODEL_SECOND_PASS)
            try:
                reply = await self._generate(turn)
            except FatalError:
                raise
            except HarveyError as exc:
                logger.warning("Session %s: second model pass failed: %s", turn.session.id, exc.message)
                reply = ModelReply(text=fallback_text(result))

            if reply.tool_calls and turn.hops < MAX_TOOL_HOPS:
                turn.advance(TurnState.TOOL_REQUESTED)
                continue
            text = reply.text.strip() or fallback_text(result)
            if reply.tool_calls:
                turn.unexecuted_tool_call = reply.tool_calls[0]
                text += UNEXECUTED_NOTE.format(name=turn.unexecuted_tool_call.name)
            turn.reply = text
            turn.buffer.append(Message.model_text(text))
            turn.advance(TurnState.ANSWERED)
            return
