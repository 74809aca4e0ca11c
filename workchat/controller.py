import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .db import Database
from .events import TurnStream
from .images import GeneratedImage, MediaStore
from .intent import is_fast_path_image_request
from .prompting import compose_system_prompt, conversation_title
from .schemas import AgentProfile, ChatMessage, ChatRequest, ContextDocument, UserIdentity
from .selection import TurnFeatures, coerce_effort_for_tools, select_model_and_reasoning
from .stream_runner import ExecutedToolCall, StreamedToolCall, StreamRunError, StreamRunner
from .telemetry import log_ai_operation
from .tools import ToolContext, ToolRouter, build_tool_list


logger = logging.getLogger("uvicorn.error")

IMAGE_FILE_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp|bmp)$", re.IGNORECASE)


class AgentNotFoundError(LookupError):
    pass


class ToolLoopExceededError(RuntimeError):
    """The model kept requesting tools past the configured exchange bound."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Tool loop exceeded {limit} exchanges without a final answer")
        self.limit = limit


@dataclass
class PreparedTurn:
    request: ChatRequest
    user: UserIdentity
    agent: Optional[AgentProfile]
    chat_id: str
    user_content: str
    document_context: str = ""
    project_context: Optional[str] = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def history(self) -> List[ChatMessage]:
        return self.request.history

    @property
    def image_urls(self) -> List[str]:
        return list(self.request.image_urls)

    @property
    def mode(self) -> str:
        if self.agent is not None:
            return self.agent.mode
        return self.request.mode or "hybrid"


@dataclass
class RunResult:
    text: str = ""
    response_id: Optional[str] = None
    images: List[GeneratedImage] = field(default_factory=list)
    tool_calls: List[ExecutedToolCall] = field(default_factory=list)
    model: Optional[str] = None
    exchanges: int = 0
    fast_path: bool = False
    complete: bool = True


def build_input(history: List[ChatMessage], user_message: str, image_urls: List[str]) -> List[Dict[str, Any]]:
    """Responses API input: prior turns as plain text, then the new user turn."""
    items: List[Dict[str, Any]] = []
    for message in history:
        if message.role not in ("user", "assistant", "system"):
            continue
        items.append({"role": message.role, "content": message.text})
    if image_urls:
        content: Any = [{"type": "input_text", "text": user_message}]
        content.extend({"type": "input_image", "image_url": url} for url in image_urls)
    else:
        content = user_message
    items.append({"role": "user", "content": content})
    return items


class ChatController:
    """Runs one conversation turn: prepare, stream, loop tools, persist."""

    def __init__(
        self,
        settings: Any,
        db: Database,
        llm_client: Any,
        router: ToolRouter,
        media: Optional[MediaStore] = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.llm_client = llm_client
        self.router = router
        self.media = media

    async def prepare(self, request: ChatRequest, user: UserIdentity) -> PreparedTurn:
        await self.db.ensure_user(user)
        agent: Optional[AgentProfile] = None
        if request.agent_id:
            agent = await self.db.get_agent(request.agent_id)
            if agent is None or not agent.is_active:
                raise AgentNotFoundError(request.agent_id)
        user_content = request.user_message.text.strip()
        chat = await self.db.create_or_get_chat(
            request.chat_id,
            user.id,
            agent_id=request.agent_id,
            project_id=request.project_id,
            title=conversation_title(user_content, agent),
        )
        await self.db.save_user_message(chat["id"], user_content, request.image_urls)
        document_context = await self.fetch_document_context(request.selected_context)
        project_context = None
        if request.project_id:
            project = await self.db.get_project(request.project_id)
            if project:
                project_context = f"{project['name']}: {project.get('description') or ''}".strip().rstrip(":")
        return PreparedTurn(
            request=request,
            user=user,
            agent=agent,
            chat_id=chat["id"],
            user_content=user_content,
            document_context=document_context,
            project_context=project_context,
        )

    async def fetch_document_context(self, selected: List[ContextDocument]) -> str:
        blocks: List[str] = []
        for item in selected:
            name = item.name or item.original_filename or ""
            if IMAGE_FILE_RE.search(name) or (item.mime_type or "").startswith("image/"):
                continue
            doc = await self.db.get_document(item.id)
            if not doc:
                logger.warning("Selected document %s not found", item.id)
                continue
            doc_name = doc.get("name") or name or item.id
            file_type = doc.get("file_type") or item.file_type or "document"
            if doc.get("content"):
                blocks.append(f"\n---\n**{doc_name}** ({file_type})\n\n{doc['content']}\n---\n")
            else:
                blocks.append(f"\n---\n**{doc_name}** ({file_type}) - Content not yet extracted\n---\n")
        if not blocks:
            return ""
        return "\n\n## Attached Documents:\n" + "\n".join(blocks)

    def is_fast_path(self, turn: PreparedTurn) -> bool:
        allowed = turn.agent.allowed_tools if turn.agent else self.settings.default_allowed_tools
        return is_fast_path_image_request(
            turn.user_content,
            turn.history,
            has_user_images=bool(turn.image_urls),
            agent_mode=turn.mode,
            allowed_tools=list(allowed),
            window=self.settings.history_window,
        )

    def tool_context(self, turn: PreparedTurn) -> ToolContext:
        return ToolContext(
            user_id=turn.user.id,
            conversation_id=turn.chat_id,
            agent_id=turn.agent.id if turn.agent else None,
            project_id=turn.request.project_id,
            user_email=turn.user.email,
            user_name=turn.user.name,
            department=turn.user.department,
        )

    async def run(self, turn: PreparedTurn, stream: TurnStream) -> Optional[RunResult]:
        """Run the turn to completion. Errors end the stream; nothing is persisted for a failed turn."""
        try:
            if self.is_fast_path(turn):
                result = await self.run_fast_path(turn, stream)
            else:
                result = await self.run_tool_loop(turn, stream)
        except StreamRunError as exc:
            logger.warning("Turn in chat %s failed: %s", turn.chat_id, exc)
            stream.fail(str(exc))
            return None
        except ToolLoopExceededError as exc:
            logger.error("Turn in chat %s exceeded the tool loop bound (%d)", turn.chat_id, exc.limit)
            stream.fail(str(exc), code="loop_exceeded")
            return None

        message_id = await self.persist(turn, result)
        elapsed_ms = int((time.monotonic() - turn.started_at) * 1000)
        log_ai_operation(
            "chat_complete",
            model=result.model,
            chat_id=turn.chat_id,
            user_id=turn.user.id,
            duration_ms=elapsed_ms,
            response_id=result.response_id,
            tool_calls=len(result.tool_calls),
            images=len(result.images),
            exchanges=result.exchanges,
            fast_path=result.fast_path,
            complete=result.complete,
        )
        if result.complete:
            stream.finish(result.response_id, chat_id=turn.chat_id, message_id=message_id)
        return result

    async def persist(self, turn: PreparedTurn, result: RunResult) -> int:
        return await self.db.save_assistant_message(
            turn.chat_id,
            result.text,
            images=[img.to_record() for img in result.images],
            tool_calls=[call.to_record() for call in result.tool_calls],
            model=result.model,
            response_id=result.response_id,
        )

    async def run_fast_path(self, turn: PreparedTurn, stream: TurnStream) -> RunResult:
        model = self.settings.fast_path_model
        logger.info("Fast-path image request in chat %s", turn.chat_id)
        log_ai_operation("chat_start", model=model, chat_id=turn.chat_id, user_id=turn.user.id, fast_path=True)
        runner = StreamRunner(
            self.llm_client,
            stream,
            model=model,
            instructions=compose_system_prompt(self.settings, turn.agent, turn.user),
            tools=[{"type": "image_generation"}],
            media=self.media,
        )
        step = await runner.run(build_input([], turn.user_content, []))
        return RunResult(
            text=step.text,
            response_id=step.response_id,
            images=list(step.images),
            model=model,
            exchanges=1,
            fast_path=True,
            complete=not stream.detached,
        )

    async def run_tool_loop(self, turn: PreparedTurn, stream: TurnStream) -> RunResult:
        allowed = turn.agent.allowed_tools if turn.agent else self.settings.default_allowed_tools
        tools = build_tool_list(self.router.registry, allowed, turn.user_content, turn.mode)
        features = TurnFeatures.from_turn(turn.user_content, has_images=bool(turn.image_urls), tools=tools)
        selection = select_model_and_reasoning(features, self.settings)
        effort = coerce_effort_for_tools(selection.effort, tools)
        instructions = compose_system_prompt(self.settings, turn.agent, turn.user, turn.project_context)
        log_ai_operation(
            "chat_start",
            model=selection.model,
            tier=selection.tier,
            chat_id=turn.chat_id,
            user_id=turn.user.id,
            message_length=features.length,
            has_images=features.has_images,
            reasoning_effort=effort,
            tool_count=len(tools),
        )
        ai_message = turn.user_content
        if turn.document_context:
            # Document text goes to the model only; the stored user message stays as typed.
            ai_message = f"{turn.user_content}\n\n{turn.document_context}"
        runner = StreamRunner(
            self.llm_client,
            stream,
            model=selection.model,
            instructions=instructions,
            tools=tools,
            effort=effort,
            media=self.media,
        )
        return await self.execute_conversation(
            runner,
            build_input(turn.history, ai_message, turn.image_urls),
            self.tool_context(turn),
            stream,
        )

    async def execute_conversation(
        self,
        runner: StreamRunner,
        initial_input: List[Dict[str, Any]],
        context: ToolContext,
        stream: TurnStream,
    ) -> RunResult:
        limit = max(1, int(self.settings.max_tool_iterations))
        result = RunResult(model=runner.model)
        current_input: List[Dict[str, Any]] = initial_input
        previous_response_id: Optional[str] = None
        for _ in range(limit):
            step = await runner.run(current_input, previous_response_id)
            result.exchanges += 1
            result.text += step.text
            result.images.extend(step.images)
            result.response_id = step.response_id or result.response_id
            if not step.tool_calls:
                result.complete = not stream.detached
                return result
            outputs: List[Dict[str, Any]] = []
            for call in step.tool_calls:
                if stream.detached:
                    break
                executed = await self.execute_tool(call, context, stream)
                result.tool_calls.append(executed)
                outputs.append(executed.to_input_item())
            if stream.detached:
                # The caller is gone: keep what already ran, start nothing new.
                logger.info("Caller left chat %s; stopping after %d exchanges", context.conversation_id, result.exchanges)
                result.complete = False
                return result
            current_input = outputs
            previous_response_id = step.response_id
        raise ToolLoopExceededError(limit)

    async def execute_tool(self, call: StreamedToolCall, context: ToolContext, stream: TurnStream) -> ExecutedToolCall:
        outcome = await self.router.dispatch(call.name, call.arguments, context)
        executed = ExecutedToolCall.from_call(call, outcome.status, outcome.as_text())
        stream.write(
            {
                "type": "function_result",
                "call_id": executed.call_id,
                "name": executed.name,
                "result": executed.result,
                "status": executed.status,
            }
        )
        return executed
