import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set


logger = logging.getLogger("uvicorn.error")

IMAGE_REQUEST_RE = re.compile(r"\b(generate|create|make|draw|illustrate|image|picture|photo|diagram)\b", re.IGNORECASE)
CODE_REQUEST_RE = re.compile(r"\b(code|debug|script|error|function|bug)\b", re.IGNORECASE)


@dataclass
class ToolContext:
    user_id: str
    conversation_id: str
    agent_id: Optional[str] = None
    project_id: Optional[str] = None
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    department: Optional[str] = None


@dataclass
class ToolResult:
    success: bool
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, result: Any) -> "ToolResult":
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    @property
    def status(self) -> str:
        return "completed" if self.success else "failed"

    def as_text(self) -> str:
        if not self.success:
            return self.error or "Tool execution failed"
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, ensure_ascii=False)


ToolHandler = Callable[[Dict[str, Any], ToolContext, Any], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler

    @property
    def required(self) -> List[str]:
        return list(self.parameters.get("required") or [])

    def to_function_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class ToolRegistry:
    """Name-keyed catalogue of function tools. Read-only once the app is built."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> ToolSpec:
        if spec.name in self._tools:
            raise ValueError(f"Tool {spec.name!r} is already registered.")
        self._tools[spec.name] = spec
        return spec

    def tool(self, name: str, description: str, parameters: Dict[str, Any]) -> Callable[[ToolHandler], ToolHandler]:
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(ToolSpec(name=name, description=description, parameters=parameters, handler=handler))
            return handler

        return decorator

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def function_tools(self, allowed: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        allowed_set = None if allowed is None else set(allowed)
        return [
            spec.to_function_tool()
            for name, spec in self._tools.items()
            if allowed_set is None or name in allowed_set
        ]

    def validate_args(self, name: str, args: Dict[str, Any]) -> Optional[str]:
        spec = self._tools.get(name)
        if spec is None:
            return f"Tool {name} not found"
        if "raw" in args and len(args) == 1:
            # Unparseable arguments are handed through; handlers decide what to do with them.
            return None
        for param in spec.required:
            if param not in args:
                return f"Missing required parameter: {param}"
        return None


def parse_tool_arguments(raw: Any) -> Dict[str, Any]:
    """Best-effort argument parsing. Anything that is not a JSON object lands under ``raw``."""
    if isinstance(raw, dict):
        return raw
    if raw is None or raw == "":
        return {}
    text = raw if isinstance(raw, str) else str(raw)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text}
    if isinstance(parsed, dict):
        return parsed
    return {"raw": text}


class ToolRouter:
    def __init__(self, registry: ToolRegistry, deps: Any = None, timeout_s: Optional[float] = None) -> None:
        self.registry = registry
        self.deps = deps
        self.timeout_s = timeout_s
        self._detached: Set[asyncio.Task] = set()

    async def dispatch(self, name: str, raw_arguments: Any, context: ToolContext) -> ToolResult:
        spec = self.registry.get(name)
        if spec is None:
            logger.warning("Tool %s requested but not registered (available: %s)", name, self.registry.names())
            return ToolResult.fail(f'Function "{name}" not implemented.')
        args = parse_tool_arguments(raw_arguments)
        problem = self.registry.validate_args(name, args)
        if problem:
            return ToolResult.fail(problem)
        logger.info("Executing tool %s for conversation %s", name, context.conversation_id)
        try:
            result = await self._run_bounded(spec, args, context)
        except asyncio.TimeoutError:
            logger.warning("Tool %s exceeded %.1fs; letting it finish in the background", name, self.timeout_s or 0)
            return ToolResult.fail(f"Error executing {name}: timed out after {self.timeout_s:g}s")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Tool %s raised", name)
            return ToolResult.fail(f"Error executing {name}: {exc or type(exc).__name__}")
        if not isinstance(result, ToolResult):
            result = ToolResult.ok(result)
        if not result.success:
            logger.info("Tool %s failed: %s", name, result.error)
        return result

    async def _run_bounded(self, spec: ToolSpec, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        if not self.timeout_s:
            return await spec.handler(args, context, self.deps)
        task = asyncio.ensure_future(spec.handler(args, context, self.deps))
        try:
            # Shielded so a slow handler's side effects (a ticket write, say) still complete.
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            self._detached.add(task)
            task.add_done_callback(self._reap)
            raise

    def _reap(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Detached tool task failed: %s", exc)

    async def drain(self) -> None:
        """Wait for handlers that outlived their timeout."""
        if self._detached:
            await asyncio.gather(*list(self._detached), return_exceptions=True)


def build_tool_list(
    registry: ToolRegistry,
    allowed_tools: Iterable[str],
    user_content: str,
    mode: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Per-turn tool list: hosted tools chosen from the request wording plus allowed function tools."""
    if mode == "prompt":
        return []
    allowed = set(allowed_tools)
    tools: List[Dict[str, Any]] = []
    is_image_request = bool(IMAGE_REQUEST_RE.search(user_content))
    if is_image_request and "image_generation" in allowed:
        tools.append({"type": "image_generation"})
    if not is_image_request and "web_search_preview" in allowed:
        tools.append({"type": "web_search_preview"})
    if CODE_REQUEST_RE.search(user_content) and "code_interpreter" in allowed:
        tools.append({"type": "code_interpreter", "container": {"type": "auto"}})
    tools.extend(registry.function_tools(allowed))
    logger.debug("Built %d tools: %s", len(tools), [t.get("name") or t.get("type") for t in tools])
    return tools
