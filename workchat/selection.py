"""Model tier and reasoning effort selection for a turn.

Everything here is pure: the same turn features always produce the same
selection, so the controller can call it without side effects and tests can
exercise the rules directly.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


EFFORT_ORDER = ["minimal", "low", "medium", "high"]
TIERS = ("small", "medium", "large")

COMPLEXITY_RE = re.compile(r"\b(code|debug|analy[sz]e|architecture|integration)\b", re.IGNORECASE)
CODE_RE = re.compile(r"\b(function|bug|script|stack trace|error)\b", re.IGNORECASE)

LARGE_LENGTH = 1000
MEDIUM_LENGTH = 200
MEDIUM_EFFORT_LENGTH = 500

WEB_SEARCH_TOOLS = {"web_search_preview", "web_search"}
CODE_TOOLS = {"code_interpreter"}
IMAGE_TOOLS = {"image_generation"}

# Hosted tools each effort level supports. The lowest effort runs without any.
HOSTED_TOOLS = ("web_search", "image_generation", "file_search", "code_interpreter")
EFFORT_TOOL_SUPPORT: Dict[str, set] = {
    "minimal": set(),
    "low": set(HOSTED_TOOLS),
    "medium": set(HOSTED_TOOLS),
    "high": set(HOSTED_TOOLS),
}
TOOL_ALIASES = {
    "image_generation": "image_generation",
    "web_search": "web_search",
    "web_search_preview": "web_search",
    "file_search": "file_search",
    "code_interpreter": "code_interpreter",
    "search": "web_search",
    "image": "image_generation",
    "files": "file_search",
    "code": "code_interpreter",
}


class EffortPolicyError(ValueError):
    status_code = 400


@dataclass(frozen=True)
class TurnFeatures:
    text: str
    length: int
    has_images: bool
    is_complex: bool
    is_code: bool
    enabled_tools: frozenset

    @classmethod
    def from_turn(
        cls,
        text: str,
        has_images: bool = False,
        tools: Optional[Iterable[Any]] = None,
    ) -> "TurnFeatures":
        return cls(
            text=text,
            length=len(text),
            has_images=has_images,
            is_complex=bool(COMPLEXITY_RE.search(text)),
            is_code=bool(CODE_RE.search(text)),
            enabled_tools=frozenset(enabled_tool_types(tools or [])),
        )


@dataclass(frozen=True)
class ModelSelection:
    tier: str
    model: str
    effort: str
    base_effort: str


def enabled_tool_types(tools: Iterable[Any]) -> List[str]:
    """Tool types present in a Responses-API tool list (or plain names)."""
    found: List[str] = []
    for tool in tools:
        if isinstance(tool, str):
            found.append(tool)
        elif isinstance(tool, dict):
            tool_type = tool.get("type")
            if tool_type == "function" and tool.get("name"):
                found.append(str(tool["name"]))
            elif tool_type:
                found.append(str(tool_type))
    return found


def select_tier(features: TurnFeatures) -> str:
    if features.length > LARGE_LENGTH or features.is_complex or features.is_code:
        return "large"
    if features.has_images or features.length > MEDIUM_LENGTH:
        return "medium"
    return "small"


def base_effort(features: TurnFeatures) -> str:
    if features.is_complex or features.is_code:
        return "high"
    if features.length > MEDIUM_EFFORT_LENGTH:
        return "medium"
    return "minimal"


def max_effort(a: str, b: str) -> str:
    return a if EFFORT_ORDER.index(a) >= EFFORT_ORDER.index(b) else b


def escalate_effort(effort: str, enabled_tools: Iterable[str]) -> str:
    """Raise effort for the enabled tools. Never lowers it."""
    tools = set(enabled_tools)
    escalated = effort
    if tools & WEB_SEARCH_TOOLS and escalated == "minimal":
        escalated = "low"
    if tools & CODE_TOOLS and escalated == "low":
        escalated = "medium"
    if tools & IMAGE_TOOLS and escalated == "minimal":
        escalated = "low"
    return max_effort(escalated, effort)


def select_model_and_reasoning(features: TurnFeatures, settings: Any) -> ModelSelection:
    tier = select_tier(features)
    base = base_effort(features)
    effort = escalate_effort(base, features.enabled_tools)
    return ModelSelection(tier=tier, model=settings.model_for_tier(tier), effort=effort, base_effort=base)


def normalize_tool_name(name: str) -> Optional[str]:
    return TOOL_ALIASES.get(str(name or "").strip().lower())


def hosted_tools(tools: Iterable[Any]) -> List[str]:
    names = [normalize_tool_name(t) for t in enabled_tool_types(tools)]
    return sorted({n for n in names if n})


def tools_compatible(effort: str, tools: Iterable[Any]) -> bool:
    allowed = EFFORT_TOOL_SUPPORT.get(effort, set())
    return all(tool in allowed for tool in hosted_tools(tools))


def minimum_effort_for_tools(tools: Iterable[Any]) -> str:
    wanted = hosted_tools(tools)
    for effort in EFFORT_ORDER:
        if all(tool in EFFORT_TOOL_SUPPORT[effort] for tool in wanted):
            return effort
    return "high"


def coerce_effort_for_tools(effort: Optional[str], tools: Iterable[Any], strict: bool = False) -> str:
    """Return an effort level compatible with the hosted tools in ``tools``.

    With ``strict`` an incompatible combination raises ``EffortPolicyError``
    instead of being bumped to the lowest compatible effort.
    """
    requested = effort or "low"
    tool_list = list(tools)
    if tools_compatible(requested, tool_list):
        return requested
    if strict:
        blocked = [t for t in hosted_tools(tool_list) if t not in EFFORT_TOOL_SUPPORT.get(requested, set())]
        raise EffortPolicyError(
            f"Requested tools [{', '.join(blocked)}] are not allowed with reasoning effort '{requested}'. "
            "Use 'low' (or higher) effort or remove those tools."
        )
    return max_effort(minimum_effort_for_tools(tool_list), requested)
