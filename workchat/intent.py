"""Image intent heuristics used to decide whether a turn can skip the tool loop."""

import enum
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple


RECENT_WINDOW = 5

PRIMARY_TRIGGERS = (
    "generate an image",
    "create an image",
    "make an image",
    "make a image",
    "make image",
    "draw",
    "illustrate",
    "create a diagram",
    "show me a picture",
    "generate a graphic",
    "create a visual",
    "make a picture",
    "create a picture",
    "generate a picture",
    "make a photo",
    "create a photo",
    "generate a photo",
    "make me an image",
    "make me a picture",
    "can you generate",
    "can you create an image",
    "can you make an image",
    "please generate",
    "please create an image",
    "please make an image",
    "design an image",
    "design a graphic",
    "produce an image",
    "render an image",
    "make a png",
    "create a png",
    "generate a png",
    "make a jpg",
    "create a jpg",
    "generate a jpg",
    "make a jpeg",
    "create a jpeg",
    "generate a jpeg",
    "image of",
    "picture of",
    "photo of",
    "graphic of",
    "visualization of",
    "depict",
    "show an image",
    "display an image",
)

FORMAT_NAMES = ("png", "jpg", "jpeg", "gif", "webp", "image file")

MODIFICATION_TRIGGERS = (
    "make the",
    "change the",
    "turn the",
    "make it",
    "change it",
    "turn it",
    "make them",
    "change them",
    "turn them",
    "add",
    "remove",
    "delete",
    "replace",
    "modify",
    "alter",
    "adjust",
    "edit",
    "update",
    "improve",
    "enhance",
    "fix",
    "correct",
)

COLOR_WORDS = (
    "red", "blue", "green", "yellow", "orange", "purple", "pink", "brown",
    "black", "white", "gray", "grey", "silver", "gold", "cyan", "magenta",
    "darker", "lighter", "brighter", "dimmer", "colorful", "colourful", "vibrant",
    "pastel", "neon", "bright", "dark", "light",
)

STYLE_WORDS = (
    "bigger", "smaller", "larger", "wider", "narrower", "taller", "shorter",
    "thicker", "thinner", "bolder", "softer", "smoother", "rougher",
    "more detailed", "less detailed", "simpler", "more complex",
    "realistic", "abstract", "cartoon", "sketch",
)

CONTEXTUAL_PATTERNS = (
    re.compile(r"\bmake (it|them|the \w+) (more|less|\w+er|\w+)"),
    re.compile(r"\bchange (it|them|the \w+) to\b"),
    re.compile(r"\bturn (it|them|the \w+) (into|\w+)"),
    re.compile(r"\b(add|remove|delete) (a|an|the|\w+)"),
    re.compile(
        r"\bmake (a|an|the|\w+) (red|blue|green|yellow|orange|purple|pink|brown|black|white|gray|grey"
        r"|silver|gold|cyan|magenta|darker|lighter|brighter|dimmer|bigger|smaller|larger)\b"
    ),
    re.compile(r"\bcan you (make|change|turn|add|remove|edit|modify|alter|adjust|update|fix)\b"),
)

IMPLICIT_PATTERNS = (
    re.compile(r"\bshow (me )?a (picture|image|photo|graphic) of\b"),
    re.compile(r"\bwhat (would|does) (a|an|\w+) look like\b"),
    re.compile(r"\bhow (would|does) (it|this|that) look\b"),
    re.compile(r"\bvisuali[sz]e"),
    re.compile(r"\bvisual representation\b"),
)

RESEARCH_RE = re.compile(
    r"\b(search|explain|sources?|reference|why|how|analy[sz]e|compare|research|document|docs?)\b",
    re.IGNORECASE,
)

IMAGE_MESSAGE_TYPES = {"image", "mixed"}


def _phrase_pattern(phrases: Iterable[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(p) for p in sorted(phrases, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b")


_PRIMARY_RE = _phrase_pattern(PRIMARY_TRIGGERS)
_FORMAT_RE = re.compile(
    rf"\b(?:make|create|generate) (?:a )?(?:{'|'.join(re.escape(f) for f in FORMAT_NAMES)})\b"
)
_MODIFICATION_RE = _phrase_pattern(MODIFICATION_TRIGGERS)
_COLOR_RE = _phrase_pattern(COLOR_WORDS)
_STYLE_RE = _phrase_pattern(STYLE_WORDS)


class ImageIntent(str, enum.Enum):
    PLAIN = "plain"
    GENERATE = "generate"
    MODIFY = "modify"
    IMPLICIT_GENERATE = "implicit-generate"

    @property
    def wants_image(self) -> bool:
        return self is not ImageIntent.PLAIN


@dataclass(frozen=True)
class IntentSignals:
    has_recent_image: bool
    primary: bool
    format_trigger: bool
    modification: bool
    implicit: bool

    @property
    def intent(self) -> ImageIntent:
        if self.primary or self.format_trigger:
            return ImageIntent.GENERATE
        if self.modification:
            return ImageIntent.MODIFY
        if self.implicit:
            return ImageIntent.IMPLICIT_GENERATE
        return ImageIntent.PLAIN


def _turn_fields(turn: Any) -> Tuple[str, str, Optional[str]]:
    if isinstance(turn, dict):
        text = turn.get("content_md") or turn.get("content") or ""
        return str(turn.get("role") or ""), str(text), turn.get("message_type") or turn.get("messageType")
    text = getattr(turn, "text", None)
    if text is None:
        text = getattr(turn, "content", "") or ""
    return str(getattr(turn, "role", "")), str(text), getattr(turn, "message_type", None)


def has_recent_image(history: Sequence[Any], window: int = RECENT_WINDOW) -> bool:
    """True when an assistant turn in the last ``window`` turns produced an image."""
    for turn in list(history)[-window:]:
        role, text, message_type = _turn_fields(turn)
        if role != "assistant":
            continue
        if message_type in IMAGE_MESSAGE_TYPES:
            return True
        if "![" in text or "generated an image" in text.lower():
            return True
    return False


def detect_image_signals(text: str, history: Sequence[Any] = (), window: int = RECENT_WINDOW) -> IntentSignals:
    lowered = (text or "").lower().strip()
    recent = has_recent_image(history, window)
    primary = bool(_PRIMARY_RE.search(lowered))
    format_trigger = bool(_FORMAT_RE.search(lowered))
    modification = False
    # Modification wording is only meaningful when there is an image to modify.
    if recent:
        trigger = bool(_MODIFICATION_RE.search(lowered))
        descriptive = bool(_COLOR_RE.search(lowered) or _STYLE_RE.search(lowered))
        contextual = any(p.search(lowered) for p in CONTEXTUAL_PATTERNS)
        modification = (trigger and descriptive) or contextual
    implicit = any(p.search(lowered) for p in IMPLICIT_PATTERNS)
    return IntentSignals(
        has_recent_image=recent,
        primary=primary,
        format_trigger=format_trigger,
        modification=modification,
        implicit=implicit,
    )


def classify_image_intent(text: str, history: Sequence[Any] = (), window: int = RECENT_WINDOW) -> ImageIntent:
    return detect_image_signals(text, history, window).intent


def is_research_request(text: str) -> bool:
    return bool(RESEARCH_RE.search(text or ""))


def is_fast_path_image_request(
    text: str,
    history: Sequence[Any],
    *,
    has_user_images: bool,
    agent_mode: Optional[str],
    allowed_tools: List[str],
    window: int = RECENT_WINDOW,
) -> bool:
    """Gate for skipping the general tool loop on unambiguous image requests."""
    if has_user_images:
        return False
    if agent_mode == "tools":
        return False
    if "image_generation" not in allowed_tools:
        return False
    if is_research_request(text):
        return False
    return classify_image_intent(text, history, window).wants_image
