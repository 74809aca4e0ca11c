import base64
import binascii
import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .llm import UpstreamError


logger = logging.getLogger("uvicorn.error")

SIZE_CLASSES = ("auto", "square", "landscape", "portrait")
_EXPLICIT_SIZE_RE = re.compile(r"^(\d{2,5})x(\d{2,5})$")

# Most actionable first: an operator can fix verification or credentials, not an outage.
CLASSIFICATION_PRIORITY = [
    "needs_verification",
    "unauthenticated",
    "rate_limited",
    "content_policy",
    "invalid_request",
    "upstream_error",
    "unreachable",
]
CLASSIFICATION_STATUS = {
    "needs_verification": 403,
    "unauthenticated": 401,
    "rate_limited": 429,
    "content_policy": 400,
    "invalid_request": 400,
}
CLASSIFICATION_MESSAGES = {
    "needs_verification": "Organization verification required for image generation",
    "unauthenticated": "Image generation credentials were rejected",
    "rate_limited": "Image generation rate limit reached; try again shortly",
    "content_policy": "The prompt was rejected by the content policy",
    "invalid_request": "The image request was rejected as invalid",
}


@dataclass
class GeneratedImage:
    data_b64: str
    format: str = "png"
    size: str = "auto"
    model: Optional[str] = None
    url: Optional[str] = None
    storage_path: Optional[str] = None
    revised_prompt: Optional[str] = None

    @property
    def markdown(self) -> str:
        return f"![Generated image]({self.url})" if self.url else ""

    def to_record(self) -> Dict[str, Any]:
        return {
            "type": "image",
            "url": self.url,
            "storage_path": self.storage_path,
            "format": self.format,
            "size": self.size,
            "model": self.model,
        }


def format_from_mime(mime_type: Optional[str]) -> str:
    if not mime_type:
        return "png"
    lowered = mime_type.lower()
    if "jpeg" in lowered or "jpg" in lowered:
        return "jpeg"
    if "webp" in lowered:
        return "webp"
    return "png"


def extract_base64_image(result: Any) -> Optional[str]:
    """Pull a base64 payload out of the shapes the image tool reports results in."""
    if not result:
        return None
    if isinstance(result, str):
        return result
    if isinstance(result, list):
        first = result[0]
        if isinstance(first, str):
            return first
        if isinstance(first, dict) and isinstance(first.get("b64_json"), str):
            return first["b64_json"]
        return None
    if isinstance(result, dict):
        if isinstance(result.get("b64_json"), str):
            return result["b64_json"]
        data = result.get("data")
        if isinstance(data, list) and data and isinstance(data[0], dict) and data[0].get("b64_json"):
            return data[0]["b64_json"]
    return None


class MediaStore:
    """Stores generated images on local disk; they are served from ``base_url``."""

    def __init__(self, root: Path, base_url: str = "/media"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def save(self, image: GeneratedImage) -> GeneratedImage:
        try:
            data = base64.b64decode(image.data_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Image payload is not valid base64: {exc}") from exc
        ext = "jpg" if image.format == "jpeg" else image.format
        storage_path = f"generated-images/ai-{uuid.uuid4()}.{ext}"
        target = self.root / storage_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        image.storage_path = storage_path
        image.url = f"{self.base_url}/{storage_path}"
        return image


@dataclass(frozen=True)
class ImageOptions:
    size: str = "auto"
    quality: str = "auto"
    output_format: str = "png"
    background: str = "auto"
    compression: Optional[int] = None


def size_class(size: str) -> str:
    """Map an abstract size class or explicit WxH onto one of SIZE_CLASSES."""
    value = (size or "auto").strip().lower()
    if value in SIZE_CLASSES:
        return value
    match = _EXPLICIT_SIZE_RE.match(value)
    if not match:
        return "auto"
    width, height = int(match.group(1)), int(match.group(2))
    if width > height:
        return "landscape"
    if height > width:
        return "portrait"
    return "square"


@dataclass(frozen=True)
class ImageModelProfile:
    """How one image model wants its parameters shaped."""

    name: str
    sizes: Dict[str, str]
    qualities: Dict[str, str] = field(default_factory=dict)
    formats: Tuple[str, ...] = ("png",)
    supports_background: bool = False
    supports_compression: bool = False
    response_format: Optional[str] = None

    def resolve_size(self, size: str) -> str:
        if size in self.sizes.values():
            return size
        return self.sizes[size_class(size)]

    def resolve_format(self, output_format: str) -> str:
        return output_format if output_format in self.formats else self.formats[0]

    def build_params(self, prompt: str, options: ImageOptions) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": self.name,
            "prompt": prompt,
            "n": 1,
            "size": self.resolve_size(options.size),
        }
        quality = self.qualities.get(options.quality)
        if quality:
            params["quality"] = quality
        if len(self.formats) > 1:
            params["output_format"] = self.resolve_format(options.output_format)
        if self.supports_background and options.background != "auto":
            params["background"] = options.background
        output_format = self.resolve_format(options.output_format)
        if self.supports_compression and options.compression is not None and output_format in ("jpeg", "webp"):
            params["output_compression"] = options.compression
        if self.response_format:
            params["response_format"] = self.response_format
        return params


GPT_IMAGE_1 = ImageModelProfile(
    name="gpt-image-1",
    sizes={"auto": "auto", "square": "1024x1024", "landscape": "1536x1024", "portrait": "1024x1536"},
    qualities={"auto": "auto", "low": "low", "medium": "medium", "high": "high"},
    formats=("png", "jpeg", "webp"),
    supports_background=True,
    supports_compression=True,
)
DALL_E_3 = ImageModelProfile(
    name="dall-e-3",
    sizes={"auto": "1024x1024", "square": "1024x1024", "landscape": "1792x1024", "portrait": "1024x1792"},
    qualities={"auto": "standard", "low": "standard", "medium": "standard", "high": "hd"},
    response_format="url",
)
DALL_E_2 = ImageModelProfile(
    name="dall-e-2",
    sizes={"auto": "1024x1024", "square": "1024x1024", "landscape": "1024x1024", "portrait": "1024x1024"},
    response_format="url",
)
KNOWN_PROFILES = {p.name: p for p in (GPT_IMAGE_1, DALL_E_3, DALL_E_2)}


def profile_for(model: str) -> ImageModelProfile:
    profile = KNOWN_PROFILES.get(model)
    if profile is not None:
        return profile
    if model.startswith("gpt-image"):
        return replace(GPT_IMAGE_1, name=model)
    if model.startswith("dall-e-3"):
        return replace(DALL_E_3, name=model)
    raise ValueError(f"Unknown image model {model!r}")


def classify_image_error(exc: Exception) -> str:
    status = getattr(exc, "status_code", None)
    if status == 403:
        return "needs_verification"
    if status == 401:
        return "unauthenticated"
    if status == 429:
        return "rate_limited"
    if status is not None and status != 400:
        return "upstream_error"
    # Only a 400 or a status-less failure needs the message text to tell causes apart.
    text = str(exc).lower()
    if "organization" in text or "verif" in text:
        return "needs_verification"
    if "authentication" in text or "api key" in text:
        return "unauthenticated"
    if "rate limit" in text:
        return "rate_limited"
    if "content_policy" in text or "content policy" in text or "safety system" in text:
        return "content_policy"
    if status == 400:
        return "invalid_request"
    if isinstance(exc, UpstreamError):
        return "unreachable"
    return "upstream_error"


@dataclass(frozen=True)
class ImageAttempt:
    model: str
    error: str
    classification: str
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "error": self.error,
            "classification": self.classification,
            "status_code": self.status_code,
        }


@dataclass
class ImageCascadeResult:
    image: GeneratedImage
    model: str
    attempted: List[str]
    failures: List[ImageAttempt]

    @property
    def revised_prompt(self) -> Optional[str]:
        return self.image.revised_prompt


class ImageCascadeExhaustedError(RuntimeError):
    def __init__(self, failures: Sequence[ImageAttempt]) -> None:
        self.failures = list(failures)
        models = ", ".join(f"{a.model} ({a.classification})" for a in self.failures) or "none"
        super().__init__(f"All image generation models failed: {models}")

    @property
    def classification(self) -> str:
        found = {a.classification for a in self.failures}
        for name in CLASSIFICATION_PRIORITY:
            if name in found:
                return name
        return "upstream_error"

    @property
    def status_code(self) -> int:
        return CLASSIFICATION_STATUS.get(self.classification, 500)

    @property
    def public_message(self) -> str:
        return CLASSIFICATION_MESSAGES.get(self.classification, "All image generation models failed")


class ImageCascade:
    """Try each image model in order until one returns an image."""

    def __init__(self, client: Any, models: Sequence[str]):
        self.client = client
        self.profiles = [profile_for(m) for m in models]

    async def _normalize(self, profile: ImageModelProfile, data: Any, options: ImageOptions) -> GeneratedImage:
        if not isinstance(data, dict):
            raise ValueError("unexpected image response shape")
        items = data.get("data") or []
        first = items[0] if isinstance(items, list) and items and isinstance(items[0], dict) else {}
        b64 = first.get("b64_json")
        if not b64 and first.get("url"):
            b64 = await self.client.fetch_image_b64(first["url"])
        if not b64:
            raise ValueError("response contained no image data")
        output_format = data.get("output_format") or profile.resolve_format(options.output_format)
        return GeneratedImage(
            data_b64=b64,
            format=output_format,
            size=data.get("size") or profile.resolve_size(options.size),
            model=profile.name,
            revised_prompt=first.get("revised_prompt"),
        )

    async def generate(self, prompt: str, options: Optional[ImageOptions] = None, models: Optional[Sequence[str]] = None) -> ImageCascadeResult:
        opts = options or ImageOptions()
        profiles = [profile_for(m) for m in models] if models else self.profiles
        failures: List[ImageAttempt] = []
        attempted: List[str] = []
        for profile in profiles:
            attempted.append(profile.name)
            params = profile.build_params(prompt, opts)
            try:
                data = await self.client.generate_image(params)
                image = await self._normalize(profile, data, opts)
            except (UpstreamError, ValueError) as exc:
                classification = classify_image_error(exc)
                failures.append(
                    ImageAttempt(
                        model=profile.name,
                        error=str(exc),
                        classification=classification,
                        status_code=getattr(exc, "status_code", None),
                    )
                )
                logger.warning("Image model %s failed (%s): %s", profile.name, classification, exc)
                continue
            if failures:
                logger.info("Image generated by fallback model %s after %d failures", profile.name, len(failures))
            return ImageCascadeResult(image=image, model=profile.name, attempted=attempted, failures=failures)
        raise ImageCascadeExhaustedError(failures)
