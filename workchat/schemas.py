from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


AgentMode = Literal["prompt", "tools", "hybrid"]
MessageRole = Literal["user", "assistant", "system", "tool"]


class ChatMessage(BaseModel):
    role: MessageRole
    content: Optional[str] = None
    content_md: Optional[str] = None
    message_type: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return self.content_md or self.content or ""


class ContextDocument(BaseModel):
    id: str
    name: Optional[str] = None
    storage_path: Optional[str] = None
    original_filename: Optional[str] = None
    file_type: Optional[str] = None
    mime_type: Optional[str] = None


class ChatRequest(BaseModel):
    chat_id: Optional[str] = None
    project_id: Optional[str] = None
    agent_id: Optional[str] = None
    mode: Optional[AgentMode] = None
    image_urls: List[str] = Field(default_factory=list)
    selected_context: List[ContextDocument] = Field(default_factory=list)
    messages: List[ChatMessage] = Field(min_length=1)

    @model_validator(mode="after")
    def _last_message_is_user_turn(self) -> "ChatRequest":
        last = self.messages[-1]
        if last.role != "user":
            raise ValueError("The last message must be the new user turn.")
        if not last.text.strip():
            raise ValueError("The last message must not be empty.")
        return self

    @property
    def user_message(self) -> ChatMessage:
        return self.messages[-1]

    @property
    def history(self) -> List[ChatMessage]:
        return self.messages[:-1]


class AgentProfile(BaseModel):
    """Agent configuration fetched once per turn.

    ``mode`` is ``prompt`` (prompt-only, never call tools), ``tools``
    (tools-preferred) or ``hybrid`` (answer directly, call tools when needed).
    """

    id: str
    name: str
    department: str = "General"
    description: Optional[str] = None
    system_prompt: str = ""
    background_instructions: Optional[str] = None
    mode: AgentMode = "hybrid"
    allowed_tools: List[str] = Field(default_factory=list)
    is_active: bool = True

    model_config = {"frozen": True}


class UserIdentity(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    department: Optional[str] = None


class ImageGenerationRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    size: str = "auto"
    quality: Literal["auto", "low", "medium", "high"] = "auto"
    output_format: Literal["png", "jpeg", "webp"] = "png"
    background: Literal["auto", "transparent", "opaque"] = "auto"
    compression: Optional[int] = Field(default=None, ge=0, le=100)
    models: Optional[List[str]] = None

    @model_validator(mode="after")
    def _strip_prompt(self) -> "ImageGenerationRequest":
        if not self.prompt.strip():
            raise ValueError("Prompt is required.")
        return self


class AgentUpsert(BaseModel):
    id: Optional[str] = None
    name: str
    department: str = "General"
    description: Optional[str] = None
    system_prompt: str
    background_instructions: Optional[str] = None
    mode: AgentMode = "hybrid"
    allowed_tools: List[str] = Field(default_factory=list)
    is_active: bool = True
