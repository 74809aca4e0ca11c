import re
from typing import Any, List, Optional

from .schemas import AgentProfile, UserIdentity


SYSTEM_PROMPT_MAX_CHARS = 8000
TITLE_MAX_CHARS = 50

MODE_BLOCKS = {
    "prompt": (
        "# MODE: PROMPT-ONLY\n"
        "You are running in prompt-only mode. Do NOT call tools. Answer from your background knowledge "
        "and the provided context only, and give complete, well-reasoned responses."
    ),
    "tools": (
        "# MODE: TOOLS\n"
        "You are running in tools mode. Prefer calling tools for actions and data lookup. Use tools to:\n"
        "- Access up-to-date information\n"
        "- Perform actions (raise tickets, submit requests)\n"
        "- Search knowledge bases and documentation\n"
        "After calling tools, interpret the results and explain them to the user."
    ),
    "hybrid": (
        "# MODE: HYBRID\n"
        "You are running in hybrid mode. Balance your background knowledge with tool usage:\n"
        "- Use your knowledge for general questions and explanations\n"
        "- Call tools when you need current data, need to perform an action, or need specific documentation\n"
        "- Combine both approaches when that gives the most useful answer"
    ),
}

GUIDELINES_TEMPLATE = """# Core Guidelines
- Provide clear, step-by-step guidance for technical issues
- {locale_hint}
- Format responses with headings, bullet points, and code blocks where they help
- Reference uploaded images and earlier conversation context when relevant
- Prioritise safety and warn about risky operations
- Suggest alternatives for potentially harmful actions"""

AGENT_TOOL_CATALOGUE = [
    ("document_search", "Search {org}'s knowledge base for procedures and policies"),
    ("vision_analysis", "Analyse uploaded screenshots and images for troubleshooting"),
    ("project_knowledge", "Search project-specific documentation and chat history"),
    ("search_tickets", "Find and track IT support tickets"),
    ("image_generation", "Create diagrams, illustrations, and visual aids"),
]

DEFAULT_TOOL_CATALOGUE = [
    ("document_search", "Search {org}'s knowledge base for procedures and policies"),
    ("vision_analysis", "Analyse uploaded screenshots and images for troubleshooting"),
    ("project_knowledge", "Search project-specific documentation and chat history"),
    ("image_generation", "Create diagrams, illustrations, and visual aids"),
    ("web_search", "Find up-to-date information from the web"),
    ("code_interpreter", "Execute Python code for debugging and analysis"),
    ("raise_ticket", "Create IT/HR support tickets"),
    ("log_leave_request", "Submit leave requests (HR)"),
    ("search_hr_policies", "Search HR policies and procedures"),
]

TOOL_USE_NOTE = (
    "Always briefly explain why you're using a tool before calling it, "
    "and integrate the results naturally into your response."
)

DEFAULT_PERSONA = (
    "You are {name}, {org}'s intelligent AI assistant. You help {org} staff with IT support, "
    "technical guidance, and general assistance.\n\n"
    "You have access to {org}'s knowledge base and can help with company procedures, IT troubleshooting, "
    "and technical questions. Always provide clear, helpful guidance while prioritising safety and security."
)


def mode_block(mode: Optional[str]) -> str:
    return MODE_BLOCKS.get(mode or "hybrid", MODE_BLOCKS["hybrid"])


def user_block(user: Optional[UserIdentity]) -> str:
    if user is None:
        return ""
    lines = []
    if user.name:
        lines.append(f"Name: {user.name}")
    if user.email:
        lines.append(f"Email: {user.email}")
    if user.department:
        lines.append(f"Department: {user.department}")
    if not lines:
        return ""
    return "User Information:\n" + "\n".join(lines)


def closing_block(settings: Any, catalogue: List[tuple]) -> str:
    org = settings.organisation
    tools = "\n".join(f"- **{name}**: {desc.format(org=org)}" for name, desc in catalogue)
    return (
        GUIDELINES_TEMPLATE.format(locale_hint=settings.locale_hint)
        + "\n\n# Available Tools\nYou have access to specialised tools for:\n"
        + tools
        + "\n\n"
        + TOOL_USE_NOTE
    )


def compose_system_prompt(
    settings: Any,
    agent: Optional[AgentProfile] = None,
    user: Optional[UserIdentity] = None,
    project_context: Optional[str] = None,
) -> str:
    """Build the instruction text for a turn.

    With an agent the sections run: identity sentence and custom prompt, mode
    block, background instructions, user block, project context, closing
    guidelines. Without one the configured default persona runs in hybrid mode
    with the full default tool catalogue.
    """
    sections: List[str] = []
    if agent is not None:
        identity = f"You are {agent.name}, an AI assistant specializing in {agent.department}."
        sections.append(f"{identity} {agent.system_prompt}".strip())
        sections.append(mode_block(agent.mode))
        if agent.background_instructions:
            sections.append(f"Background Context: {agent.background_instructions}")
        catalogue = AGENT_TOOL_CATALOGUE
    else:
        sections.append(DEFAULT_PERSONA.format(name=settings.assistant_name, org=settings.organisation))
        sections.append(mode_block("hybrid"))
        catalogue = DEFAULT_TOOL_CATALOGUE
    block = user_block(user)
    if block:
        sections.append(block)
    if project_context:
        sections.append(f"Project Context: {project_context}")
    sections.append(closing_block(settings, catalogue))
    return "\n\n".join(sections)


def validate_agent_profile(profile: Any) -> List[str]:
    errors: List[str] = []
    if not (profile.system_prompt or "").strip():
        errors.append("System prompt is required")
    if not (profile.name or "").strip():
        errors.append("Agent name is required")
    if len(profile.system_prompt or "") > SYSTEM_PROMPT_MAX_CHARS:
        errors.append(f"System prompt is too long (max {SYSTEM_PROMPT_MAX_CHARS} characters)")
    return errors


def conversation_title(text: str, agent: Optional[AgentProfile] = None, max_length: int = TITLE_MAX_CHARS) -> str:
    if agent is None:
        seed = " ".join(text.split())
        title = seed or "New chat"
    else:
        words = [w for w in re.sub(r"[^\w\s]", " ", text.lower()).split() if len(w) > 3][:3]
        title = f"{agent.department}: {' '.join(words)}" if words else f"{agent.department} Chat"
    if len(title) > max_length:
        title = title[: max_length - 3].rstrip() + "..."
    return title
