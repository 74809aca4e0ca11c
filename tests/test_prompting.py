from workchat.config import AppSettings
from workchat.prompting import (
    MODE_BLOCKS,
    compose_system_prompt,
    conversation_title,
    validate_agent_profile,
)
from workchat.schemas import AgentProfile, UserIdentity


def make_agent(**overrides) -> AgentProfile:
    data = {
        "id": "agent-it",
        "name": "Helpdesk",
        "department": "IT",
        "system_prompt": "You resolve IT issues.",
        "background_instructions": "Laptops are managed by Intune.",
        "mode": "tools",
        "allowed_tools": ["raise_ticket"],
    }
    data.update(overrides)
    return AgentProfile(**data)


def test_agent_prompt_sections_in_order():
    settings = AppSettings()
    user = UserIdentity(id="u1", name="Sam Lee", email="sam@example.com", department="Engineering")
    prompt = compose_system_prompt(settings, make_agent(), user)
    identity = prompt.index("You are Helpdesk, an AI assistant specializing in IT. You resolve IT issues.")
    mode = prompt.index("# MODE: TOOLS")
    background = prompt.index("Background Context: Laptops are managed by Intune.")
    user_info = prompt.index("User Information:\nName: Sam Lee\nEmail: sam@example.com\nDepartment: Engineering")
    closing = prompt.index("# Core Guidelines")
    assert identity < mode < background < user_info < closing
    assert "search_tickets" in prompt
    assert settings.locale_hint in prompt


def test_default_persona_without_agent():
    settings = AppSettings(assistant_name="Emmie", organisation="EMtek")
    prompt = compose_system_prompt(settings)
    assert prompt.startswith("You are Emmie, EMtek's intelligent AI assistant.")
    assert MODE_BLOCKS["hybrid"] in prompt
    assert "User Information" not in prompt
    assert "**raise_ticket**" in prompt
    assert "Search EMtek's knowledge base" in prompt


def test_prompt_only_mode_block_and_project_context():
    prompt = compose_system_prompt(AppSettings(), make_agent(mode="prompt", background_instructions=None), None, "Apollo: site upgrade")
    assert "# MODE: PROMPT-ONLY" in prompt
    assert "Background Context" not in prompt
    assert "Project Context: Apollo: site upgrade" in prompt


def test_validate_agent_profile():
    assert validate_agent_profile(make_agent()) == []
    errors = validate_agent_profile(make_agent(system_prompt=" ", name=""))
    assert "System prompt is required" in errors
    assert "Agent name is required" in errors
    assert any("too long" in e for e in validate_agent_profile(make_agent(system_prompt="x" * 8001)))


def test_conversation_title():
    assert conversation_title("  How do I   reset my password?  ") == "How do I reset my password?"
    assert conversation_title("My laptop screen flickers badly", make_agent()) == "IT: laptop screen flickers"
    assert conversation_title("hi", make_agent()) == "IT Chat"
    long_title = conversation_title("word " * 30)
    assert len(long_title) == 50
    assert long_title.endswith("...")
