"""Function tools the model can call, registered into a ``ToolRegistry``.

Handlers receive parsed arguments, the request-scoped ``ToolContext`` and a
``ToolDeps`` bundle; they never reach for module-level clients.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .db import Database, utc_now
from .ticketing import TicketingClient
from .tools import ToolContext, ToolRegistry, ToolResult


logger = logging.getLogger("uvicorn.error")

SNIPPET_CHARS = 1500
TICKET_CATEGORIES = ["IT", "HR", "Engineering", "General"]
TICKET_PRIORITIES = ["low", "medium", "high", "urgent"]
TICKET_STATUSES = ["open", "in_progress", "resolved", "closed"]
LEAVE_TYPES = ["annual", "sick", "personal", "unpaid", "parental"]


@dataclass
class ToolDeps:
    db: Database
    ticketing: TicketingClient
    hr_email_to: Optional[str] = None


def _stamp_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:4].upper()}"


def _query_from(args: Dict[str, Any], key: str = "query") -> str:
    return str(args.get(key) or args.get("raw") or "").strip()


def _format_hits(hits: List[Dict[str, Any]], label: str) -> str:
    blocks = []
    for index, hit in enumerate(hits, start=1):
        content = (hit.get("content") or "").strip()
        if len(content) > SNIPPET_CHARS:
            content = content[:SNIPPET_CHARS].rstrip() + "..."
        name = hit.get("name") or hit.get("id")
        blocks.append(f"**{label} {index}: {name}**\n{content}")
    return "\n\n".join(blocks)


async def raise_ticket(args: Dict[str, Any], ctx: ToolContext, deps: ToolDeps) -> ToolResult:
    category = str(args.get("category") or "General")
    summary = str(args.get("summary") or "").strip()[:100]
    description = str(args.get("description") or args.get("raw") or "").strip()
    priority = str(args.get("priority") or "medium")
    employee_email = str(args.get("employeeEmail") or ctx.user_email or "")
    if not summary and not description:
        return ToolResult.fail("Failed to create ticket: a summary or description is required")

    if not deps.ticketing.enabled:
        ticket_id = _stamp_id("TICKET")
        await deps.db.add_ticket(
            ticket_id,
            category,
            summary,
            description,
            priority,
            employee_email,
            submitted=False,
            created_by=ctx.user_id,
            chat_id=ctx.conversation_id,
        )
        logger.warning("Ticketing integration not configured; ticket %s recorded locally", ticket_id)
        return ToolResult.ok(
            f"## Ticket Created (Local)\n\n**Ticket ID:** {ticket_id}\n**Category:** {category}\n"
            f"**Priority:** {priority}\n**Summary:** {summary}\n\n"
            "Note: the ticketing system integration is not configured. This ticket has been recorded "
            "locally but not submitted to the ticketing system."
        )

    payload = {
        "category": category,
        "summary": summary,
        "description": description,
        "priority": priority,
        "employeeEmail": employee_email,
        "timestamp": utc_now(),
        "source": "workchat",
        "userContext": {"name": ctx.user_name, "email": ctx.user_email, "department": ctx.department},
    }
    response = await deps.ticketing.create_ticket(payload)
    if response.get("error"):
        detail = response.get("detail") or response.get("error")
        status = response.get("status_code")
        reason = f"ticketing API returned {status}: {detail}" if status else str(detail)
        return ToolResult.fail(f"Failed to create ticket: {reason}")
    external_id = str(response.get("ticketId") or response.get("id") or response.get("ticket_id") or "PENDING")
    await deps.db.add_ticket(
        _stamp_id("TICKET"),
        category,
        summary,
        description,
        priority,
        employee_email,
        submitted=True,
        external_id=external_id,
        created_by=ctx.user_id,
        chat_id=ctx.conversation_id,
    )
    return ToolResult.ok(
        f"## Ticket Created Successfully\n\n**Ticket ID:** {external_id}\n**Category:** {category}\n"
        f"**Priority:** {priority}\n**Status:** Submitted\n\n"
        f"Your ticket has been created and assigned to the {category} team. "
        f"Updates will be sent to {employee_email}."
    )


async def log_leave_request(args: Dict[str, Any], ctx: ToolContext, deps: ToolDeps) -> ToolResult:
    request_id = _stamp_id("LEAVE")
    employee_email = str(args.get("employeeEmail") or ctx.user_email or "")
    employee_name = str(args.get("employeeName") or ctx.user_name or "")
    leave_type = str(args.get("leaveType") or "annual")
    start_date = str(args.get("startDate") or "")
    end_date = str(args.get("endDate") or "")
    notes = args.get("notes")
    if leave_type not in LEAVE_TYPES:
        return ToolResult.fail(f"Failed to log leave request: unknown leave type {leave_type!r}")
    await deps.db.add_leave_request(
        request_id,
        employee_email,
        employee_name,
        leave_type,
        start_date,
        end_date,
        notes,
        deps.hr_email_to,
        created_by=ctx.user_id,
    )
    logger.info(
        "Leave request %s for %s (%s) %s to %s; notify %s",
        request_id,
        employee_name,
        leave_type,
        start_date,
        end_date,
        deps.hr_email_to or "<unset>",
    )
    recipient = f" ({deps.hr_email_to})" if deps.hr_email_to else ""
    return ToolResult.ok(
        f"## Leave Request Submitted\n\n**Request ID:** {request_id}\n**Leave Type:** {leave_type}\n"
        f"**Period:** {start_date} to {end_date}\n\n"
        f"Your leave request has been submitted to HR{recipient}. "
        "You will receive confirmation once your manager has reviewed it."
    )


async def search_hr_policies(args: Dict[str, Any], ctx: ToolContext, deps: ToolDeps) -> ToolResult:
    query = _query_from(args)
    hits = await deps.db.search_documents(query, category="hr")
    if not hits:
        contact = f" at {deps.hr_email_to}" if deps.hr_email_to else ""
        return ToolResult.ok(
            f"No HR policies found matching your query. For specific policy questions, please contact HR{contact}."
        )
    return ToolResult.ok(f"## HR Policy Search Results\n\n{_format_hits(hits, 'Policy')}")


async def search_technical_docs(args: Dict[str, Any], ctx: ToolContext, deps: ToolDeps) -> ToolResult:
    query = _query_from(args)
    hits = await deps.db.search_documents(query, category="technical")
    if not hits:
        return ToolResult.ok("No technical documentation found matching your query.")
    return ToolResult.ok(f"## Technical Documentation Search Results\n\n{_format_hits(hits, 'Document')}")


async def document_search(args: Dict[str, Any], ctx: ToolContext, deps: ToolDeps) -> ToolResult:
    if not ctx.agent_id:
        return ToolResult.fail("Agent ID required for document search")
    hits = await deps.db.search_documents(_query_from(args), agent_id=ctx.agent_id)
    if not hits:
        return ToolResult.ok("No relevant documents found for your query.")
    return ToolResult.ok(f"## Document Search Results\n\n{_format_hits(hits, 'Result')}")


async def vision_analysis(args: Dict[str, Any], ctx: ToolContext, deps: ToolDeps) -> ToolResult:
    request = _query_from(args, "analysisRequest")
    return ToolResult.ok(
        f"## Vision Analysis\n\nAnalysis requested for: {request}\n\n"
        "Inspect the images attached to this conversation directly; they are already part of your input."
    )


async def project_knowledge(args: Dict[str, Any], ctx: ToolContext, deps: ToolDeps) -> ToolResult:
    project_id = str(args.get("projectId") or ctx.project_id or "")
    project = await deps.db.get_project(project_id) if project_id else None
    if not project:
        return ToolResult.fail("Project not found")
    query = _query_from(args)
    hits = await deps.db.search_documents(query, project_id=project_id)
    if not hits:
        return ToolResult.ok(f'## Project Knowledge Search\n\nNo documents in project "{project["name"]}" matched: {query}')
    return ToolResult.ok(
        f'## Project Knowledge Search\n\nResults from project "{project["name"]}":\n\n{_format_hits(hits, "Document")}'
    )


async def lookup_project(args: Dict[str, Any], ctx: ToolContext, deps: ToolDeps) -> ToolResult:
    project_id = str(args.get("id") or args.get("raw") or "").strip()
    project = await deps.db.get_project(project_id) if project_id else None
    if not project:
        return ToolResult.fail("Project not found")
    return ToolResult.ok(project)


async def search_tickets(args: Dict[str, Any], ctx: ToolContext, deps: ToolDeps) -> ToolResult:
    status = args.get("status")
    priority = args.get("priority")
    try:
        limit = int(args.get("limit") or 10)
    except (TypeError, ValueError):
        limit = 10
    tickets = await deps.db.search_tickets(status=status, priority=priority, limit=limit)
    summary = f'Found {len(tickets)} tickets with status "{status}"'
    if priority:
        summary += f' and priority "{priority}"'
    return ToolResult.ok({"count": len(tickets), "tickets": tickets, "summary": summary})


def _query_schema(description: str) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {"query": {"type": "string", "description": description}},
        "required": ["query"],
    }


def default_registry(organisation: str = "EMtek") -> ToolRegistry:
    registry = ToolRegistry()
    registry.tool(
        "raise_ticket",
        f"Create an IT or HR support ticket in {organisation}'s ticketing system. Use this when the user asks to "
        "log an issue, raise a ticket, or needs support assistance.",
        {
            "type": "object",
            "properties": {
                "category": {"type": "string", "enum": TICKET_CATEGORIES, "description": "Ticket category/department"},
                "summary": {"type": "string", "description": "Brief ticket summary (max 100 chars)"},
                "description": {"type": "string", "description": "Detailed description of the issue or request"},
                "priority": {
                    "type": "string",
                    "enum": TICKET_PRIORITIES,
                    "default": "medium",
                    "description": "Ticket priority level",
                },
                "employeeEmail": {"type": "string", "description": "Employee email for ticket tracking"},
            },
            "required": ["category", "summary", "description", "employeeEmail"],
        },
    )(raise_ticket)
    registry.tool(
        "log_leave_request",
        "Submit a leave request to HR. Use this when an employee wants to request time off.",
        {
            "type": "object",
            "properties": {
                "employeeEmail": {"type": "string", "description": "Employee's email address"},
                "employeeName": {"type": "string", "description": "Employee's full name"},
                "leaveType": {"type": "string", "enum": LEAVE_TYPES, "description": "Type of leave being requested"},
                "startDate": {"type": "string", "description": "Leave start date in YYYY-MM-DD format"},
                "endDate": {"type": "string", "description": "Leave end date in YYYY-MM-DD format"},
                "notes": {"type": "string", "description": "Additional notes or reason for leave"},
            },
            "required": ["employeeEmail", "employeeName", "leaveType", "startDate", "endDate"],
        },
    )(log_leave_request)
    registry.tool(
        "search_hr_policies",
        f"Search HR policies, procedures, and employment guidelines from {organisation}'s knowledge base.",
        _query_schema("The search query for HR policy information"),
    )(search_hr_policies)
    registry.tool(
        "search_technical_docs",
        "Search engineering standards, technical specifications, CAD guidelines, and drafting documentation.",
        _query_schema("The search query for technical documentation"),
    )(search_technical_docs)
    registry.tool(
        "document_search",
        f"Search the {organisation} knowledge base for IT procedures, policies, troubleshooting guides, and "
        "documentation. Pass your search query as plain text.",
        _query_schema("The search query to find relevant knowledge base content"),
    )(document_search)
    registry.tool(
        "vision_analysis",
        "Analyse uploaded images for IT troubleshooting including screenshots, error messages, hardware photos, "
        "network diagrams, and system displays.",
        {
            "type": "object",
            "properties": {
                "analysisRequest": {
                    "type": "string",
                    "description": "Description of what should be analysed in the uploaded images",
                }
            },
            "required": ["analysisRequest"],
        },
    )(vision_analysis)
    registry.tool(
        "project_knowledge",
        "Search project-specific documentation and related technical information.",
        {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query for project-specific information"},
                "projectId": {"type": "string", "description": "The project ID to search within"},
            },
            "required": ["query", "projectId"],
        },
    )(project_knowledge)
    registry.tool(
        "lookup_project",
        "Retrieve project details by project ID.",
        {
            "type": "object",
            "properties": {"id": {"type": "string", "description": "The project ID to look up"}},
            "required": ["id"],
        },
    )(lookup_project)
    registry.tool(
        "search_tickets",
        "Find IT support tickets by status and priority.",
        {
            "type": "object",
            "properties": {
                "status": {"type": "string", "enum": TICKET_STATUSES, "description": "Ticket status to filter by"},
                "priority": {"type": "string", "enum": TICKET_PRIORITIES, "description": "Ticket priority level"},
                "limit": {"type": "number", "default": 10, "description": "Maximum number of tickets to return"},
            },
            "required": ["status"],
        },
    )(search_tickets)
    return registry
