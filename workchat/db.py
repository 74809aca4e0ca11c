import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from .schemas import AgentProfile, UserIdentity


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


_TERM_RE = re.compile(r"[a-z0-9]{3,}")


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS users(
                    id TEXT PRIMARY KEY,
                    email TEXT,
                    name TEXT,
                    department TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS agents(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    department TEXT,
                    description TEXT,
                    system_prompt TEXT,
                    background_instructions TEXT,
                    mode TEXT,
                    allowed_tools_json TEXT,
                    is_active INTEGER DEFAULT 1,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS chats(
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    agent_id TEXT,
                    project_id TEXT,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id TEXT,
                    role TEXT,
                    content TEXT,
                    message_type TEXT,
                    model TEXT,
                    response_id TEXT,
                    attachments_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS tool_calls(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER,
                    chat_id TEXT,
                    item_id TEXT,
                    call_id TEXT,
                    name TEXT,
                    arguments TEXT,
                    status TEXT,
                    result TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS documents(
                    id TEXT PRIMARY KEY,
                    agent_id TEXT,
                    project_id TEXT,
                    category TEXT,
                    name TEXT,
                    file_type TEXT,
                    mime_type TEXT,
                    content TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS projects(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    description TEXT,
                    owner_id TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS tickets(
                    id TEXT PRIMARY KEY,
                    external_id TEXT,
                    category TEXT,
                    summary TEXT,
                    description TEXT,
                    priority TEXT,
                    status TEXT,
                    employee_email TEXT,
                    submitted INTEGER DEFAULT 0,
                    created_by TEXT,
                    chat_id TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS leave_requests(
                    id TEXT PRIMARY KEY,
                    employee_email TEXT,
                    employee_name TEXT,
                    leave_type TEXT,
                    start_date TEXT,
                    end_date TEXT,
                    notes TEXT,
                    notify_to TEXT,
                    status TEXT,
                    created_by TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, id);
                CREATE INDEX IF NOT EXISTS idx_tool_calls_message ON tool_calls(message_id);
                CREATE INDEX IF NOT EXISTS idx_documents_agent ON documents(agent_id);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Users

    async def ensure_user(self, user: UserIdentity) -> Dict[str, Any]:
        now = utc_now()
        await self.execute(
            """
            INSERT INTO users(id, email, name, department, created_at, updated_at) VALUES (?,?,?,?,?,?)
            ON CONFLICT(id) DO UPDATE SET
                email=COALESCE(excluded.email, users.email),
                name=COALESCE(excluded.name, users.name),
                department=COALESCE(excluded.department, users.department),
                updated_at=excluded.updated_at
            """,
            (user.id, user.email, user.name, user.department, now, now),
        )
        row = await self.fetchone("SELECT * FROM users WHERE id=?", (user.id,))
        return dict(row) if row else {"id": user.id}

    # Agents

    async def upsert_agent(self, agent: Dict[str, Any]) -> AgentProfile:
        agent_id = agent.get("id") or str(uuid.uuid4())
        now = utc_now()
        await self.execute(
            """
            INSERT INTO agents(id, name, department, description, system_prompt, background_instructions,
                mode, allowed_tools_json, is_active, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name,
                department=excluded.department,
                description=excluded.description,
                system_prompt=excluded.system_prompt,
                background_instructions=excluded.background_instructions,
                mode=excluded.mode,
                allowed_tools_json=excluded.allowed_tools_json,
                is_active=excluded.is_active,
                updated_at=excluded.updated_at
            """,
            (
                agent_id,
                agent.get("name"),
                agent.get("department") or "General",
                agent.get("description"),
                agent.get("system_prompt") or "",
                agent.get("background_instructions"),
                agent.get("mode") or "hybrid",
                _json_dumps(list(agent.get("allowed_tools") or [])),
                1 if agent.get("is_active", True) else 0,
                now,
                now,
            ),
        )
        profile = await self.get_agent(agent_id)
        if profile is None:
            raise LookupError(f"Agent {agent_id} was not stored")
        return profile

    @staticmethod
    def _agent_from_row(row: aiosqlite.Row) -> AgentProfile:
        return AgentProfile(
            id=row["id"],
            name=row["name"] or "",
            department=row["department"] or "General",
            description=row["description"],
            system_prompt=row["system_prompt"] or "",
            background_instructions=row["background_instructions"],
            mode=row["mode"] or "hybrid",
            allowed_tools=_json_loads(row["allowed_tools_json"], []),
            is_active=bool(row["is_active"]),
        )

    async def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        row = await self.fetchone("SELECT * FROM agents WHERE id=?", (agent_id,))
        return self._agent_from_row(row) if row else None

    async def list_agents(self, active_only: bool = True) -> List[AgentProfile]:
        query = "SELECT * FROM agents"
        if active_only:
            query += " WHERE is_active=1"
        rows = await self.fetchall(query + " ORDER BY department, name")
        return [self._agent_from_row(r) for r in rows]

    # Chats and messages

    async def get_chat(self, chat_id: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT * FROM chats WHERE id=?", (chat_id,))
        return dict(row) if row else None

    async def create_or_get_chat(
        self,
        chat_id: Optional[str],
        user_id: str,
        agent_id: Optional[str] = None,
        project_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        if chat_id:
            existing = await self.get_chat(chat_id)
            if existing:
                if existing.get("user_id") != user_id:
                    raise PermissionError("Chat belongs to another user.")
                return existing
        new_id = chat_id or str(uuid.uuid4())
        now = utc_now()
        await self.execute(
            "INSERT INTO chats(id, user_id, agent_id, project_id, title, created_at, updated_at) VALUES (?,?,?,?,?,?,?)",
            (new_id, user_id, agent_id, project_id, title or "New chat", now, now),
        )
        return {
            "id": new_id,
            "user_id": user_id,
            "agent_id": agent_id,
            "project_id": project_id,
            "title": title or "New chat",
            "created_at": now,
            "updated_at": now,
        }

    async def save_user_message(self, chat_id: str, content: str, image_urls: Iterable[str] = ()) -> int:
        attachments = [{"type": "image", "url": url, "alt": "User uploaded image"} for url in image_urls]
        message_type = "mixed" if attachments else "text"
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO messages(chat_id, role, content, message_type, attachments_json, created_at) VALUES (?,?,?,?,?,?)",
                (chat_id, "user", content, message_type, _json_dumps(attachments), now),
            )
            await db.execute("UPDATE chats SET updated_at=? WHERE id=?", (now, chat_id))
            await db.commit()
            return int(cursor.lastrowid)

    async def save_assistant_message(
        self,
        chat_id: str,
        content: str,
        images: Iterable[Dict[str, Any]] = (),
        tool_calls: Iterable[Dict[str, Any]] = (),
        model: Optional[str] = None,
        response_id: Optional[str] = None,
    ) -> int:
        """Write the assistant message and its tool-call history in one transaction."""
        attachments = list(images)
        calls = list(tool_calls)
        if attachments and content.strip():
            message_type = "mixed"
        elif attachments:
            message_type = "image"
        else:
            message_type = "text"
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            try:
                cursor = await db.execute(
                    "INSERT INTO messages(chat_id, role, content, message_type, model, response_id, attachments_json, created_at) "
                    "VALUES (?,?,?,?,?,?,?,?)",
                    (chat_id, "assistant", content, message_type, model, response_id, _json_dumps(attachments), now),
                )
                message_id = int(cursor.lastrowid)
                await db.executemany(
                    "INSERT INTO tool_calls(message_id, chat_id, item_id, call_id, name, arguments, status, result, created_at) "
                    "VALUES (?,?,?,?,?,?,?,?,?)",
                    [
                        (
                            message_id,
                            chat_id,
                            call.get("id"),
                            call.get("call_id"),
                            call.get("name"),
                            call.get("arguments"),
                            call.get("status"),
                            call.get("result"),
                            now,
                        )
                        for call in calls
                    ],
                )
                await db.execute("UPDATE chats SET updated_at=? WHERE id=?", (now, chat_id))
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return message_id

    async def list_messages(self, chat_id: str) -> List[Dict[str, Any]]:
        rows = await self.fetchall("SELECT * FROM messages WHERE chat_id=? ORDER BY id ASC", (chat_id,))
        call_rows = await self.fetchall("SELECT * FROM tool_calls WHERE chat_id=? ORDER BY id ASC", (chat_id,))
        calls_by_message: Dict[int, List[Dict[str, Any]]] = {}
        for row in call_rows:
            calls_by_message.setdefault(row["message_id"], []).append(
                {
                    "id": row["item_id"],
                    "call_id": row["call_id"],
                    "name": row["name"],
                    "arguments": row["arguments"],
                    "status": row["status"],
                    "result": row["result"],
                }
            )
        messages: List[Dict[str, Any]] = []
        for row in rows:
            messages.append(
                {
                    "id": row["id"],
                    "chat_id": row["chat_id"],
                    "role": row["role"],
                    "content": row["content"],
                    "message_type": row["message_type"],
                    "model": row["model"],
                    "response_id": row["response_id"],
                    "attachments": _json_loads(row["attachments_json"], []),
                    "tool_calls": calls_by_message.get(row["id"], []),
                    "created_at": row["created_at"],
                }
            )
        return messages

    # Documents

    async def add_document(
        self,
        name: str,
        content: str,
        agent_id: Optional[str] = None,
        project_id: Optional[str] = None,
        category: str = "general",
        file_type: str = "text",
        mime_type: str = "text/plain",
        document_id: Optional[str] = None,
    ) -> str:
        doc_id = document_id or str(uuid.uuid4())
        await self.execute(
            "INSERT INTO documents(id, agent_id, project_id, category, name, file_type, mime_type, content, created_at) "
            "VALUES (?,?,?,?,?,?,?,?,?)",
            (doc_id, agent_id, project_id, category, name, file_type, mime_type, content, utc_now()),
        )
        return doc_id

    async def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT * FROM documents WHERE id=?", (document_id,))
        return dict(row) if row else None

    async def search_documents(
        self,
        query: str,
        agent_id: Optional[str] = None,
        project_id: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 5,
    ) -> List[Dict[str, Any]]:
        """Keyword-ranked document lookup over stored text."""
        terms = sorted(set(_TERM_RE.findall(query.lower())))
        if not terms:
            return []
        clauses: List[str] = []
        params: List[Any] = []
        if agent_id:
            clauses.append("agent_id=?")
            params.append(agent_id)
        if project_id:
            clauses.append("project_id=?")
            params.append(project_id)
        if category:
            clauses.append("category=?")
            params.append(category)
        term_clause = " OR ".join("LOWER(content) LIKE ?" for _ in terms)
        clauses.append(f"({term_clause})")
        params.extend(f"%{t}%" for t in terms)
        rows = await self.fetchall(
            f"SELECT id, name, category, content FROM documents WHERE {' AND '.join(clauses)}",
            tuple(params),
        )
        scored = []
        for row in rows:
            text = (row["content"] or "").lower()
            score = sum(text.count(t) for t in terms)
            scored.append((score, row["name"] or "", dict(row)))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [{**doc, "score": score} for score, _, doc in scored[:limit]]

    # Projects

    async def add_project(self, name: str, description: str = "", owner_id: Optional[str] = None, project_id: Optional[str] = None) -> str:
        pid = project_id or str(uuid.uuid4())
        now = utc_now()
        await self.execute(
            "INSERT INTO projects(id, name, description, owner_id, created_at, updated_at) VALUES (?,?,?,?,?,?)",
            (pid, name, description, owner_id, now, now),
        )
        return pid

    async def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone(
            "SELECT id, name, description, created_at, updated_at FROM projects WHERE id=?", (project_id,)
        )
        return dict(row) if row else None

    # Tickets and leave

    async def add_ticket(
        self,
        ticket_id: str,
        category: str,
        summary: str,
        description: str,
        priority: str,
        employee_email: str,
        submitted: bool,
        external_id: Optional[str] = None,
        created_by: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> None:
        await self.execute(
            "INSERT INTO tickets(id, external_id, category, summary, description, priority, status, employee_email, "
            "submitted, created_by, chat_id, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
            (
                ticket_id,
                external_id,
                category,
                summary,
                description,
                priority,
                "open",
                employee_email,
                1 if submitted else 0,
                created_by,
                chat_id,
                utc_now(),
            ),
        )

    async def search_tickets(self, status: Optional[str] = None, priority: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status=?")
            params.append(status)
        if priority:
            clauses.append("priority=?")
            params.append(priority)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, int(limit)))
        rows = await self.fetchall(
            f"SELECT id, external_id, category, summary, priority, status, employee_email, created_at FROM tickets{where} "
            "ORDER BY created_at DESC LIMIT ?",
            tuple(params),
        )
        return [dict(r) for r in rows]

    async def add_leave_request(
        self,
        request_id: str,
        employee_email: str,
        employee_name: str,
        leave_type: str,
        start_date: str,
        end_date: str,
        notes: Optional[str],
        notify_to: Optional[str],
        created_by: Optional[str] = None,
    ) -> None:
        await self.execute(
            "INSERT INTO leave_requests(id, employee_email, employee_name, leave_type, start_date, end_date, notes, "
            "notify_to, status, created_by, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            (
                request_id,
                employee_email,
                employee_name,
                leave_type,
                start_date,
                end_date,
                notes,
                notify_to,
                "submitted",
                created_by,
                utc_now(),
            ),
        )
