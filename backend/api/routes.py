"""FastAPI endpoints for the chat service.

POST /chat - quota pre-flight, then stream one turn via SSE
GET/PATCH/DELETE /chat/session - load, rename/close, delete one conversation
GET /chat/sessions - conversation history list
GET /chat/agents - selectable personas
GET /chat/usage - today's usage for the usage bar
GET /chat/chunks/{chunk_id} - full text of a cited chunk
GET /health - component health check
"""

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from starlette.responses import JSONResponse

from backend.agent.agents import list_active_agents, resolve_agent
from backend.api.schemas import (
    AgentInfo,
    AgentsResponse,
    ChatRequest,
    ChunkResponse,
    LimitInfo,
    SessionResponse,
    SessionsResponse,
    SessionSummary,
    SessionUpdateRequest,
    UsageStatsResponse,
)
from backend.core.chat_sessions import (
    create_chat_session,
    delete_session,
    derive_title,
    get_active_session,
    get_chat_session,
    get_session_history,
    list_sessions,
    update_session,
)
from backend.core.database import ChatSessionRow, as_utc, get_session
from backend.core.documents import DocumentStoreError
from backend.core.usage_limits import check_token_limit, estimate_request_tokens, get_user_usage_stats

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity as forwarded by the CMS front end."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@router.post("/chat")
def chat(request: ChatRequest, req: Request, user_id: str = Depends(get_user_id)):
    """Check the quota, resolve conversation and agent, then stream the turn."""
    logger.info("chat.request", user_id=user_id, msg_len=len(request.message),
                chat_id=request.chat_id, agent=request.agent_slug)

    check = check_token_limit(user_id, estimate_request_tokens(request.message))
    if check.check_failed:
        return _error(503, check.message or "Error checking token limit")
    if not check.allowed:
        logger.info("chat.limit_exceeded", user_id=user_id, used=check.used, limit=check.limit)
        limit_info = LimitInfo(
            limit=check.limit, used=check.used, remaining=check.remaining, reset_at=check.reset_at
        )
        return _error(429, check.message or "Daily token limit exceeded", limit_info=limit_info.model_dump())

    chat_session = None
    agent_slug = request.agent_slug
    if request.chat_id:
        chat_session = get_chat_session(request.chat_id, user_id)
        if chat_session is None:
            return _error(404, "Conversation not found")
        agent_slug = agent_slug or chat_session.agent_slug

    agent = resolve_agent(agent_slug)
    if agent is None and request.agent_slug:
        return _error(404, f"Agent '{request.agent_slug}' not found")
    if agent is None:
        agent = resolve_agent(None)

    if chat_session is None:
        chat_session = create_chat_session(
            user_id, agent_slug=agent.slug if agent else None, title=derive_title(request.message)
        )

    pipeline = req.app.state.pipeline
    return StreamingResponse(
        pipeline.stream(user_id, chat_session.conversation_id, request, agent),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/chat/session", response_model=SessionResponse)
def get_chat_session_route(
    active: bool = False,
    conversation_id: str | None = Query(default=None, alias="conversationId"),
    user_id: str = Depends(get_user_id),
):
    """Load the active conversation, or one conversation by id."""
    if active:
        row = get_active_session(user_id)
    elif conversation_id:
        row = get_chat_session(conversation_id, user_id)
    else:
        return _error(400, "Pass active=true or conversationId")

    if row is None:
        return _error(404, "No active session" if active else "Conversation not found")
    return _session_response(row)


@router.patch("/chat/session")
def patch_chat_session(
    update: SessionUpdateRequest,
    conversation_id: str = Query(..., alias="conversationId"),
    user_id: str = Depends(get_user_id),
):
    """Rename and/or close a conversation."""
    if update.title is None and update.status is None:
        return _error(400, "Nothing to update")
    title = update.title.strip() if update.title is not None else None
    if title == "":
        return _error(400, "Title must not be blank")
    if not update_session(conversation_id, user_id, title=title, status=update.status):
        return _error(404, "Conversation not found")
    return {"success": True}


@router.delete("/chat/session")
def delete_chat_session(
    conversation_id: str = Query(..., alias="conversationId"),
    user_id: str = Depends(get_user_id),
):
    """Remove a conversation from the user's history."""
    if not delete_session(conversation_id, user_id):
        return _error(404, "Conversation not found")
    return {"success": True}


@router.get("/chat/sessions", response_model=SessionsResponse)
def list_chat_sessions(user_id: str = Depends(get_user_id)):
    rows = list_sessions(user_id)
    return SessionsResponse(sessions=[
        SessionSummary(
            conversation_id=r.conversation_id,
            title=r.title,
            last_activity=as_utc(r.last_activity),
            status=r.status,
        )
        for r in rows
    ])


@router.get("/chat/agents", response_model=AgentsResponse)
def list_agents():
    return AgentsResponse(agents=[AgentInfo(slug=a.slug, name=a.name) for a in list_active_agents()])


@router.get("/chat/usage", response_model=UsageStatsResponse)
def usage_stats(user_id: str = Depends(get_user_id)):
    stats = get_user_usage_stats(user_id)
    return UsageStatsResponse(
        limit=stats.limit,
        used=stats.used,
        remaining=stats.remaining,
        percentage=stats.percentage,
        reset_at=stats.reset_at,
    )


@router.get("/chat/chunks/{chunk_id}", response_model=ChunkResponse)
def get_chunk(chunk_id: str, req: Request, user_id: str = Depends(get_user_id)):
    """Full chunk text for a source whose content was not kept in history."""
    try:
        content = req.app.state.documents.get_chunk_content(chunk_id)
    except DocumentStoreError as e:
        logger.error("chunk.lookup_failed", chunk_id=chunk_id, error=str(e))
        return _error(503, "Document store unavailable")
    if content is None:
        return _error(404, "Chunk not found")
    return ChunkResponse(id=chunk_id, content=content)


@router.get("/health")
def health(req: Request):
    """Check health of all backend components."""
    components = {}

    llm = req.app.state.llm_adapter
    components["cerebras"] = "ok" if llm.cerebras_key else "error"
    components["groq"] = "ok" if llm.groq_key else "error"

    components["qdrant"] = "ok" if req.app.state.documents.is_healthy() else "error"

    try:
        with get_session() as session:
            session.query(ChatSessionRow).first()
        components["sqlite"] = "ok"
    except Exception:
        components["sqlite"] = "error"

    errors = [k for k, v in components.items() if v == "error"]
    if not errors:
        status = "healthy"
    elif len(errors) == len(components):
        status = "unhealthy"
    else:
        status = "degraded"

    return {"status": status, "components": components}


@router.get("/")
@router.head("/")
def root_health():
    """Basic root health check for deployment platforms."""
    return {"status": "ok", "service": "lectern-chat"}


def _session_response(row: ChatSessionRow) -> SessionResponse:
    return SessionResponse(
        conversation_id=row.conversation_id,
        title=row.title,
        status=row.status,
        agent_slug=row.agent_slug,
        messages=get_session_history(row.conversation_id),
    )
