"""Chat personas ("agents") selectable from the widget.

Agents are edited in the CMS; the service reads active ones and seeds a
default on an empty database so the widget always has one to select.
"""

import os

import structlog

from backend.agent.prompts import DEFAULT_PERSONA
from backend.core.database import AgentRow, get_session

logger = structlog.get_logger(__name__)


def seed_default_agent() -> None:
    """Insert the default agent if no agent exists yet."""
    with get_session() as session:
        if session.query(AgentRow).count() > 0:
            return
        slug = os.environ.get("DEFAULT_AGENT_SLUG", "library")
        session.add(AgentRow(
            slug=slug,
            name=os.environ.get("DEFAULT_AGENT_NAME", "Library assistant"),
            system_prompt=DEFAULT_PERSONA,
            k_results=int(os.environ.get("DEFAULT_AGENT_K_RESULTS", "5")),
            is_active=True,
        ))
        session.commit()
    logger.info("agents.seeded", slug=slug)


def list_active_agents() -> list[AgentRow]:
    with get_session() as session:
        return (
            session.query(AgentRow)
            .filter(AgentRow.is_active.is_(True))
            .order_by(AgentRow.created_at.asc(), AgentRow.slug.asc())
            .all()
        )


def resolve_agent(slug: str | None) -> AgentRow | None:
    """Active agent by slug, or the first active agent when no slug is given.

    Returns:
        None if the slug is unknown or inactive, or if no agent exists.
    """
    if slug:
        with get_session() as session:
            return (
                session.query(AgentRow)
                .filter(AgentRow.slug == slug, AgentRow.is_active.is_(True))
                .first()
            )

    agents = list_active_agents()
    return agents[0] if agents else None
