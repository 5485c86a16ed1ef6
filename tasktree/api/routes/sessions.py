"""
Session Routes

Session state plus the progress event stream (Server-Sent Events).
"""

from collections.abc import AsyncIterator
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from starlette.responses import StreamingResponse

from tasktree.api.dependencies import get_event_channel, get_session_store
from tasktree.core.interfaces import EventChannelProtocol
from tasktree.memory.session import Session, SessionStore
from tasktree.observability.events import format_sse

router = APIRouter()


class SessionResponse(BaseModel):
    """Session information. The provider conversation handle is never exposed."""

    session_id: str
    workflow_key: str
    last_step: str | None = None
    cumulative_spend: float = 0.0
    resumable: bool = False
    updated_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            workflow_key=session.workflow_key,
            last_step=session.last_step,
            cumulative_spend=round(session.cumulative_spend, 6),
            resumable=session.conversation_handle is not None,
            updated_at=session.updated_at,
        )


@router.get("/sessions/{session_key}", response_model=SessionResponse)
async def get_session(
    session_key: str,
    sessions: SessionStore = Depends(get_session_store),
):
    """Get the stored state of a workflow instance."""
    return SessionResponse.from_session(await sessions.load(session_key))


@router.delete("/sessions/{session_key}", response_model=SessionResponse)
async def restart_session(
    session_key: str,
    sessions: SessionStore = Depends(get_session_store),
):
    """Restart a workflow: drop the conversation handle and reset progress."""
    session = await sessions.clear(session_key)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionResponse.from_session(session)


@router.get("/sessions/{session_key}/events")
async def stream_events(
    session_key: str,
    replay: bool = True,
    channel: EventChannelProtocol = Depends(get_event_channel),
):
    """
    Stream progress events for a session until it completes or fails.

    With replay, events already published (within the retained history)
    are sent first.
    """

    async def _events() -> AsyncIterator[str]:
        async for event in channel.subscribe(session_key, replay=replay):
            yield format_sse(event)

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
