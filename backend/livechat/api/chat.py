from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query

from .. import schemas
from ..container import Services
from ..models import MessageType, SenderType, SessionStatus
from ..realtime.gateway import SESSION_ENDED, Outbound
from ..services.messages import MessagePage
from .auth import verify_operator
from .deps import get_services

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _pagination(page) -> schemas.Pagination:
    return schemas.Pagination(total=page.total, limit=page.limit or page.total, offset=page.offset,
                              has_more=page.has_more)


def _messages(page: MessagePage):
    return [schemas.MessageOut.model_validate(m) for m in page.messages]


@router.get("", response_model=schemas.SessionPage)
async def list_sessions(
        user_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
        limit: int = Query(10, ge=1, le=100),
        offset: int = Query(0, ge=0),
        services: Services = Depends(get_services),
):
    page = await services.sessions.list_sessions(user_id=user_id, status=status, limit=limit, offset=offset)
    return schemas.SessionPage(
        sessions=[schemas.ChatSessionOut.model_validate(s) for s in page.sessions],
        pagination=_pagination(page),
    )


@router.get("/{session_id}", response_model=schemas.ChatSessionDetail)
async def get_session(session_id: str, services: Services = Depends(get_services)):
    session = await services.sessions.get(session_id)
    page = await services.messages.history(session_id, limit=services.settings.history_page_size)
    return schemas.ChatSessionDetail(
        **schemas.ChatSessionOut.model_validate(session).model_dump(),
        messages=_messages(page),
        pagination=_pagination(page),
    )


@router.get("/{session_id}/messages", response_model=schemas.HistoryOut)
async def get_messages(
        session_id: str,
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        order: Literal["asc", "desc"] = "asc",
        include_read: bool = True,
        message_type: Optional[MessageType] = None,
        services: Services = Depends(get_services),
):
    page = await services.messages.history(
        session_id,
        limit=limit,
        offset=offset,
        order=order,
        include_read=include_read,
        message_type=message_type,
    )
    return schemas.HistoryOut(session_id=session_id, messages=_messages(page), pagination=_pagination(page))


@router.put("/{session_id}/read", response_model=schemas.ReadResult)
async def mark_read(session_id: str, services: Services = Depends(get_services)):
    updated = await services.messages.mark_read(session_id)
    return schemas.ReadResult(session_id=session_id, updated=updated)


@router.get("/{session_id}/unread-count", response_model=schemas.UnreadCount)
async def unread_count(
        session_id: str,
        sender_type: Optional[SenderType] = None,
        services: Services = Depends(get_services),
):
    count = await services.messages.unread_count(session_id, sender_type=sender_type)
    return schemas.UnreadCount(session_id=session_id, count=count)


@router.put("/{session_id}/close", response_model=schemas.CloseResult)
async def close_session(
        session_id: str,
        closed_by: Optional[str] = None,
        services: Services = Depends(get_services),
        _: str = Depends(verify_operator),
):
    result = await services.sessions.close(session_id, closed_by=closed_by)
    if not result.already_closed:
        gateway = services.gateway
        ended = schemas.SessionEnded(session_id=session_id, operator_id=closed_by or "", reason="closed")
        await gateway.deliver([
            Outbound.to([c.handle for c in gateway.registry.in_session(session_id)], SESSION_ENDED, ended.dump())
        ])
    return schemas.CloseResult(
        session=schemas.ChatSessionOut.model_validate(result.session),
        already_closed=result.already_closed,
    )
