"""
Session persistence.

A saved session stores exactly what ``ContextManager.current_view()`` is made
of: the summary message, the checkpoint, and the live messages in order.
Loading it back reproduces the same view.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from ..llm.base import LLMMessage, ToolCall
from ..models import MessageRecord, SessionRecord, init_database
from .context import ContextManager

logger = structlog.get_logger()


@dataclass
class SessionInfo:
    """Listing entry for a saved session."""

    id: str
    title: str | None
    message_count: int
    checkpoint: int
    updated_at: datetime | None


def _message_to_record(position: int, message: LLMMessage) -> MessageRecord:
    tool_calls: list[dict[str, Any]] | None = None
    if message.tool_calls:
        tool_calls = [
            {"id": call.id, "name": call.name, "arguments": call.arguments}
            for call in message.tool_calls
        ]
    return MessageRecord(
        position=position,
        role=message.role,
        content=message.content,
        tool_calls=tool_calls,
        tool_call_id=message.tool_call_id,
        name=message.name,
        is_error=message.is_error,
    )


def _record_to_message(record: MessageRecord) -> LLMMessage:
    tool_calls = None
    if record.tool_calls:
        tool_calls = [
            ToolCall(id=tc["id"], name=tc["name"], arguments=tc.get("arguments") or {})
            for tc in record.tool_calls
        ]
    return LLMMessage(
        role=record.role,  # type: ignore
        content=record.content,
        tool_calls=tool_calls,
        tool_call_id=record.tool_call_id,
        name=record.name,
        is_error=record.is_error,
    )


class SessionManager:
    """Saves and restores conversation contexts."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    @classmethod
    async def create(cls, database_url: str) -> "SessionManager":
        return cls(await init_database(database_url))

    async def close(self) -> None:
        engine = self._session_maker.kw.get("bind")
        if engine is not None:
            await engine.dispose()

    async def save(
        self,
        context: ContextManager,
        session_id: str | None = None,
        title: str | None = None,
    ) -> str:
        """Save a context, overwriting the session if it already exists.

        Returns:
            The session id.
        """
        summary = context.summary
        records = [_message_to_record(i, m) for i, m in enumerate(context.messages)]

        async with self._session_maker() as db:
            session = None
            if session_id is not None:
                session = await db.get(
                    SessionRecord,
                    session_id,
                    options=[selectinload(SessionRecord.messages)],
                )

            if session is None:
                session = SessionRecord(messages=[])
                if session_id is not None:
                    session.id = session_id
                db.add(session)

            if title is not None:
                session.title = title
            elif session.title is None:
                session.title = _default_title(context)

            session.summary = summary.content if summary is not None else None
            session.checkpoint = context.checkpoint
            session.messages = records
            session.updated_at = datetime.now(timezone.utc)

            await db.commit()
            saved_id = session.id

        logger.info(
            "Session saved",
            session_id=saved_id,
            messages=len(records),
            checkpoint=context.checkpoint,
        )
        return saved_id

    async def load(self, session_id: str, context: ContextManager) -> bool:
        """Restore a saved session into ``context``. Returns False if not found."""
        async with self._session_maker() as db:
            session = await db.get(
                SessionRecord,
                session_id,
                options=[selectinload(SessionRecord.messages)],
            )
            if session is None:
                logger.warning("Session not found", session_id=session_id)
                return False

            messages = [_record_to_message(r) for r in sorted(session.messages, key=lambda r: r.position)]
            summary = LLMMessage(role="user", content=session.summary) if session.summary is not None else None
            checkpoint = session.checkpoint

        context.restore(messages, summary=summary, checkpoint=checkpoint)
        logger.info("Session loaded", session_id=session_id, messages=len(messages))
        return True

    async def list_sessions(self, limit: int = 50) -> list[SessionInfo]:
        """Most recently updated sessions first."""
        async with self._session_maker() as db:
            result = await db.execute(
                select(SessionRecord, func.count(MessageRecord.id))
                .outerjoin(MessageRecord, MessageRecord.session_id == SessionRecord.id)
                .group_by(SessionRecord.id)
                .order_by(SessionRecord.updated_at.desc())
                .limit(limit)
            )
            return [
                SessionInfo(
                    id=session.id,
                    title=session.title,
                    message_count=count,
                    checkpoint=session.checkpoint,
                    updated_at=session.updated_at,
                )
                for session, count in result.all()
            ]

    async def delete(self, session_id: str) -> bool:
        """Delete a saved session. Returns False if it did not exist."""
        async with self._session_maker() as db:
            session = await db.get(
                SessionRecord,
                session_id,
                options=[selectinload(SessionRecord.messages)],
            )
            if session is None:
                return False
            await db.delete(session)
            await db.commit()

        logger.info("Session deleted", session_id=session_id)
        return True


def _default_title(context: ContextManager) -> str | None:
    for message in context.messages:
        if message.role == "user":
            return message.content.strip().splitlines()[0][:80] if message.content.strip() else None
    return None
