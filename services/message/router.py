"""
services/message/router.py
Direct messages between users, grouped into one conversation per pair.
Persistence and reads only; live delivery happens elsewhere.
"""

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.exceptions import Forbidden, InvalidOperation, NotFound
from shared.middleware.auth import get_current_user
from shared.models.models import Conversation, Message, User
from shared.repository import get_user_or_404, users_by_id
from shared.schemas.schemas import (
    ChatMessageCreateRequest,
    ChatMessageResponse,
    ConversationResponse,
    UserSummary,
)

router = APIRouter(prefix="/messages", tags=["Messages"])


def _ordered_pair(first: UUID, second: UUID) -> tuple[UUID, UUID]:
    return (first, second) if first < second else (second, first)


async def _get_or_create_conversation(db: AsyncSession, first: UUID, second: UUID) -> Conversation:
    user_a_id, user_b_id = _ordered_pair(first, second)
    query = select(Conversation).where(
        Conversation.user_a_id == user_a_id,
        Conversation.user_b_id == user_b_id,
    )
    conversation = (await db.execute(query)).scalar_one_or_none()
    if conversation:
        return conversation

    conversation = Conversation(user_a_id=user_a_id, user_b_id=user_b_id)
    db.add(conversation)
    try:
        await db.flush()
    except IntegrityError:
        # Lost the race to open this pair; nothing else is pending yet.
        await db.rollback()
        conversation = (await db.execute(query)).scalar_one()
    return conversation


@router.post("", response_model=ChatMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    data: ChatMessageCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Append a message to the conversation with receiver_id, opening it if needed."""
    sender_id = current_user.id
    if data.receiver_id == sender_id:
        raise InvalidOperation("You cannot message yourself")
    await get_user_or_404(data.receiver_id, db)

    conversation = await _get_or_create_conversation(db, sender_id, data.receiver_id)
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        receiver_id=data.receiver_id,
        body=data.message,
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    conversation.last_message_at = message.created_at
    await db.commit()

    return ChatMessageResponse.model_validate(message)


@router.get("/conversations", response_model=list[ConversationResponse])
async def list_conversations(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Conversations the current user takes part in, most recent activity first."""
    result = await db.execute(
        select(Conversation)
        .where(or_(
            Conversation.user_a_id == current_user.id,
            Conversation.user_b_id == current_user.id,
        ))
        .order_by(Conversation.last_message_at.desc(), Conversation.created_at.desc())
    )
    conversations = result.scalars().all()

    def companion_id(c: Conversation) -> UUID:
        return c.user_b_id if c.user_a_id == current_user.id else c.user_a_id

    companions = await users_by_id((companion_id(c) for c in conversations), db)
    return [
        ConversationResponse.model_validate(c).model_copy(update={
            "companion": UserSummary.model_validate(companions[companion_id(c)])
            if companion_id(c) in companions else None
        })
        for c in conversations
    ]


@router.get("/conversations/{conversation_id}", response_model=list[ChatMessageResponse])
async def get_conversation_messages(
    conversation_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Messages of one conversation, oldest first. Participants only."""
    conversation = await db.get(Conversation, conversation_id)
    if not conversation:
        raise NotFound("Conversation not found")
    if current_user.id not in (conversation.user_a_id, conversation.user_b_id):
        raise Forbidden("You are not part of this conversation")

    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation.id)
        .order_by(Message.created_at.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [ChatMessageResponse.model_validate(m) for m in result.scalars()]
