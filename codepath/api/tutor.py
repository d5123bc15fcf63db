from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from collections import OrderedDict
from typing import Optional
import logging
import uuid

from codepath.api.errors import to_http_exception
from codepath.config import settings
from codepath.core.container import get_tutor_service
from codepath.core.exceptions import CodepathError, NotFoundError
from codepath.models import ConversationContext, TutorResponse
from codepath.services.tutor_service import TutorService

router = APIRouter(tags=["Tutor"])
logger = logging.getLogger(__name__)


class ConversationStore:
    """
    Conversation contexts by id. Lives with the caller, not in the tutor.

    Holds at most `max_conversations`; opening one more evicts the least
    recently used conversation.
    """

    def __init__(self, max_conversations: Optional[int] = None):
        self.max_conversations = max_conversations or settings.max_conversations
        self._contexts: "OrderedDict[str, ConversationContext]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._contexts)

    def open(self, tutor: TutorService, repository_id: str, conversation_id: Optional[str]) -> ConversationContext:
        if conversation_id is None:
            context = tutor.new_context(str(uuid.uuid4()), repository_id)
            self._contexts[context.id] = context
            while len(self._contexts) > self.max_conversations:
                evicted, _ = self._contexts.popitem(last=False)
                logger.debug(f"   Evicted conversation {evicted}")
            logger.debug(f"   Opened conversation {context.id} for repository_id={repository_id}")
            return context

        context = self._contexts.get(conversation_id)
        if context is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        self._contexts.move_to_end(conversation_id)
        return context

        context = self._contexts.get(conversation_id)
        if context is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return context

    def close(self, conversation_id: str) -> bool:
        return self._contexts.pop(conversation_id, None) is not None


_conversation_store = ConversationStore()


def get_conversation_store() -> ConversationStore:
    return _conversation_store


class AskRequest(BaseModel):
    question: str = Field(..., description="Learner's question", min_length=1, max_length=2000)
    conversation_id: Optional[str] = Field(default=None, description="Omit to start a new conversation")


@router.post("/{repository_id}/ask", response_model=TutorResponse)
async def ask(
    repository_id: str,
    request: AskRequest,
    tutor: TutorService = Depends(get_tutor_service),
    conversations: ConversationStore = Depends(get_conversation_store),
):
    """
    Ask the tutor about a repository.

    Flow:
    1. Open or look up the conversation context
    2. Retrieve fragments of this repository only and compose the answer
    3. Return the answer with the fragments it is grounded on
    """
    logger.info(f"💬 Tutor request for repository_id={repository_id}")
    try:
        context = conversations.open(tutor, repository_id, request.conversation_id)
        return await tutor.ask(request.question, repository_id, context)
    except CodepathError as e:
        raise to_http_exception(e)


@router.delete("/conversations/{conversation_id}", status_code=204)
async def close_conversation(
    conversation_id: str,
    conversations: ConversationStore = Depends(get_conversation_store),
):
    if not conversations.close(conversation_id):
        raise to_http_exception(NotFoundError(f"Conversation {conversation_id} not found"))
