"""
Tutor Query Service
Answers questions about one repository from its indexed fragments.

Flow:
1. Retrieve the top-k fragments of the repository for the question
2. Compose an explanation with the LLM from those fragments and the recent exchanges
3. Fall back to an extractive answer when the LLM is unavailable
4. Record the exchange in the caller's conversation context

References in a response always come from step 1, never from the model.
"""

import logging
import time
from typing import List, Optional, Tuple

from codepath.config import settings
from codepath.core.exceptions import InvalidInputError, ProviderRejectedError, TransientProviderError
from codepath.models import (
    ConversationContext,
    ConversationExchange,
    FragmentReference,
    ScoredFragment,
    TutorResponse,
)
from codepath.services.llm_service import LLMService, get_llm_service
from codepath.services.retrieval_engine import RetrievalEngine, get_retrieval_engine
from codepath.utils.retry import call_with_retry

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a tutor helping a learner understand a codebase. "
    "Answer ONLY from the provided code fragments. "
    "If the fragments do not contain the answer, say so plainly instead of guessing. "
    "Cite file paths and line ranges when you refer to code. "
    "Be concise and explain the why, not only the what."
)

EXTRACTIVE_FRAGMENTS = 3

# Lazy singleton instance
_tutor_service_instance = None


def get_tutor_service() -> 'TutorService':
    global _tutor_service_instance

    if _tutor_service_instance is None:
        _tutor_service_instance = TutorService()

    return _tutor_service_instance


def build_context(results: List[ScoredFragment]) -> str:
    parts = []
    for result in results:
        fragment = result.fragment
        header = (
            f"[File: {fragment.file_path} | Lines {fragment.start_line}-{fragment.end_line} "
            f"| Language: {fragment.language}]"
        )
        body = f"{fragment.context}\n{fragment.content}" if fragment.context else fragment.content
        parts.append(f"{header}\n{body}\n")
    return "\n".join(parts)


def extractive_answer(results: List[ScoredFragment], low_confidence: bool) -> str:
    """Answer assembled from the fragments themselves, without a language model."""
    if not results:
        return "I could not find code in this repository related to your question."

    lines = []
    if low_confidence:
        lines.append("I am not confident the code below answers your question, but it is the closest match.")
    lines.append("The most relevant code I found:")
    for result in results[:EXTRACTIVE_FRAGMENTS]:
        fragment = result.fragment
        first_line = next((line.strip() for line in fragment.content.splitlines() if line.strip()), "")
        lines.append(f"- {fragment.file_path} (lines {fragment.start_line}-{fragment.end_line}): {first_line}")
    return "\n".join(lines)


class TutorService:
    def __init__(
        self,
        engine: Optional[RetrievalEngine] = None,
        llm: Optional[LLMService] = None,
        use_llm: bool = True,
    ):
        self._engine = engine
        self._llm = llm
        self.use_llm = use_llm

    @property
    def engine(self) -> RetrievalEngine:
        if self._engine is None:
            self._engine = get_retrieval_engine()
        return self._engine

    @property
    def llm(self) -> Optional[LLMService]:
        if self._llm is None and self.use_llm:
            self._llm = get_llm_service()
        return self._llm

    def new_context(self, conversation_id: str, repository_id: str) -> ConversationContext:
        return ConversationContext(id=conversation_id, repository_id=repository_id, window=settings.conversation_window)

    async def ask(self, question: str, repository_id: str, context: ConversationContext) -> TutorResponse:
        """
        Answer a question about one repository.

        Raises:
            InvalidInputError: Empty question, or a context opened for another repository
        """
        if not question or not question.strip():
            raise InvalidInputError("Question must not be empty")
        if context.repository_id != repository_id:
            raise InvalidInputError(
                f"Conversation {context.id} belongs to repository {context.repository_id}, not {repository_id}"
            )

        start_time = time.time()
        logger.info(f"🔍 Tutor question for repository_id={repository_id} (conversation {context.id})")

        # Step 1: retrieval
        degraded = False
        try:
            results = await self.engine.query(repository_id, question, settings.tutor_top_k)
        except TransientProviderError as e:
            logger.warning(f"⚠️  Retrieval unavailable, answering without fragments: {e}")
            results = []
            degraded = True
        top_score = results[0].score if results else 0.0
        low_confidence = not results or top_score < settings.tutor_confidence_floor
        logger.info(f"✅ Step 1/3: Retrieved {len(results)} fragments (top score {top_score:.3f})")

        # Step 2: composition
        answer, llm_degraded = await self._compose(question, results, context, low_confidence)
        degraded = degraded or llm_degraded
        logger.info(f"✅ Step 2/3: Composed answer ({'extractive' if degraded else 'generated'})")

        # Step 3: remember the exchange
        context.append(
            ConversationExchange(
                question=question,
                answer=answer,
                fragment_ids=[result.fragment.id for result in results],
            )
        )
        logger.info(f"✅ Step 3/3: Conversation {context.id} holds {len(context.exchanges)} exchanges")

        duration = time.time() - start_time
        logger.info(f"⏱️  Total tutor time: {duration:.3f}s")

        return TutorResponse(
            answer=answer,
            references=[
                FragmentReference(
                    fragment_id=result.fragment.id,
                    file_path=result.fragment.file_path,
                    start_line=result.fragment.start_line,
                    end_line=result.fragment.end_line,
                    score=round(result.score, 4),
                )
                for result in results
            ],
            confidence=round(max(0.0, top_score), 4),
            low_confidence=low_confidence,
            degraded=degraded,
            conversation_id=context.id,
        )

    async def _compose(
        self,
        question: str,
        results: List[ScoredFragment],
        context: ConversationContext,
        low_confidence: bool,
    ) -> Tuple[str, bool]:
        # Nothing to ground an explanation on
        if not results:
            return extractive_answer(results, low_confidence), False

        llm = self.llm
        if llm is None:
            return extractive_answer(results, low_confidence), True

        try:
            answer = await call_with_retry(
                llm.generate_response,
                user_query=question,
                system_prompt=SYSTEM_PROMPT,
                context=build_context(results),
                conversation_history=context.as_messages(),
                operation="tutor answer generation",
            )
        except (TransientProviderError, ProviderRejectedError) as e:
            logger.warning(f"⚠️  LLM unavailable, falling back to extractive answer: {e}")
            return extractive_answer(results, low_confidence), True
        return answer, False
