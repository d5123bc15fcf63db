import logging
import time
from typing import List, Dict, Optional

import httpx

from codepath.config import settings
from codepath.core.exceptions import RETRYABLE_STATUS_CODES, ProviderRejectedError

logger = logging.getLogger(__name__)

# Lazy singleton instance
_llm_service_instance = None


def get_llm_service() -> Optional['LLMService']:
    """
    Get or create singleton LLMService instance (lazy initialization).

    Returns:
        LLMService, or None when GROQ_API_KEY is not configured
    """
    global _llm_service_instance

    if _llm_service_instance is None:
        if not settings.groq_api_key:
            logger.warning("⚠️  GROQ_API_KEY is not configured, tutor answers will be extractive")
            return None
        logger.info(f"🤖 Initializing LLMService (first use)...")
        logger.info(f"   Model: {settings.groq_model}")
        _llm_service_instance = LLMService()
        logger.info(f"✅ LLMService ready (will reuse for future requests)")

    return _llm_service_instance


class LLMService:
    """Groq chat-completions client (OpenAI-compatible API)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.groq_api_key
        if not self.api_key:
            raise ValueError("GROQ_API_KEY is not configured. Please set it in your .env file.")

        self.model = model or settings.groq_model
        self.api_url = api_url or settings.groq_api_url
        self._transport = transport

        logger.debug(f"   API URL: {self.api_url}")
        logger.debug(f"   Model: {self.model}")

    async def generate_response(
        self,
        user_query: str,
        system_prompt: str,
        context: str,
        conversation_history: Optional[List[Dict]] = None,
    ) -> str:
        """
        Generate an answer grounded in the given codebase context.

        Args:
            user_query: The learner's question
            system_prompt: System instructions for the model
            context: Retrieved fragments rendered as text
            conversation_history: Previous messages [{"role": "user|assistant", "content": "..."}]

        Returns:
            Generated response string

        Raises:
            httpx.HTTPStatusError / httpx.TransportError: Retryable failures, classified by call_with_retry
            ProviderRejectedError: Non-retryable HTTP status or malformed reply
        """
        conversation_history = conversation_history or []

        start_time = time.time()
        logger.info(f"🤖 Generating response with Groq API (model: {self.model})")
        logger.debug(f"   Context length: {len(context)} chars")
        logger.debug(f"   Conversation history: {len(conversation_history)} messages")

        messages = [{"role": "system", "content": system_prompt}]
        if context:
            messages.append(
                {
                    "role": "system",
                    "content": (
                        f"Here is the relevant context from the codebase:\n\n{context}\n\n"
                        f"Answer from this context only. If it does not contain the answer, say so."
                    ),
                }
            )
        messages.extend(
            {"role": msg["role"], "content": msg["content"]}
            for msg in conversation_history
            if msg.get("role") in ("user", "assistant")
        )
        messages.append({"role": "user", "content": user_query})

        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": 0.3,
            "max_tokens": 1500,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        # The deadline is enforced by call_with_retry; no client-side timeout here
        async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
            response = await client.post(self.api_url, json=payload, headers=headers)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code in RETRYABLE_STATUS_CODES:
                raise
            error_msg = f"Groq API HTTP error: {e.response.status_code}"
            if e.response.status_code == 401:
                error_msg += " - Invalid API key"
            logger.error(f"❌ {error_msg}")
            raise ProviderRejectedError(error_msg) from e

        try:
            result = response.json()
        except ValueError as e:
            raise ProviderRejectedError(f"Groq API returned invalid JSON: {response.text[:200]}") from e
        if not result.get("choices"):
            raise ProviderRejectedError("No choices returned from Groq API")
        assistant_message = result["choices"][0]["message"]["content"]

        if "usage" in result:
            usage = result["usage"]
            logger.debug(
                f"   Token usage: prompt={usage.get('prompt_tokens', 0)}, "
                f"completion={usage.get('completion_tokens', 0)}, "
                f"total={usage.get('total_tokens', 0)}"
            )

        duration = time.time() - start_time
        logger.info(f"✅ Generated response ({len(assistant_message)} chars) in {duration:.3f}s")
        return assistant_message
