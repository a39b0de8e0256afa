"""
Agent completion backends.

The AIResponseEngine depends on the protocol only:

    async complete(context) -> CompletionResult(text, confidence)

LangChainAgentCompletion drives a chat model with with_structured_output()
so the reply and its self-assessed confidence come back as one validated
object instead of free text.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from src.relay.config.settings import Settings
from src.relay.contracts.agent_config import TicketAgentConfig
from src.relay.contracts.events import InboundEvent
from src.relay.errors import TransientInfraError
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class CompletionContext:
    event: InboundEvent
    config: TicketAgentConfig

    @property
    def conversation_id(self) -> str:
        return self.event.conversation_id


@dataclass(frozen=True)
class CompletionResult:
    text: str
    confidence: float


class AgentCompletion(Protocol):
    async def complete(self, context: CompletionContext) -> CompletionResult: ...


class StructuredCompletion(BaseModel):
    """Structured output contract requested from the chat model."""

    reply_text: str = Field("", description="Reply to send to the customer. Empty if you cannot answer.")
    confidence: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="How confident you are that reply_text fully and correctly answers the customer (0..1).",
    )


SYSTEM_PROMPT = (
    "You are a customer support agent answering WhatsApp messages on behalf of a human team. "
    "Answer briefly in the customer's language. "
    "If you are not sure the answer is correct, give a low confidence so a human can take over. "
    "Never invent order numbers, prices or policies."
)


def build_chat_model(settings: Settings) -> Any:
    """
    Create the chat model used for completions.

    Supported: openai (ChatOpenAI), ollama (ChatOllama).
    Created once per worker process and reused.
    """
    provider = (settings.llm_provider or "openai").lower()
    logger.info("LLM config | provider=%s | model=%s", provider, settings.llm_model_name)

    if provider == "openai":
        try:
            from langchain_openai import ChatOpenAI
        except ImportError as exc:
            raise ImportError(
                "langchain_openai is required for llm_provider=openai. "
                "Install with: pip install -U langchain-openai"
            ) from exc

        kwargs = {"model": settings.llm_model_name or "gpt-4o-mini", "timeout": settings.completion_timeout_s}
        if settings.openai_api_key:
            kwargs["api_key"] = settings.openai_api_key
        return ChatOpenAI(**kwargs)

    if provider == "ollama":
        try:
            from langchain_ollama import ChatOllama
        except ImportError as exc:
            raise ImportError(
                "langchain_ollama is required for llm_provider=ollama. "
                "Install with: pip install -U langchain-ollama"
            ) from exc

        return ChatOllama(model=settings.llm_model_name or "llama3.1")

    raise ValueError(f"Unsupported llm_provider={provider!r}. Use 'openai' or 'ollama'.")


class LangChainAgentCompletion:
    def __init__(self, model: Any, *, system_prompt: str = SYSTEM_PROMPT) -> None:
        self._structured = model.with_structured_output(StructuredCompletion)
        self.system_prompt = system_prompt

    def _messages(self, context: CompletionContext) -> list:
        event = context.event
        human = event.payload.text or f"[{event.payload.message_type} message without text]"
        return [
            SystemMessage(content=f"{self.system_prompt}\nTicket: {context.config.ticket_id}"),
            HumanMessage(content=human),
        ]

    async def complete(self, context: CompletionContext) -> CompletionResult:
        try:
            result: Optional[StructuredCompletion] = await self._structured.ainvoke(self._messages(context))
        except asyncio.TimeoutError:
            raise
        except Exception as exc:
            # Provider SDKs raise their own hierarchies; all of them are retryable here.
            raise TransientInfraError(f"completion failed: {exc}") from exc

        if result is None:
            raise TransientInfraError("completion returned no structured output")

        return CompletionResult(text=(result.reply_text or "").strip(), confidence=float(result.confidence))
