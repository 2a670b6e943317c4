"""
SQL Generation Agent

DESIGN DECISION: The language model is a TRANSLATOR, not an ORACLE.
It turns a chat message into SQL text inside fenced code blocks. The
gateway decides whether any of that text runs.

CRITICAL BOUNDARIES:
- CAN: Generate INSERT / UPDATE / SELECT statements for the user's ledger
- CAN: Ask for missing required information in prose
- CANNOT: Execute anything. Its reply is only ever input to the gateway
- CANNOT: Confirm success. Confirmations are written by the gateway

Upstream behaviour:
- One timeout-bounded call to the primary model
- On rate limiting, exactly one call to the fallback model
- Any other failure yields a canned degraded reply, never a retry loop
"""

import asyncio
from datetime import date
from typing import Any, Callable, Optional
from uuid import UUID

import google.generativeai as genai
import structlog
from google.api_core.exceptions import GoogleAPIError, ResourceExhausted
from pydantic import BaseModel, Field

from expense_gateway.config import GatewayConfig
from expense_gateway.gateway.currency import SUPPORTED_CURRENCIES
from expense_gateway.gateway.validator import PAYMENT_METHODS
from expense_gateway.models.chat import ChatMessage
from expense_gateway.models.entities import ChatRole, UserCatalog


logger = structlog.get_logger(__name__)


DEGRADED_REPLY = (
    "I'm having trouble reaching the assistant right now, so nothing was changed. "
    "Please try again in a moment."
)


class AgentReply(BaseModel):
    """Free-text reply from the model."""

    text: str
    model_name: Optional[str] = Field(
        default=None,
        description="Model that produced the reply; None when degraded"
    )
    degraded: bool = Field(
        default=False,
        description="True when no model could be reached and the canned reply was used"
    )


def build_system_prompt(catalog: UserCatalog, today: Optional[date] = None) -> str:
    """
    System instructions listing the user's books and categories with ids
    and the rules the gateway will enforce.
    """
    today = today or date.today()

    if catalog.books:
        book_lines = "\n".join(
            f"- {book.name} (ID: {book.id}, currency: {book.currency})"
            for book in catalog.books
        )
    else:
        book_lines = "- (no books yet)"

    category_lines = []
    for book in catalog.books:
        for category in catalog.categories_in_book(book.id):
            category_lines.append(f"- {category.name} (ID: {category.id}, book: {book.name})")
    categories_text = "\n".join(category_lines) or "- (no categories yet)"

    return f"""You are the assistant for an expense tracking application. You turn the
user's requests into SQL for the tables below. The application executes
the SQL and reports the result itself.

TODAY: {today.isoformat()}

YOUR BOOKS:
{book_lines}

YOUR CATEGORIES:
{categories_text}

TABLES:
- books(id, userId, name, description, currency, isArchived, createdAt, updatedAt)
- categories(id, bookId, name, description, icon, color, isDisabled, isDefault, createdAt, updatedAt)
- expenses(id, categoryId, amount, date, description, paymentMethod, isDisabled, createdAt, updatedAt)

RULES:
1. Put every statement in a ```sql code block. Only INSERT, UPDATE and SELECT are allowed.
2. NEVER say that something was added, created, updated or saved. The application confirms writes.
3. Required fields: books need name and currency; categories need name and bookId;
   expenses need amount and categoryId.
4. Use the IDs listed above for bookId and categoryId. Never put a name where an ID belongs.
   If the category the user wants does not exist, use its name as categoryId and the
   application will offer to create it.
5. Expense defaults: date CURDATE(), description '', paymentMethod 'Other'.
6. Payment methods: {", ".join(PAYMENT_METHODS)}.
7. Supported currencies: {", ".join(SUPPORTED_CURRENCIES)}.
8. Use the amount exactly as the user said it. The application converts currencies.
9. If a required field is missing, ask the user for it instead of writing SQL.
10. "this book" and "this category" mean the most recently created or used one."""


def _contents(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Gemini chat contents: roles are 'user' and 'model'."""
    return [
        {
            "role": "model" if message.role == ChatRole.ASSISTANT else "user",
            "parts": [message.content],
        }
        for message in messages
    ]


class SQLGenerationAgent:
    """
    Gemini-backed SQL generator with a primary/fallback model pair.

    Usage:
        agent = SQLGenerationAgent(GatewayConfig.from_settings(), api_key=...)
        reply = await agent.complete(messages, catalog)
    """

    def __init__(
        self,
        config: GatewayConfig,
        api_key: Optional[str] = None,
        model_factory: Optional[Callable[[str, str], Any]] = None,
        audit_logger=None,
    ):
        """
        Args:
            config: immutable gateway configuration
            api_key: Gemini API key; configures the client when given
            model_factory: builds a model from (model_name, system_instruction);
                defaults to genai.GenerativeModel
            audit_logger: receives fallback and outage events
        """
        self._config = config
        self._audit = audit_logger
        if api_key:
            genai.configure(api_key=api_key)
        self._model_factory = model_factory or self._build_model

    def _build_model(self, model_name: str, system_instruction: str):
        return genai.GenerativeModel(
            model_name=model_name,
            generation_config={
                "temperature": self._config.temperature,
                "max_output_tokens": self._config.max_tokens,
            },
            system_instruction=system_instruction,
        )

    async def _generate(self, model_name: str, system_prompt: str, contents: list[dict]) -> str:
        model = self._model_factory(model_name, system_prompt)
        timeout = self._config.llm_timeout_seconds
        response = await asyncio.wait_for(
            model.generate_content_async(contents, request_options={"timeout": timeout}),
            timeout=timeout,
        )
        return response.text

    async def complete(
        self,
        messages: list[ChatMessage],
        catalog: UserCatalog,
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AgentReply:
        """
        Ask the model for a reply to the conversation.

        Never raises for upstream problems: the degraded reply is returned
        instead.
        """
        system_prompt = build_system_prompt(catalog)
        contents = _contents(messages)
        primary = self._config.primary_model
        fallback = self._config.fallback_model

        try:
            text = await self._generate(primary, system_prompt, contents)
            return AgentReply(text=text, model_name=primary)
        except ResourceExhausted as e:
            logger.warning("llm_rate_limited", model=primary, error=str(e))
            if self._audit is not None:
                await self._audit.log_llm_fallback_used(
                    user_id=user_id,
                    primary_model=primary,
                    fallback_model=fallback,
                    correlation_id=correlation_id,
                )
        except (GoogleAPIError, asyncio.TimeoutError, ValueError) as e:
            return await self._degraded(primary, e, user_id, correlation_id)

        try:
            text = await self._generate(fallback, system_prompt, contents)
            return AgentReply(text=text, model_name=fallback)
        except (GoogleAPIError, asyncio.TimeoutError, ValueError) as e:
            return await self._degraded(fallback, e, user_id, correlation_id)

    async def _degraded(
        self,
        model_name: str,
        error: Exception,
        user_id: Optional[str],
        correlation_id: Optional[UUID],
    ) -> AgentReply:
        message = str(error) or type(error).__name__
        logger.error("llm_unavailable", model=model_name, error=message)
        if self._audit is not None:
            await self._audit.log_upstream_unavailable(
                user_id=user_id,
                service="llm",
                error_message=message,
                correlation_id=correlation_id,
            )
        return AgentReply(text=DEGRADED_REPLY, degraded=True)
