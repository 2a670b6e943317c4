"""
Tests for the SQL generation agent.

The Gemini client is replaced by a model factory returning fakes; the
primary/fallback/degraded paths are driven by the exceptions they raise.
"""

import asyncio
from datetime import date

import pytest
from google.api_core.exceptions import ResourceExhausted, ServiceUnavailable

from expense_gateway.agents import DEGRADED_REPLY, SQLGenerationAgent, build_system_prompt
from expense_gateway.audit import AuditLogger
from expense_gateway.config import GatewayConfig
from expense_gateway.models.audit import AuditEventType
from expense_gateway.models.chat import ChatMessage
from expense_gateway.models.entities import ChatRole, UserCatalog


CONFIG = GatewayConfig(primary_model="primary", fallback_model="fallback", llm_timeout_seconds=1)


class FakeResponse:

    def __init__(self, text):
        self._text = text

    @property
    def text(self):
        if isinstance(self._text, Exception):
            raise self._text
        return self._text


class FakeModel:

    def __init__(self, behaviour, calls):
        self.behaviour = behaviour
        self.calls = calls

    async def generate_content_async(self, contents, request_options=None):
        self.calls.append(contents)
        if self.behaviour == "hang":
            await asyncio.sleep(5)
        if isinstance(self.behaviour, Exception) and not isinstance(self.behaviour, ValueError):
            raise self.behaviour
        return FakeResponse(self.behaviour)


class FakeModels:
    """model_factory stand-in: one behaviour per model name."""

    def __init__(self, **behaviours):
        self.behaviours = behaviours
        self.built = []
        self.calls = []

    def __call__(self, model_name, system_instruction):
        self.built.append((model_name, system_instruction))
        return FakeModel(self.behaviours[model_name], self.calls)


MESSAGES = [
    ChatMessage(role=ChatRole.USER, content="show my books"),
    ChatMessage(role=ChatRole.ASSISTANT, content="Here they are"),
    ChatMessage(role=ChatRole.USER, content="add lunch 12 to House"),
]


class TestSystemPrompt:

    def test_lists_ids_and_rules(self, catalog, ids):
        prompt = build_system_prompt(catalog, today=date(2026, 10, 16))
        assert "TODAY: 2026-10-16" in prompt
        assert f"- House (ID: {ids.house}, currency: USD)" in prompt
        assert f"- Hotels (ID: {ids.hotels}, book: Travel)" in prompt
        assert "NEVER say that something was added" in prompt

    def test_empty_catalog(self, ids):
        prompt = build_system_prompt(UserCatalog(user_id=ids.user), today=date(2026, 10, 16))
        assert "- (no books yet)" in prompt
        assert "- (no categories yet)" in prompt


class TestSQLGenerationAgent:
    """One primary call, one fallback on rate limiting, otherwise degraded."""

    @pytest.mark.asyncio
    async def test_primary_reply(self, catalog):
        models = FakeModels(primary="```sql\nSELECT * FROM books\n```")
        agent = SQLGenerationAgent(CONFIG, model_factory=models)

        reply = await agent.complete(MESSAGES, catalog)

        assert reply.model_name == "primary"
        assert not reply.degraded
        assert "SELECT * FROM books" in reply.text
        assert [name for name, _ in models.built] == ["primary"]
        assert [c["role"] for c in models.calls[0]] == ["user", "model", "user"]
        assert models.calls[0][-1]["parts"] == ["add lunch 12 to House"]

    @pytest.mark.asyncio
    async def test_rate_limit_uses_fallback_once(self, catalog):
        audit = AuditLogger()
        models = FakeModels(primary=ResourceExhausted("quota"), fallback="Which book?")
        agent = SQLGenerationAgent(CONFIG, model_factory=models, audit_logger=audit)

        reply = await agent.complete(MESSAGES, catalog, user_id="u1")

        assert reply.text == "Which book?"
        assert reply.model_name == "fallback"
        assert [name for name, _ in models.built] == ["primary", "fallback"]
        assert audit.events[-1].event_type == AuditEventType.LLM_FALLBACK_USED

    @pytest.mark.asyncio
    async def test_fallback_rate_limited_is_degraded(self, catalog):
        models = FakeModels(primary=ResourceExhausted("quota"), fallback=ResourceExhausted("quota"))
        reply = await SQLGenerationAgent(CONFIG, model_factory=models).complete(MESSAGES, catalog)
        assert reply.degraded
        assert reply.text == DEGRADED_REPLY
        assert len(models.built) == 2

    @pytest.mark.asyncio
    async def test_outage_is_degraded_without_fallback(self, catalog):
        audit = AuditLogger()
        models = FakeModels(primary=ServiceUnavailable("down"), fallback="unused")
        agent = SQLGenerationAgent(CONFIG, model_factory=models, audit_logger=audit)

        reply = await agent.complete(MESSAGES, catalog)

        assert reply.degraded
        assert reply.model_name is None
        assert reply.text == DEGRADED_REPLY
        assert [name for name, _ in models.built] == ["primary"]
        event = audit.events[-1]
        assert event.event_type == AuditEventType.UPSTREAM_UNAVAILABLE
        assert event.details["service"] == "llm"

    @pytest.mark.asyncio
    async def test_timeout_is_degraded(self, catalog):
        config = CONFIG.model_copy(update={"llm_timeout_seconds": 0.05})
        models = FakeModels(primary="hang")
        reply = await SQLGenerationAgent(config, model_factory=models).complete(MESSAGES, catalog)
        assert reply.degraded

    @pytest.mark.asyncio
    async def test_blocked_response_is_degraded(self, catalog):
        """Test a reply whose text cannot be read (safety block) is an outage."""
        models = FakeModels(primary=ValueError("blocked"))
        reply = await SQLGenerationAgent(CONFIG, model_factory=models).complete(MESSAGES, catalog)
        assert reply.degraded
