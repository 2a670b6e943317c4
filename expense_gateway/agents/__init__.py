"""Language-model agents."""

from expense_gateway.agents.sql_agent import (
    DEGRADED_REPLY,
    AgentReply,
    SQLGenerationAgent,
    build_system_prompt,
)

__all__ = [
    "AgentReply",
    "DEGRADED_REPLY",
    "SQLGenerationAgent",
    "build_system_prompt",
]
