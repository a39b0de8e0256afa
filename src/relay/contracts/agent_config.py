"""
Ticket / agent configuration snapshot.

Fetched once per inbound event from the TicketAgentResolver and validated
here, at resolution time. Frozen: the pipeline never mutates it.
"""

from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class TicketAgentConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    ticket_id: str = Field(..., min_length=1, alias="ticketId")
    agent_id: str = Field(..., min_length=1, alias="agentId")
    auto_response_enabled: bool = Field(True, alias="autoResponseEnabled")
    confidence_threshold: float = Field(0.7, ge=0.0, le=1.0, alias="confidenceThreshold")
    max_attempts: int = Field(3, ge=1, le=10, alias="maxAttempts")
    escalation_timeout_minutes: int = Field(30, ge=0, alias="escalationTimeoutMinutes")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TicketAgentConfig":
        """Accept both camelCase (resolver API) and snake_case keys."""
        return cls.model_validate(payload)
