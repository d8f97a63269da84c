"""Usage event definitions for per-call charging.

Each event represents one completed model call reported by the chat
execution layer.  Field aliases follow the camelCase wire contract
(``accountId``, ``modelId``, ``inputTokens``, ``outputTokens``,
``usageRef``); snake_case names are accepted as well.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UsageEvent(BaseModel):
    """A single model call to be charged.

    Attributes
    ----------
    account_id:
        Account that pays for the call.
    model_id:
        Key into the pricing table.
    input_tokens:
        Prompt tokens reported by the provider.
    output_tokens:
        Completion tokens reported by the provider.
    usage_ref:
        Unique id of the chat turn; the idempotency key for the debit and
        the handle for check-before-retry.
    timestamp:
        When the call completed (UTC).
    metadata:
        Additional context stored on the transaction (conversation ids etc.).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    account_id: str = Field(..., alias="accountId", min_length=1)
    model_id: str = Field(..., alias="modelId", min_length=1)
    input_tokens: int = Field(..., alias="inputTokens", ge=0)
    output_tokens: int = Field(..., alias="outputTokens", ge=0)
    usage_ref: str = Field(default_factory=lambda: f"use-{uuid.uuid4().hex[:12]}", alias="usageRef", min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict)
