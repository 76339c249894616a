"""
Automation rule API response models.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class RuleResponse(BaseModel):
    id: str
    name: str
    description: str | None = None
    enabled: bool
    trigger_type: str
    trigger_value: Any = None
    trigger_operator: str | None = None
    action_type: str
    action_value: Any = None
    priority: int
    execution_count: int = 0
    last_executed: datetime | None = None
    created_at: datetime
    updated_at: datetime


class RulesListResponse(BaseModel):
    rules: list[RuleResponse]
    total: int = Field(..., description="Number of rules, including disabled ones")


class RuleTemplatesResponse(BaseModel):
    templates: list[dict[str, Any]]
