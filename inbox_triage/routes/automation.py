"""
Automation Rule API Routes
CRUD for the authenticated user's trigger/action rules plus built-in templates.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from inbox_triage.auth.verify import current_subject
from inbox_triage.errors import QueueNotInitializedError, RuleValidationError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.api.automation_response import (
    RuleResponse,
    RulesListResponse,
    RuleTemplatesResponse,
)
from inbox_triage.rules.engine import RulesEngine
from inbox_triage.rules.models import AutomationRule, RuleCreate, RuleUpdate
from inbox_triage.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/automation", tags=["automation"])


def _engine() -> RulesEngine:
    try:
        return get_runtime().rules_engine
    except QueueNotInitializedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e


def _to_response(rule: AutomationRule) -> RuleResponse:
    return RuleResponse(**rule.summary())


@router.get("/rules", response_model=RulesListResponse)
async def list_rules(user_id: str = Depends(current_subject)):
    """All rules for the user in execution order, including disabled ones."""
    rules = await _engine().list_rules(user_id)
    return RulesListResponse(rules=[_to_response(r) for r in rules], total=len(rules))


@router.post("/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(request: RuleCreate, user_id: str = Depends(current_subject)):
    try:
        rule = await _engine().create_rule(user_id, request)
    except RuleValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return _to_response(rule)


@router.patch("/rules/{rule_id}", response_model=RuleResponse)
async def update_rule(rule_id: str, request: RuleUpdate, user_id: str = Depends(current_subject)):
    """Partial update; the merged rule must still be valid."""
    try:
        rule = await _engine().update_rule(user_id, rule_id, request.model_dump(exclude_unset=True))
    except RuleValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    return _to_response(rule)


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, user_id: str = Depends(current_subject)):
    if not await _engine().delete_rule(user_id, rule_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    return {"success": True, "rule_id": rule_id}


@router.get("/templates", response_model=RuleTemplatesResponse)
async def rule_templates(user_id: str = Depends(current_subject)):
    return RuleTemplatesResponse(templates=_engine().templates())
