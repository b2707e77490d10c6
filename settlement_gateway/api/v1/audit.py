"""GET /v1/audit/{entity_type}/{entity_id} - State transition history"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from settlement_gateway.api.v1.schemas import AuditResponse, TransitionSchema
from settlement_gateway.domain.models import Transition
from settlement_gateway.infrastructure.database.repositories import TransitionRepository
from settlement_gateway.infrastructure.database.session import get_db
from settlement_gateway.infrastructure.observability.logging import log_transition

router = APIRouter()


def record_transition(db: Session, request_id: str, transition: Optional[Transition], entity_id: Optional[int] = None) -> None:
    """Append a transition to the audit trail (same transaction) and log it"""
    if transition is None:
        return
    if entity_id is not None:
        transition.entity_id = entity_id
    TransitionRepository(db).record(transition)
    log_transition(request_id, transition)


@router.get("/audit/{entity_type}/{entity_id}", response_model=AuditResponse)
def get_audit_trail(entity_type: str, entity_id: int, db: Session = Depends(get_db)):
    """Transitions of one entity, oldest first"""
    rows = TransitionRepository(db).list_for(entity_type, entity_id)
    return AuditResponse(
        entity_type=entity_type,
        entity_id=entity_id,
        transitions=[TransitionSchema.model_validate(r) for r in rows],
    )
