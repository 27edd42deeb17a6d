from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from .. import schemas
from ..container import Services
from ..models import OperatorStatus
from ..realtime.gateway import OPERATOR_STATUS_CHANGED, Outbound
from ..services.operators import StatusChange
from .auth import verify_operator
from .deps import get_services

router = APIRouter(prefix="/operators", tags=["operators"])


def _status_changed(change: StatusChange) -> Outbound:
    operator = change.operator
    event = schemas.OperatorStatusChanged(operator_id=change.operator_id, operator_name=operator.name,
                                          status=operator.status)
    return Outbound.to_all(OPERATOR_STATUS_CHANGED, event.dump())


@router.get("", response_model=schemas.OperatorPage)
async def list_operators(
        status: Optional[OperatorStatus] = None,
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        services: Services = Depends(get_services),
):
    page = await services.operators.list_operators(status=status, limit=limit, offset=offset)
    return schemas.OperatorPage(
        operators=[schemas.OperatorOut.model_validate(o) for o in page.operators],
        pagination=schemas.Pagination(total=page.total, limit=page.limit, offset=page.offset,
                                      has_more=page.has_more),
    )


@router.post("", response_model=schemas.OperatorOut, status_code=status.HTTP_201_CREATED)
async def create_operator(
        body: schemas.OperatorCreate,
        services: Services = Depends(get_services),
        _: str = Depends(verify_operator),
):
    return await services.operators.create(body.name, body.email, operator_id=body.id)


@router.get("/online", response_model=List[schemas.OperatorOut])
async def online_operators(services: Services = Depends(get_services)):
    return await services.operators.list_online()


@router.get("/available", response_model=schemas.AvailableOperators)
async def available_operators(services: Services = Depends(get_services)):
    operators = await services.operators.list_available()
    return schemas.AvailableOperators(
        operators=[schemas.OperatorOut.model_validate(o) for o in operators],
        count=len(operators),
    )


@router.put("/batch/status", response_model=schemas.BatchStatusResult)
async def batch_update_status(
        body: schemas.BatchStatusUpdate,
        services: Services = Depends(get_services),
        _: str = Depends(verify_operator),
):
    changes = await services.operators.set_status_many(body.operator_ids, body.status)
    await services.gateway.deliver([_status_changed(change) for change in changes])
    return schemas.BatchStatusResult(
        updated_count=len(changes),
        operators=[schemas.OperatorOut.model_validate(c.operator) for c in changes],
    )


@router.get("/stats", response_model=schemas.OperatorStats)
async def operator_stats(services: Services = Depends(get_services)):
    return schemas.OperatorStats(**await services.operators.stats())


@router.post("/assign", response_model=schemas.AssignOut)
async def assign_operator(
        body: schemas.AssignRequest,
        services: Services = Depends(get_services),
        _: str = Depends(verify_operator),
):
    engine = services.assignment
    if body.session_id:
        result = await engine.assign_session(
            body.session_id, body.strategy, body.exclude_operator_ids, body.preferred_operator_id
        )
    else:
        result = await engine.choose(body.strategy, body.exclude_operator_ids, body.preferred_operator_id)
    return schemas.AssignOut(
        operator=schemas.OperatorOut.model_validate(result.operator),
        strategy=result.strategy.value,
        session=schemas.ChatSessionOut.model_validate(result.session) if result.session is not None else None,
    )


@router.get("/{operator_id}", response_model=schemas.OperatorOut)
async def get_operator(operator_id: str, services: Services = Depends(get_services)):
    return await services.operators.get(operator_id)


@router.get("/{operator_id}/sessions", response_model=List[schemas.ChatSessionOut])
async def operator_sessions(operator_id: str, services: Services = Depends(get_services)):
    await services.operators.get(operator_id)
    return await services.sessions.operator_sessions(operator_id)


@router.put("/{operator_id}/status", response_model=schemas.OperatorOut)
async def update_status(
        operator_id: str,
        body: schemas.OperatorStatusUpdate,
        services: Services = Depends(get_services),
        _: str = Depends(verify_operator),
):
    change = await services.operators.set_status(operator_id, body.status)
    await services.gateway.deliver([_status_changed(change)])
    return change.operator
