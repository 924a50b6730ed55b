from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from app.services.whatsapp_service import (
    check_test_message,
    create_group,
    deactivate_group,
    get_group,
    group_stats,
    list_groups,
    recent_invoices,
    serialize_group,
    update_group,
)
from core.models.database import get_session
from core.models.schemas import GroupCreateRequest, GroupStatsPeriod, GroupTestRequest, GroupUpdateRequest
from core.utils.error_handler import GroupAlreadyExistsError, GroupInactiveError, GroupNotFoundError
from core.utils.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


@router.post("/groups")
async def connect_group(request: GroupCreateRequest):
    """Connect a WhatsApp group for invoice intake"""
    session = get_session()
    try:
        group = create_group(session, request)
        return JSONResponse(
            status_code=201,
            content={
                "message": "WhatsApp group connected successfully",
                "group": serialize_group(group, detail=True),
            }
        )
    except GroupAlreadyExistsError as e:
        raise HTTPException(
            status_code=409,
            detail={"error": "Group already connected", "group": serialize_group(e.group)}
        )
    finally:
        session.close()


@router.get("/groups")
async def get_groups(
    active: bool = Query(True),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0)
):
    session = get_session()
    try:
        return list_groups(session, active_only=active, limit=limit, offset=offset)
    finally:
        session.close()


@router.get("/groups/{group_id}")
async def get_group_detail(group_id: str):
    """Group settings with its ten most recent invoices"""
    session = get_session()
    try:
        group = get_group(session, group_id)
        return {
            **serialize_group(group, detail=True),
            "recentInvoices": recent_invoices(session, group_id),
        }
    except GroupNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    finally:
        session.close()


@router.put("/groups/{group_id}")
async def update_group_settings(group_id: str, request: GroupUpdateRequest):
    session = get_session()
    try:
        group = update_group(session, group_id, request.model_dump(exclude_unset=True))
        return {
            "message": "Group updated successfully",
            "group": serialize_group(group, detail=True),
        }
    except GroupNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    finally:
        session.close()


@router.delete("/groups/{group_id}")
async def disconnect_group(group_id: str):
    session = get_session()
    try:
        deactivate_group(session, group_id)
        return {"message": "Group disconnected successfully"}
    except GroupNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    finally:
        session.close()


@router.get("/groups/{group_id}/stats")
async def get_group_stats(group_id: str, period: GroupStatsPeriod = Query(GroupStatsPeriod.MONTH)):
    session = get_session()
    try:
        return group_stats(session, group_id, period.value)
    except GroupNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    finally:
        session.close()


@router.post("/groups/{group_id}/test")
async def test_group_keywords(group_id: str, request: GroupTestRequest):
    """Check whether a sample message would trigger invoice processing"""
    session = get_session()
    try:
        return check_test_message(get_group(session, group_id), request.message)
    except GroupNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except GroupInactiveError as e:
        raise HTTPException(status_code=400, detail=e.message)
    finally:
        session.close()
