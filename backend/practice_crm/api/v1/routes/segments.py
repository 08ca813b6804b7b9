"""
API routes for client audience segments.

Error responses carry {"error": <code>, "message": ...} so the UI can tell
not-found, removed, permission and validation failures apart.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ...deps import get_registry
from ....core.exceptions import (
    SegmentError,
    SegmentNotFoundError,
    SegmentPermissionError,
    SegmentRemovedError,
    SegmentValidationError,
)
from ....core.logging_config import get_logger
from ....schemas.segment import (
    Segment,
    SegmentActiveRequest,
    SegmentCreate,
    SegmentListResponse,
    SegmentPatch,
    SegmentTagsResponse,
)
from ....services.segment_registry import SegmentRegistry

logger = get_logger(__name__)

router = APIRouter(prefix="/segments")


def http_error(e: SegmentError) -> HTTPException:
    if isinstance(e, SegmentRemovedError):
        status = 410
    elif isinstance(e, SegmentNotFoundError):
        status = 404
    elif isinstance(e, SegmentPermissionError):
        status = 403
    elif isinstance(e, SegmentValidationError):
        status = 422
    else:
        status = 400
    detail = {"error": e.code, "message": e.message}
    if e.segment_id:
        detail["segmentId"] = e.segment_id
    if isinstance(e, SegmentValidationError) and e.errors:
        detail["errors"] = e.errors
    return HTTPException(status_code=status, detail=detail)


@router.get("/fields")
def list_fields(registry: SegmentRegistry = Depends(get_registry)):
    """Field metadata for the condition editor: labels, operators, value options."""
    return {"fields": registry.evaluator.fields.describe()}


@router.get("/tags", response_model=SegmentTagsResponse)
def list_tags(registry: SegmentRegistry = Depends(get_registry)):
    return SegmentTagsResponse(tags=registry.all_tags())


@router.get("", response_model=SegmentListResponse)
def list_segments(
    search: Optional[str] = Query(None, description="Case-insensitive match on name/description"),
    tag: Optional[str] = Query(None, description="Exact tag"),
    active_only: bool = Query(False, description="Only active segments"),
    registry: SegmentRegistry = Depends(get_registry),
):
    items = registry.list_by_filter(search=search, tag=tag, active_only=active_only)
    return SegmentListResponse(total=len(items), items=items)


@router.post("", response_model=Segment, status_code=201)
def create_segment(body: SegmentCreate, registry: SegmentRegistry = Depends(get_registry)):
    try:
        return registry.create(
            name=body.name,
            description=body.description,
            tags=body.tags,
            filter=body.filter,
        )
    except SegmentError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception("Error creating segment")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{segment_id}", response_model=Segment)
def get_segment(segment_id: str, registry: SegmentRegistry = Depends(get_registry)):
    try:
        return registry.get(segment_id)
    except SegmentError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception(f"Error loading segment {segment_id}")
        raise HTTPException(status_code=500, detail=str(e))


@router.patch("/{segment_id}", response_model=Segment)
def update_segment(segment_id: str, body: SegmentPatch, registry: SegmentRegistry = Depends(get_registry)):
    try:
        return registry.update(segment_id, body)
    except SegmentError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception(f"Error updating segment {segment_id}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/{segment_id}")
def delete_segment(segment_id: str, registry: SegmentRegistry = Depends(get_registry)):
    try:
        registry.delete(segment_id)
    except SegmentError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception(f"Error deleting segment {segment_id}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True, "id": segment_id}


@router.post("/{segment_id}/duplicate", response_model=Segment, status_code=201)
def duplicate_segment(segment_id: str, registry: SegmentRegistry = Depends(get_registry)):
    try:
        return registry.duplicate(segment_id)
    except SegmentError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception(f"Error duplicating segment {segment_id}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{segment_id}/active", response_model=Segment)
def set_segment_active(
    segment_id: str,
    body: SegmentActiveRequest,
    registry: SegmentRegistry = Depends(get_registry),
):
    try:
        return registry.set_active(segment_id, body.is_active)
    except SegmentError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception(f"Error changing active state of segment {segment_id}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{segment_id}/recount", response_model=Segment)
def recount_segment(segment_id: str, registry: SegmentRegistry = Depends(get_registry)):
    try:
        return registry.recount(segment_id)
    except SegmentError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception(f"Error recounting segment {segment_id}")
        raise HTTPException(status_code=500, detail=str(e))
