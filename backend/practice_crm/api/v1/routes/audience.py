from fastapi import APIRouter, Depends, HTTPException

from ...deps import get_registry
from ....core.exceptions import SegmentError
from ....core.logging_config import get_logger
from ....schemas.audience import AudiencePreviewRequest, AudiencePreviewResponse
from ....services.audience_service import audience_preview
from ....services.segment_registry import SegmentRegistry
from .segments import http_error

logger = get_logger(__name__)

router = APIRouter(prefix="/audience")


@router.post("/preview", response_model=AudiencePreviewResponse)
def post_audience_preview(
    req: AudiencePreviewRequest,
    registry: SegmentRegistry = Depends(get_registry),
):
    try:
        return audience_preview(registry, req)
    except SegmentError as e:
        raise http_error(e)
    except Exception as e:
        logger.exception("Error resolving audience")
        raise HTTPException(status_code=500, detail=str(e))
