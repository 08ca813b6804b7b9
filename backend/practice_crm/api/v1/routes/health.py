from fastapi import APIRouter, Depends

from ...deps import get_registry
from ....services.segment_registry import SegmentRegistry


router = APIRouter()


@router.get("/health")
def health(registry: SegmentRegistry = Depends(get_registry)):
    return {"ok": True, "segments": len(registry)}
