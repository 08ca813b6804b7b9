from __future__ import annotations

from fastapi import Request

from ..services.segment_registry import SegmentRegistry


def get_registry(request: Request) -> SegmentRegistry:
    # Built once in create_app() and kept on app.state
    return request.app.state.segment_registry
