"""Shared response pieces for the API routers."""

import json
from datetime import datetime
from typing import Any, Optional

from fastapi import HTTPException
from pydantic import BaseModel

from bulkpay.engine.errors import BatchError


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    limit: int
    has_next: bool
    has_prev: bool


def paginate(page: int, limit: int, total: int) -> Pagination:
    total_pages = (total + limit - 1) // limit if limit else 1
    return Pagination(
        current_page=page,
        total_pages=total_pages,
        total_count=total,
        limit=limit,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


def http_error(e: BatchError) -> HTTPException:
    """Engine error → HTTPException whose detail is the error descriptor."""
    return HTTPException(status_code=e.status_code, detail=e.descriptor.to_dict())


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def load_json(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return None
