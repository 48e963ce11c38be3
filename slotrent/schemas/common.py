from typing import Any, Optional, List, Generic, TypeVar
from pydantic import BaseModel

T = TypeVar("T")


# Standard envelope: every endpoint responds with this
class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


# Paginated payload: used as `data` by all list endpoints
class PaginatedResponse(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def build(cls, items: List[Any], total: int, page: int, limit: int):
        return cls(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=(total + limit - 1) // limit if limit else 0,
        )


# Error envelope (rendered by the exception handlers in main.py)
class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    code: Optional[str] = None
    details: Optional[dict] = None
