"""通用 Schema"""

from pydantic import BaseModel


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    has_more: bool


def build_pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, has_more=total > page * limit)


class SuccessResponse(BaseModel):
    success: bool = True
    message: str = ""
