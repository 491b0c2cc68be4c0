"""Paging for list queries: the request side (PageQuery) and the response envelope."""

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

ItemT = TypeVar("ItemT")


class PageQuery(BaseModel):
    page: int = Field(1, ge=1, le=1000)
    limit: int = Field(20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, query: PageQuery, total: int) -> "PaginationMeta":
        # An empty result still reports one (empty) page
        total_pages = max(1, -(-total // query.limit))
        return cls(
            page=query.page,
            limit=query.limit,
            total=total,
            total_pages=total_pages,
            has_next=query.page < total_pages,
            has_prev=query.page > 1,
        )


class PaginatedResponse(BaseModel, Generic[ItemT]):
    data: list[ItemT] = Field(default_factory=list)
    pagination: PaginationMeta
