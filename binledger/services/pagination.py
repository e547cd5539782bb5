from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: list[T]
    total: int
    skip: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.skip + len(self.items) < self.total

    def as_dict(self, items: list[Any] | None = None) -> dict[str, Any]:
        return {
            "items": self.items if items is None else items,
            "total": self.total,
            "skip": self.skip,
            "limit": self.limit,
            "has_more": self.has_more,
        }


def paginate(db: Session, stmt: Select, *, skip: int = 0, limit: int = 50) -> Page:
    if skip < 0 or limit < 1:
        raise ValueError("skip must be >= 0 and limit >= 1")
    total = db.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    items = list(db.execute(stmt.offset(skip).limit(limit)).scalars().all())
    return Page(items=items, total=int(total), skip=skip, limit=limit)
