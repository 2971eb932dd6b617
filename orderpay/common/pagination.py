"""Page/limit pagination over SQLAlchemy select statements."""

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select

from orderpay.common.errors import ValidationError


MAX_PAGE_SIZE = 100


@dataclass
class Page:
    items: list[Any] = field(default_factory=list)
    page: int = 1
    limit: int = 10
    total: int = 0

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0


def validate_page(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")


def paginate(db, stmt, page: int, limit: int) -> Page:
    """Run `stmt` (already ordered) for one page and count the full result."""

    validate_page(page, limit)
    total = db.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    items = db.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    return Page(items=list(items), page=page, limit=limit, total=int(total))
