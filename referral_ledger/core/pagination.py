from dataclasses import dataclass, field
from typing import Any, Generic, List, Optional, Tuple, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_ledger.config import settings


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


def clamp_page(page: Optional[int], page_size: Optional[int]) -> Tuple[int, int]:
    """Coerce page >= 1 and 1 <= page_size <= MAX_PAGE_SIZE."""
    page = max(1, page or 1)
    page_size = page_size or settings.DEFAULT_PAGE_SIZE
    page_size = max(1, min(page_size, settings.MAX_PAGE_SIZE))
    return page, page_size


async def paginate(
    db: AsyncSession,
    query: Select,
    page: Optional[int] = None,
    page_size: Optional[int] = None,
) -> Page[Any]:
    """Run a count query and an offset/limit query for the same select."""
    page, page_size = clamp_page(page, page_size)

    count_query = select(func.count()).select_from(query.order_by(None).subquery())
    total = (await db.execute(count_query)).scalar() or 0

    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    items = list(result.scalars().all())

    return Page(items=items, total=total, page=page, page_size=page_size)
