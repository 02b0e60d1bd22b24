"""Derived, presentation-only views over already fetched lists.

Day counts are calendar-day differences in UTC; the time of day is ignored.
"""

from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Union

from .models import as_utc
from .schemas import (
    BookSchema,
    LendingSchema,
    OverdueGroupSchema,
    OverdueLendingSchema,
    ReaderSchema,
)

DateLike = Union[date, datetime]


def _utc_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def _today(today: Optional[DateLike]) -> date:
    return _utc_date(today or datetime.now(timezone.utc))


def days_overdue(due_date: DateLike, today: Optional[DateLike] = None) -> int:
    diff = (_today(today) - _utc_date(due_date)).days
    return diff if diff > 0 else 0


def days_since_borrowed(borrowed_at: DateLike, today: Optional[DateLike] = None) -> int:
    diff = (_today(today) - _utc_date(borrowed_at)).days
    return diff if diff > 0 else 0


def is_overdue(lending: LendingSchema, now: Optional[datetime] = None) -> bool:
    if lending.returned_at is not None or lending.status == "RETURNED":
        return False
    return lending.due_date < as_utc(now or datetime.now(timezone.utc))


def group_by_reader(lendings: Iterable[OverdueLendingSchema]) -> List[OverdueGroupSchema]:
    groups = {}
    for lending in lendings:
        reader_id = lending.reader.id if lending.reader else "unknown"
        reader_name = lending.reader.name if lending.reader else "Unknown Reader"
        group = groups.setdefault(
            reader_id,
            {"reader_id": reader_id, "reader_name": reader_name, "items": []},
        )
        group["items"].append(lending)
    return sorted(
        (OverdueGroupSchema(**group) for group in groups.values()),
        key=lambda group: group.reader_name.lower(),
    )


def search_books(
    books: Iterable[BookSchema], term: str = "", category_id: Optional[str] = None
) -> List[BookSchema]:
    term = term.strip().lower()
    matches = []
    for book in books:
        if category_id and (book.category is None or book.category.id != category_id):
            continue
        if term and not any(
            term in field.lower() for field in (book.title, book.author, book.isbn)
        ):
            continue
        matches.append(book)
    return matches


def search_readers(readers: Iterable[ReaderSchema], term: str = "") -> List[ReaderSchema]:
    term = term.strip().lower()
    if not term:
        return list(readers)
    return [
        reader
        for reader in readers
        if term in reader.name.lower()
        or (reader.email and term in reader.email)
        or (reader.phone and term in reader.phone)
    ]
