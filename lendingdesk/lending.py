"""Lending lifecycle: lend, return and overdue queries.

Copy counts and lending records are kept consistent without multi-document
transactions. Each step is a conditional single-document update:

* lend decrements ``available_copies`` only while it is above zero, then
  inserts the lending; a failed or cancelled insert gives the copy back.
* return flips the lending out of a non-RETURNED state, then increments
  ``available_copies`` only while it is below ``total_copies``; a failed
  or interrupted increment restores the lending.

Datetimes are written to Mongo as naive UTC.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .crud import get_reader
from .exceptions import (
    BookNotAvailableError,
    BookNotFoundError,
    DatabaseError,
    InventoryConflictError,
    LendingAlreadyReturnedError,
    LendingNotFoundError,
)
from .models import LendingModel, LendingStatus
from .reporting import days_overdue
from .schemas import (
    BookRef,
    LendingCreate,
    LendingSchema,
    OverdueLendingSchema,
    ReaderRef,
)
from .storage import to_object_id

logger = logging.getLogger(__name__)

RETURNED = LendingStatus.RETURNED.value
DEFAULT_LENDING_DAYS = 14


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _store_time(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _overdue_query(now: datetime) -> dict:
    return {"status": {"$ne": RETURNED}, "due_date": {"$lt": _store_time(now)}}


async def _populate(
    db, lendings: List[LendingModel], now: datetime
) -> List[LendingSchema]:
    book_ids = list({to_object_id(lending.book) for lending in lendings})
    reader_ids = list({to_object_id(lending.reader) for lending in lendings})

    books: Dict[str, BookRef] = {}
    readers: Dict[str, ReaderRef] = {}
    if book_ids:
        async for book in db.books.find({"_id": {"$in": book_ids}}):
            books[str(book["_id"])] = BookRef(
                id=book["_id"],
                title=book["title"],
                available_copies=book.get("available_copies"),
                total_copies=book.get("total_copies"),
            )
    if reader_ids:
        async for reader in db.readers.find({"_id": {"$in": reader_ids}}):
            readers[str(reader["_id"])] = ReaderRef(id=reader["_id"], name=reader["name"])

    return [
        LendingSchema(
            **lending.model_dump(exclude={"book", "reader", "status"}),
            book=books.get(lending.book),
            reader=readers.get(lending.reader),
            status=lending.effective_status(now),
        )
        for lending in lendings
    ]


async def _release_copy(db, book_oid):
    await db.books.update_one({"_id": book_oid}, {"$inc": {"available_copies": 1}})
    logger.warning(f"Lending insert failed, copy of book {book_oid} released")


async def _restock(db, book_oid) -> Optional[dict]:
    book = await db.books.find_one({"_id": book_oid})
    if book is None:
        return None
    return await db.books.find_one_and_update(
        {
            "_id": book_oid,
            "total_copies": book["total_copies"],
            "available_copies": {"$lt": book["total_copies"]},
        },
        {"$inc": {"available_copies": 1}},
        return_document=ReturnDocument.AFTER,
    )


async def _reopen_lending(db, previous: dict):
    await db.lendings.update_one(
        {"_id": previous["_id"], "status": RETURNED},
        {
            "$set": {
                "status": previous["status"],
                "returned_at": previous.get("returned_at"),
                "returned_by": previous.get("returned_by"),
            }
        },
    )
    logger.warning(f"Restock failed, lending {previous['_id']} reopened")


async def lend_book(
    db,
    request: LendingCreate,
    lent_by: Optional[str] = None,
    now: Optional[datetime] = None,
    default_days: int = DEFAULT_LENDING_DAYS,
) -> LendingSchema:
    now = now or utcnow()
    book_oid = to_object_id(request.book_id)
    if book_oid is None:
        raise BookNotFoundError(request.book_id)
    reader = await get_reader(db, request.reader_id)

    book = await db.books.find_one_and_update(
        {"_id": book_oid, "available_copies": {"$gt": 0}},
        {"$inc": {"available_copies": -1}},
        return_document=ReturnDocument.AFTER,
    )
    if book is None:
        if await db.books.count_documents({"_id": book_oid}) == 0:
            raise BookNotFoundError(request.book_id)
        logger.warning(f"Book {request.book_id} is out of stock")
        raise BookNotAvailableError(request.book_id)

    duration = request.duration_days or default_days
    document = {
        "book": book_oid,
        "reader": to_object_id(reader.id),
        "borrowed_at": _store_time(now),
        "due_date": _store_time(now + timedelta(days=duration)),
        "returned_at": None,
        "status": LendingStatus.BORROWED.value,
        "lent_by": to_object_id(lent_by),
    }
    try:
        result = await db.lendings.insert_one(document)
    except PyMongoError as e:
        await _release_copy(db, book_oid)
        raise DatabaseError("lend book", str(e))
    except BaseException:
        # Cancelled or interrupted mid-insert.
        await _release_copy(db, book_oid)
        raise

    lending = LendingModel.model_validate({**document, "_id": result.inserted_id})
    logger.info(
        f"Lent book {request.book_id} to reader {reader.id} until {lending.due_date:%Y-%m-%d}"
        f" ({book['available_copies']} copies left)"
    )
    return (await _populate(db, [lending], now))[0]


async def return_book(
    db,
    lending_id: str,
    returned_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LendingSchema:
    now = now or utcnow()
    oid = to_object_id(lending_id)
    if oid is None:
        raise LendingNotFoundError(lending_id)

    previous = await db.lendings.find_one_and_update(
        {"_id": oid, "status": {"$ne": RETURNED}},
        {
            "$set": {
                "status": RETURNED,
                "returned_at": _store_time(now),
                "returned_by": to_object_id(returned_by),
            }
        },
        return_document=ReturnDocument.BEFORE,
    )
    if previous is None:
        if await db.lendings.count_documents({"_id": oid}) == 0:
            raise LendingNotFoundError(lending_id)
        logger.warning(f"Lending {lending_id} was already returned")
        raise LendingAlreadyReturnedError(lending_id)

    book_oid = previous["book"]
    try:
        restocked = await _restock(db, book_oid)
    except PyMongoError as e:
        await _reopen_lending(db, previous)
        raise DatabaseError("return book", str(e))
    except BaseException:
        await _reopen_lending(db, previous)
        raise
    if restocked is None:
        await _reopen_lending(db, previous)
        raise InventoryConflictError(
            str(book_oid), "would break 0 <= available <= total on return"
        )

    lending = await get_lending_model(db, lending_id)
    logger.info(f"Lending {lending_id} returned, book {book_oid} restocked")
    return (await _populate(db, [lending], now))[0]


async def get_lending_model(db, lending_id: str) -> LendingModel:
    oid = to_object_id(lending_id)
    lending = await db.lendings.find_one({"_id": oid}) if oid else None
    if lending is None:
        raise LendingNotFoundError(lending_id)
    return LendingModel(**lending)


async def get_lending(db, lending_id: str, now: Optional[datetime] = None) -> LendingSchema:
    lending = await get_lending_model(db, lending_id)
    return (await _populate(db, [lending], now or utcnow()))[0]


async def get_lendings(
    db,
    status: Optional[LendingStatus] = None,
    reader_id: Optional[str] = None,
    book_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[LendingSchema]:
    now = now or utcnow()
    query = {}
    if status == LendingStatus.RETURNED:
        query["status"] = RETURNED
    elif status == LendingStatus.OVERDUE:
        query.update(_overdue_query(now))
    elif status == LendingStatus.BORROWED:
        query["status"] = {"$ne": RETURNED}
        query["due_date"] = {"$gte": _store_time(now)}
    for field, value in (("reader", reader_id), ("book", book_id)):
        if value is not None:
            oid = to_object_id(value)
            if oid is None:
                return []
            query[field] = oid

    lendings = [LendingModel(**lending) async for lending in db.lendings.find(query)]
    lendings.sort(key=lambda lending: lending.borrowed_at, reverse=True)
    return await _populate(db, lendings, now)


async def get_overdue_lendings(
    db, now: Optional[datetime] = None
) -> List[OverdueLendingSchema]:
    """Lendings not returned whose due date is strictly before ``now``.

    Records still marked BORROWED are persisted as OVERDUE on the way out.
    """
    now = now or utcnow()
    lendings = [
        LendingModel(**lending) async for lending in db.lendings.find(_overdue_query(now))
    ]
    stale = [
        to_object_id(lending.id)
        for lending in lendings
        if lending.status == LendingStatus.BORROWED
    ]
    if stale:
        await db.lendings.update_many(
            {"_id": {"$in": stale}, "status": LendingStatus.BORROWED.value},
            {"$set": {"status": LendingStatus.OVERDUE.value}},
        )
    lendings.sort(key=lambda lending: lending.due_date)

    populated = await _populate(db, lendings, now)
    return [
        OverdueLendingSchema(
            **lending.model_dump(), days_overdue=days_overdue(lending.due_date, now)
        )
        for lending in populated
    ]
