import logging
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .auth import hash_password
from .exceptions import (
    BookNotFoundError,
    CategoryNotFoundError,
    DatabaseError,
    DuplicateCategoryError,
    EmailAlreadyRegisteredError,
    InvalidBookDataError,
    InventoryConflictError,
    ReaderNotFoundError,
    ResourceInUseError,
    UserNotFoundError,
)
from .models import BookModel, CategoryModel, LendingStatus, ReaderModel, UserModel
from .schemas import (
    BookCreate,
    BookSchema,
    BookUpdate,
    CategoryCreate,
    CategorySchema,
    CategoryUpdate,
    ReaderCreate,
    ReaderUpdate,
    UserCreate,
)
from .storage import to_object_id

logger = logging.getLogger(__name__)

OPEN_LENDING = {"status": {"$ne": LendingStatus.RETURNED.value}}


# Users


async def create_user(db, user: UserCreate) -> UserModel:
    document = {
        "name": user.name,
        "email": user.email,
        "password": hash_password(user.password),
    }
    try:
        result = await db.users.insert_one(document)
    except DuplicateKeyError:
        raise EmailAlreadyRegisteredError(user.email)
    except PyMongoError as e:
        raise DatabaseError("create user", str(e))
    return UserModel.model_validate({**document, "_id": result.inserted_id})


async def get_user_by_email(db, email: str) -> UserModel:
    user = await db.users.find_one({"email": email})
    if user is None:
        raise UserNotFoundError(email)
    return UserModel(**user)


async def get_user(db, user_id: str) -> Optional[UserModel]:
    oid = to_object_id(user_id)
    if oid is None:
        return None
    user = await db.users.find_one({"_id": oid})
    return UserModel(**user) if user else None


async def get_all_users(db) -> List[UserModel]:
    cursor = db.users.find()
    return [UserModel(**user) async for user in cursor]


# Categories


async def create_category(db, category: CategoryCreate) -> CategoryModel:
    document = category.model_dump()
    try:
        result = await db.categories.insert_one(document)
    except DuplicateKeyError:
        raise DuplicateCategoryError(category.name)
    return CategoryModel.model_validate({**document, "_id": result.inserted_id})


async def get_categories(db) -> List[CategoryModel]:
    cursor = db.categories.find()
    return [CategoryModel(**category) async for category in cursor]


async def get_category(db, category_id: str) -> CategoryModel:
    oid = to_object_id(category_id)
    category = await db.categories.find_one({"_id": oid}) if oid else None
    if category is None:
        raise CategoryNotFoundError(category_id)
    return CategoryModel(**category)


async def update_category(
    db, category_id: str, category_update: CategoryUpdate
) -> CategoryModel:
    oid = to_object_id(category_id)
    if oid is None:
        raise CategoryNotFoundError(category_id)
    update_data = category_update.model_dump(exclude_unset=True, exclude_none=True)
    if not update_data:
        return await get_category(db, category_id)
    try:
        updated = await db.categories.find_one_and_update(
            {"_id": oid}, {"$set": update_data}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise DuplicateCategoryError(update_data["name"])
    if updated is None:
        raise CategoryNotFoundError(category_id)
    return CategoryModel(**updated)


async def delete_category(db, category_id: str):
    oid = to_object_id(category_id)
    if oid is None or await db.categories.count_documents({"_id": oid}) == 0:
        raise CategoryNotFoundError(category_id)
    in_use = await db.books.count_documents({"category": oid})
    if in_use:
        raise ResourceInUseError(
            "Category", category_id, f"{in_use} book(s) still reference it"
        )
    result = await db.categories.delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise CategoryNotFoundError(category_id)


# Books


async def _category_index(db, category_ids: Iterable) -> Dict[str, CategorySchema]:
    ids = {oid for oid in category_ids if oid is not None}
    if not ids:
        return {}
    cursor = db.categories.find({"_id": {"$in": list(ids)}})
    return {
        str(category["_id"]): CategorySchema(id=category["_id"], name=category["name"])
        async for category in cursor
    }


def _book_schema(book: BookModel, categories: Dict[str, CategorySchema]) -> BookSchema:
    return BookSchema(
        **book.model_dump(exclude={"category"}),
        category=categories.get(book.category) if book.category else None,
    )


async def _require_category(db, category_id: str) -> ObjectId:
    oid = to_object_id(category_id)
    if oid is None or await db.categories.count_documents({"_id": oid}) == 0:
        raise CategoryNotFoundError(category_id)
    return oid


async def create_book(db, book: BookCreate) -> BookSchema:
    category_oid = await _require_category(db, book.category)
    document = {
        **book.model_dump(),
        "category": category_oid,
        "available_copies": book.total_copies,
    }
    try:
        result = await db.books.insert_one(document)
    except PyMongoError as e:
        raise DatabaseError("create book", str(e))
    created = BookModel.model_validate({**document, "_id": result.inserted_id})
    logger.info(f"Created book {created.id}: {created.title}")
    return _book_schema(created, await _category_index(db, [category_oid]))


async def get_book_model(db, book_id: str) -> BookModel:
    oid = to_object_id(book_id)
    book = await db.books.find_one({"_id": oid}) if oid else None
    if book is None:
        raise BookNotFoundError(book_id)
    return BookModel(**book)


async def get_book(db, book_id: str) -> BookSchema:
    book = await get_book_model(db, book_id)
    categories = await _category_index(db, [to_object_id(book.category)])
    return _book_schema(book, categories)


async def get_books(db) -> List[BookSchema]:
    books = [BookModel(**book) async for book in db.books.find()]
    categories = await _category_index(db, (to_object_id(b.category) for b in books))
    return [_book_schema(book, categories) for book in books]


async def update_book(db, book_id: str, book_update: BookUpdate) -> BookSchema:
    current = await get_book_model(db, book_id)
    update_data = book_update.model_dump(exclude_unset=True, exclude_none=True)

    if "category" in update_data:
        update_data["category"] = await _require_category(db, update_data["category"])

    total = update_data.get("total_copies", current.total_copies)
    if "available_copies" in update_data:
        available = update_data["available_copies"]
    else:
        # Keep the number of copies out on loan unchanged.
        available = current.available_copies + (total - current.total_copies)
    if not 0 <= available <= total:
        raise InvalidBookDataError(
            f"available copies ({available}) must be between 0 and total copies ({total})"
        )
    lent_out = await db.lendings.count_documents(
        {"book": ObjectId(current.id), **OPEN_LENDING}
    )
    if total - available < lent_out:
        raise InvalidBookDataError(
            f"{lent_out} copy(ies) are lent out, so at most {total - lent_out}"
            f" of {total} can be available"
        )
    update_data["total_copies"] = total
    update_data["available_copies"] = available

    # Conditional on the counts read above so a concurrent lend or return
    # cannot be overwritten.
    updated = await db.books.find_one_and_update(
        {
            "_id": ObjectId(current.id),
            "total_copies": current.total_copies,
            "available_copies": current.available_copies,
        },
        {"$set": update_data},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InventoryConflictError(book_id, "changed during the update, retry")
    book = BookModel(**updated)
    categories = await _category_index(db, [to_object_id(book.category)])
    return _book_schema(book, categories)


async def delete_book(db, book_id: str):
    oid = to_object_id(book_id)
    if oid is None or await db.books.count_documents({"_id": oid}) == 0:
        raise BookNotFoundError(book_id)
    open_lendings = await db.lendings.count_documents({"book": oid, **OPEN_LENDING})
    if open_lendings:
        raise ResourceInUseError(
            "Book", book_id, f"{open_lendings} copy(ies) are still lent out"
        )
    result = await db.books.delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise BookNotFoundError(book_id)


# Readers


async def create_reader(db, reader: ReaderCreate) -> ReaderModel:
    document = reader.model_dump()
    result = await db.readers.insert_one(document)
    return ReaderModel.model_validate({**document, "_id": result.inserted_id})


async def get_readers(db) -> List[ReaderModel]:
    cursor = db.readers.find()
    return [ReaderModel(**reader) async for reader in cursor]


async def get_reader(db, reader_id: str) -> ReaderModel:
    oid = to_object_id(reader_id)
    reader = await db.readers.find_one({"_id": oid}) if oid else None
    if reader is None:
        raise ReaderNotFoundError(reader_id)
    return ReaderModel(**reader)


async def update_reader(db, reader_id: str, reader_update: ReaderUpdate) -> ReaderModel:
    oid = to_object_id(reader_id)
    if oid is None:
        raise ReaderNotFoundError(reader_id)
    update_data = reader_update.model_dump(exclude_unset=True, exclude_none=True)
    if not update_data:
        return await get_reader(db, reader_id)
    updated = await db.readers.find_one_and_update(
        {"_id": oid}, {"$set": update_data}, return_document=ReturnDocument.AFTER
    )
    if updated is None:
        raise ReaderNotFoundError(reader_id)
    return ReaderModel(**updated)


async def delete_reader(db, reader_id: str):
    oid = to_object_id(reader_id)
    if oid is None or await db.readers.count_documents({"_id": oid}) == 0:
        raise ReaderNotFoundError(reader_id)
    open_lendings = await db.lendings.count_documents({"reader": oid, **OPEN_LENDING})
    if open_lendings:
        raise ResourceInUseError(
            "Reader", reader_id, f"{open_lendings} lending(s) are not returned yet"
        )
    result = await db.readers.delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise ReaderNotFoundError(reader_id)
