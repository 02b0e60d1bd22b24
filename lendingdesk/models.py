from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field


def as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes that are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


PyObjectId = Annotated[str, BeforeValidator(str)]
UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]


class LendingStatus(str, Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"


class DocumentModel(BaseModel):
    id: PyObjectId = Field(alias="_id")

    model_config = ConfigDict(populate_by_name=True)


class UserModel(DocumentModel):
    name: str
    email: str
    password: str
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[UTCDateTime] = None


class CategoryModel(DocumentModel):
    name: str


class BookModel(DocumentModel):
    title: str
    author: str
    isbn: str
    category: Optional[PyObjectId] = None
    total_copies: int
    available_copies: int


class ReaderModel(DocumentModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class LendingModel(DocumentModel):
    book: PyObjectId
    reader: PyObjectId
    borrowed_at: UTCDateTime
    due_date: UTCDateTime
    returned_at: Optional[UTCDateTime] = None
    status: LendingStatus = LendingStatus.BORROWED
    lent_by: Optional[PyObjectId] = None
    returned_by: Optional[PyObjectId] = None

    def effective_status(self, now: datetime) -> LendingStatus:
        if self.returned_at is not None or self.status == LendingStatus.RETURNED:
            return LendingStatus.RETURNED
        if self.due_date < as_utc(now):
            return LendingStatus.OVERDUE
        return LendingStatus.BORROWED
