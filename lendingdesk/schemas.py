import re
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .models import LendingStatus, PyObjectId, UTCDateTime

EMAIL_PATTERN = re.compile(r"^\S+@\S+\.\S+$")


def _normalize_email(value: str) -> str:
    value = value.strip().lower()
    if not EMAIL_PATTERN.match(value):
        raise ValueError("please fill a valid email format")
    return value


class Schema(BaseModel):
    # Strip surrounding whitespace before length checks run.
    model_config = {"str_strip_whitespace": True}


# Users / auth


class UserCreate(BaseModel):
    name: str = Field(min_length=2)
    email: str
    password: str = Field(min_length=6)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _normalize_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.strip().lower()


class UserSchema(BaseModel):
    id: PyObjectId
    name: str
    email: str


class LoginResponse(UserSchema):
    access_token: str


class TokenResponse(BaseModel):
    access_token: str


class MessageResponse(BaseModel):
    message: str


# Categories


class CategoryCreate(Schema):
    name: str = Field(min_length=2, max_length=50)


class CategoryUpdate(Schema):
    name: Optional[str] = Field(None, min_length=2, max_length=50)


class CategorySchema(BaseModel):
    id: PyObjectId
    name: str


# Books


class BookCreate(Schema):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    category: str
    total_copies: int = Field(ge=1)


class BookUpdate(Schema):
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    isbn: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=1)
    available_copies: Optional[int] = Field(None, ge=0)


class BookSchema(BaseModel):
    id: PyObjectId
    title: str
    author: str
    isbn: str
    category: Optional[CategorySchema] = None
    total_copies: int
    available_copies: int


# Readers


class ReaderCreate(Schema):
    name: str = Field(min_length=2)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_email(value) if value else None


class ReaderUpdate(ReaderCreate):
    name: Optional[str] = Field(None, min_length=2)


class ReaderSchema(BaseModel):
    id: PyObjectId
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


# Lendings


class LendingCreate(BaseModel):
    book_id: str
    reader_id: str
    duration_days: Optional[int] = Field(None, ge=1, le=365)


class BookRef(BaseModel):
    id: PyObjectId
    title: str
    available_copies: Optional[int] = None
    total_copies: Optional[int] = None


class ReaderRef(BaseModel):
    id: PyObjectId
    name: str


class LendingSchema(BaseModel):
    id: PyObjectId
    book: Optional[BookRef] = None
    reader: Optional[ReaderRef] = None
    borrowed_at: UTCDateTime
    due_date: UTCDateTime
    returned_at: Optional[UTCDateTime] = None
    status: LendingStatus
    lent_by: Optional[PyObjectId] = None
    returned_by: Optional[PyObjectId] = None


class OverdueLendingSchema(LendingSchema):
    days_overdue: int


class OverdueGroupSchema(BaseModel):
    reader_id: str
    reader_name: str
    items: List[OverdueLendingSchema]


class OverdueNoticeResponse(BaseModel):
    queued: int
    readers: List[str]
