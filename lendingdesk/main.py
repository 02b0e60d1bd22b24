import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .auth import Principal, TokenService, verify_password
from .config import Settings, settings
from .crud import (
    create_book,
    create_category,
    create_reader,
    create_user,
    delete_book,
    delete_category,
    delete_reader,
    get_all_users,
    get_book,
    get_books,
    get_categories,
    get_category,
    get_reader,
    get_readers,
    get_user,
    get_user_by_email,
    update_book,
    update_category,
    update_reader,
)
from .exceptions import (
    AccessTokenError,
    InvalidCredentialsError,
    MessagingUnavailableError,
    RefreshTokenError,
    add_exception_handlers,
)
from .internal_messaging import cleanup_messaging, publish_overdue_notices, setup_messaging
from .lending import (
    get_lending,
    get_lendings,
    get_overdue_lendings,
    lend_book,
    return_book,
)
from .models import LendingStatus
from .reporting import group_by_reader
from .schemas import (
    BookCreate,
    BookSchema,
    BookUpdate,
    CategoryCreate,
    CategorySchema,
    CategoryUpdate,
    LendingCreate,
    LendingSchema,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OverdueGroupSchema,
    OverdueLendingSchema,
    OverdueNoticeResponse,
    ReaderCreate,
    ReaderSchema,
    ReaderUpdate,
    TokenResponse,
    UserCreate,
    UserSchema,
)
from .storage import close_db_connection, ensure_indexes, get_database, init_db

# Set up logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        await init_db(app.state.settings.mongodb_url)
        app.state.db = get_database(app.state.settings.database_name)
        await ensure_indexes(app.state.db)
        await setup_messaging(app, app.state.settings)
    yield
    if not app.state.testing:
        await cleanup_messaging(app)
        logger.info("Closing database connection")
        await close_db_connection()


app = FastAPI(
    title="Library Lending API",
    lifespan=lifespan,
    description="Books, categories, readers and lendings for library staff",
    version="1.0.0",
)
app.state.settings = settings
app.state.token_service = TokenService(settings)

add_exception_handlers(app)

bearer_scheme = HTTPBearer(auto_error=False)


def get_db():
    return app.state.db


def get_settings() -> Settings:
    return app.state.settings


def get_token_service() -> TokenService:
    return app.state.token_service


def get_messenger():
    manager = getattr(app.state, "rabbitmq_manager", None)
    if manager is None:
        raise MessagingUnavailableError()
    return manager


def authenticate(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    tokens: TokenService = Depends(get_token_service),
) -> Principal:
    token = credentials.credentials if credentials else None
    return tokens.verify_access_token(token)


def _user_schema(user) -> UserSchema:
    return UserSchema(id=user.id, name=user.name, email=user.email)


# Auth

auth_router = APIRouter(prefix="/auth", tags=["auth"])


@auth_router.post("/signup", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
async def sign_up(user: UserCreate, db=Depends(get_db)):
    created = await create_user(db, user)
    logger.info(f"Registered user {created.id}")
    return _user_schema(created)


@auth_router.post("/login", response_model=LoginResponse)
async def login(
    credentials: LoginRequest,
    response: Response,
    db=Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
    config: Settings = Depends(get_settings),
):
    user = await get_user_by_email(db, credentials.email)
    if not verify_password(credentials.password, user.password):
        logger.warning(f"Failed login for user {user.id}")
        raise InvalidCredentialsError()

    access_token = tokens.create_access_token(user.id)
    refresh_token = tokens.create_refresh_token(user.id)
    response.set_cookie(
        key=config.refresh_cookie_name,
        value=refresh_token,
        max_age=config.refresh_token_ttl_seconds,
        path=config.refresh_cookie_path,
        httponly=True,
        secure=config.is_production,
        samesite="lax",
    )
    logger.info(f"User {user.id} logged in")
    return LoginResponse(
        id=user.id, name=user.name, email=user.email, access_token=access_token
    )


@auth_router.post("/refresh-token", response_model=TokenResponse)
async def refresh_token(
    request: Request,
    db=Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
    config: Settings = Depends(get_settings),
):
    principal = tokens.verify_refresh_token(
        request.cookies.get(config.refresh_cookie_name)
    )
    user = await get_user(db, principal.user_id)
    if user is None:
        raise RefreshTokenError("User not found")
    return TokenResponse(access_token=tokens.create_access_token(user.id))


@auth_router.post("/logout", response_model=MessageResponse)
async def logout(response: Response, config: Settings = Depends(get_settings)):
    response.delete_cookie(
        key=config.refresh_cookie_name,
        path=config.refresh_cookie_path,
        httponly=True,
        secure=config.is_production,
        samesite="lax",
    )
    return MessageResponse(message="Logout successfully")


@auth_router.get("/users", response_model=List[UserSchema])
async def list_users(db=Depends(get_db), principal: Principal = Depends(authenticate)):
    return [_user_schema(user) for user in await get_all_users(db)]


@auth_router.get("/me", response_model=UserSchema)
async def read_current_user(
    db=Depends(get_db), principal: Principal = Depends(authenticate)
):
    user = await get_user(db, principal.user_id)
    if user is None:
        raise AccessTokenError("User not found")
    return _user_schema(user)


# Categories

category_router = APIRouter(
    prefix="/categories", tags=["categories"], dependencies=[Depends(authenticate)]
)


@category_router.post("", response_model=CategorySchema, status_code=status.HTTP_201_CREATED)
async def add_category(category: CategoryCreate, db=Depends(get_db)):
    created = await create_category(db, category)
    return CategorySchema(**created.model_dump())


@category_router.get("", response_model=List[CategorySchema])
async def list_categories(db=Depends(get_db)):
    return [CategorySchema(**category.model_dump()) for category in await get_categories(db)]


@category_router.get("/{category_id}", response_model=CategorySchema)
async def read_category(category_id: str, db=Depends(get_db)):
    category = await get_category(db, category_id)
    return CategorySchema(**category.model_dump())


@category_router.put("/{category_id}", response_model=CategorySchema)
async def modify_category(
    category_id: str, category_update: CategoryUpdate, db=Depends(get_db)
):
    category = await update_category(db, category_id, category_update)
    return CategorySchema(**category.model_dump())


@category_router.delete("/{category_id}", response_model=MessageResponse)
async def remove_category(category_id: str, db=Depends(get_db)):
    await delete_category(db, category_id)
    return MessageResponse(message="Category deleted!")


# Books

book_router = APIRouter(prefix="/books", tags=["books"], dependencies=[Depends(authenticate)])


@book_router.post("", response_model=BookSchema, status_code=status.HTTP_201_CREATED)
async def add_book(book: BookCreate, db=Depends(get_db)):
    logger.info(f"Received request to add book: {book.title}")
    return await create_book(db, book)


@book_router.get("", response_model=List[BookSchema])
async def list_books(db=Depends(get_db)):
    return await get_books(db)


@book_router.get("/{book_id}", response_model=BookSchema)
async def read_book(book_id: str, db=Depends(get_db)):
    return await get_book(db, book_id)


@book_router.put("/{book_id}", response_model=BookSchema)
async def modify_book(book_id: str, book_update: BookUpdate, db=Depends(get_db)):
    return await update_book(db, book_id, book_update)


@book_router.delete("/{book_id}", response_model=MessageResponse)
async def remove_book(book_id: str, db=Depends(get_db)):
    await delete_book(db, book_id)
    return MessageResponse(message="Book deleted!")


# Readers

reader_router = APIRouter(
    prefix="/readers", tags=["readers"], dependencies=[Depends(authenticate)]
)


@reader_router.post("", response_model=ReaderSchema, status_code=status.HTTP_201_CREATED)
async def add_reader(reader: ReaderCreate, db=Depends(get_db)):
    created = await create_reader(db, reader)
    return ReaderSchema(**created.model_dump())


@reader_router.get("", response_model=List[ReaderSchema])
async def list_readers(db=Depends(get_db)):
    return [ReaderSchema(**reader.model_dump()) for reader in await get_readers(db)]


@reader_router.get("/{reader_id}", response_model=ReaderSchema)
async def read_reader(reader_id: str, db=Depends(get_db)):
    reader = await get_reader(db, reader_id)
    return ReaderSchema(**reader.model_dump())


@reader_router.put("/{reader_id}", response_model=ReaderSchema)
async def modify_reader(reader_id: str, reader_update: ReaderUpdate, db=Depends(get_db)):
    reader = await update_reader(db, reader_id, reader_update)
    return ReaderSchema(**reader.model_dump())


@reader_router.delete("/{reader_id}", response_model=MessageResponse)
async def remove_reader(reader_id: str, db=Depends(get_db)):
    await delete_reader(db, reader_id)
    return MessageResponse(message="Reader deleted!")


# Lendings

lending_router = APIRouter(prefix="/lendings", tags=["lendings"])


@lending_router.post("", response_model=LendingSchema, status_code=status.HTTP_201_CREATED)
async def lend(
    request: LendingCreate,
    db=Depends(get_db),
    principal: Principal = Depends(authenticate),
    config: Settings = Depends(get_settings),
):
    return await lend_book(
        db, request, lent_by=principal.user_id, default_days=config.default_lending_days
    )


@lending_router.put("/return/{lending_id}", response_model=LendingSchema)
async def mark_returned(
    lending_id: str, db=Depends(get_db), principal: Principal = Depends(authenticate)
):
    return await return_book(db, lending_id, returned_by=principal.user_id)


@lending_router.get("", response_model=List[LendingSchema])
async def list_lendings(
    status: Optional[LendingStatus] = None,
    reader_id: Optional[str] = None,
    book_id: Optional[str] = None,
    db=Depends(get_db),
    principal: Principal = Depends(authenticate),
):
    return await get_lendings(db, status=status, reader_id=reader_id, book_id=book_id)


@lending_router.get("/overdue", response_model=List[OverdueLendingSchema])
async def list_overdue_lendings(
    db=Depends(get_db), principal: Principal = Depends(authenticate)
):
    return await get_overdue_lendings(db)


@lending_router.get("/overdue/grouped", response_model=List[OverdueGroupSchema])
async def list_overdue_by_reader(
    db=Depends(get_db), principal: Principal = Depends(authenticate)
):
    return group_by_reader(await get_overdue_lendings(db))


@lending_router.post("/overdue/notify", response_model=OverdueNoticeResponse)
async def notify_overdue_readers(
    db=Depends(get_db),
    principal: Principal = Depends(authenticate),
    manager=Depends(get_messenger),
    config: Settings = Depends(get_settings),
):
    overdue = await get_overdue_lendings(db)
    readers = await publish_overdue_notices(manager, config.overdue_queue, overdue)
    logger.info(f"Queued overdue notices for {len(readers)} reader(s)")
    return OverdueNoticeResponse(queued=len(readers), readers=readers)


@lending_router.get("/{lending_id}", response_model=LendingSchema)
async def read_lending(
    lending_id: str, db=Depends(get_db), principal: Principal = Depends(authenticate)
):
    return await get_lending(db, lending_id)


app.include_router(auth_router)
app.include_router(category_router)
app.include_router(book_router)
app.include_router(reader_router)
app.include_router(lending_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
