import logging
from typing import List, Optional

import httpx

from .reporting import group_by_reader, search_books, search_readers
from .schemas import (
    BookSchema,
    CategorySchema,
    LendingSchema,
    LoginResponse,
    OverdueGroupSchema,
    OverdueLendingSchema,
    ReaderSchema,
)

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status_code: int, detail):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"API error {status_code}: {detail}")


class LibraryClient:
    """Client for the lending API.

    Access tokens are short-lived. When a call comes back 403 the client asks
    ``/auth/refresh-token`` for a new one (the refresh cookie lives in the
    underlying cookie jar) and replays the call once.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        http_client: Optional[httpx.Client] = None,
        refresh_path: str = "/auth/refresh-token",
    ):
        self._client = http_client or httpx.Client(base_url=base_url, timeout=10.0)
        self._owns_client = http_client is None
        self.refresh_path = refresh_path
        self.access_token: Optional[str] = None
        self.user: Optional[LoginResponse] = None

    def close(self):
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @staticmethod
    def _raise_for_status(response: httpx.Response):
        if response.is_success:
            return
        try:
            body = response.json()
        except ValueError:
            body = response.text
        detail = body.get("detail", body) if isinstance(body, dict) else body
        raise ApiError(response.status_code, detail)

    def _headers(self) -> dict:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    def refresh(self) -> str:
        response = self._client.post(self.refresh_path)
        self._raise_for_status(response)
        self.access_token = response.json()["access_token"]
        return self.access_token

    def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = self._client.request(method, path, headers=self._headers(), **kwargs)
        if response.status_code == 403:
            logger.info("Access token rejected, refreshing")
            self.refresh()
            response = self._client.request(
                method, path, headers=self._headers(), **kwargs
            )
        self._raise_for_status(response)
        return response

    # Auth

    def sign_up(self, name: str, email: str, password: str) -> dict:
        response = self._client.post(
            "/auth/signup", json={"name": name, "email": email, "password": password}
        )
        self._raise_for_status(response)
        return response.json()

    def login(self, email: str, password: str) -> LoginResponse:
        response = self._client.post(
            "/auth/login", json={"email": email, "password": password}
        )
        self._raise_for_status(response)
        self.user = LoginResponse(**response.json())
        self.access_token = self.user.access_token
        return self.user

    def logout(self):
        try:
            response = self._client.post("/auth/logout")
            self._raise_for_status(response)
        finally:
            self.access_token = None
            self.user = None

    # Catalog

    def get_categories(self) -> List[CategorySchema]:
        return [CategorySchema(**c) for c in self.request("GET", "/categories").json()]

    def create_category(self, name: str) -> CategorySchema:
        return CategorySchema(**self.request("POST", "/categories", json={"name": name}).json())

    def get_books(self) -> List[BookSchema]:
        return [BookSchema(**b) for b in self.request("GET", "/books").json()]

    def create_book(self, **fields) -> BookSchema:
        return BookSchema(**self.request("POST", "/books", json=fields).json())

    def search_books(self, term: str = "", category_id: Optional[str] = None) -> List[BookSchema]:
        return search_books(self.get_books(), term, category_id)

    def get_readers(self) -> List[ReaderSchema]:
        return [ReaderSchema(**r) for r in self.request("GET", "/readers").json()]

    def create_reader(self, **fields) -> ReaderSchema:
        return ReaderSchema(**self.request("POST", "/readers", json=fields).json())

    def search_readers(self, term: str = "") -> List[ReaderSchema]:
        return search_readers(self.get_readers(), term)

    # Lendings

    def lend_book(
        self, book_id: str, reader_id: str, duration_days: Optional[int] = None
    ) -> LendingSchema:
        payload = {"book_id": book_id, "reader_id": reader_id}
        if duration_days is not None:
            payload["duration_days"] = duration_days
        return LendingSchema(**self.request("POST", "/lendings", json=payload).json())

    def return_book(self, lending_id: str) -> LendingSchema:
        response = self.request("PUT", f"/lendings/return/{lending_id}")
        return LendingSchema(**response.json())

    def get_lendings(self) -> List[LendingSchema]:
        return [LendingSchema(**lending) for lending in self.request("GET", "/lendings").json()]

    def get_overdue_lendings(self) -> List[OverdueLendingSchema]:
        response = self.request("GET", "/lendings/overdue")
        return [OverdueLendingSchema(**lending) for lending in response.json()]

    def get_overdue_by_reader(self) -> List[OverdueGroupSchema]:
        return group_by_reader(self.get_overdue_lendings())
