from bson import ObjectId
import pytest


@pytest.fixture
def category(client, auth_headers):
    return client.post("/categories", json={"name": "Fiction"}, headers=auth_headers).json()


@pytest.fixture
def book(client, auth_headers, category):
    response = client.post(
        "/books",
        json={
            "title": "Gamperaliya",
            "author": "Martin Wickramasinghe",
            "isbn": "9789552100002",
            "category": category["id"],
            "total_copies": 3,
        },
        headers=auth_headers,
    )
    return response.json()


@pytest.fixture
def reader(client, auth_headers):
    return client.post(
        "/readers",
        json={"name": "Saman Jayasinghe", "email": "saman@example.com", "phone": "0771234567"},
        headers=auth_headers,
    ).json()


def test_catalog_routes_require_token(client):
    assert client.get("/categories").status_code == 403
    assert client.get("/books").status_code == 403
    assert client.get("/readers").status_code == 403


# Categories


def test_create_and_list_categories(client, auth_headers, category):
    assert category["name"] == "Fiction"
    response = client.get("/categories", headers=auth_headers)
    assert response.status_code == 200
    assert [c["name"] for c in response.json()] == ["Fiction"]


def test_duplicate_category_is_rejected(client, auth_headers, category):
    response = client.post("/categories", json={"name": "Fiction"}, headers=auth_headers)
    assert response.status_code == 400


def test_category_name_too_short(client, auth_headers):
    response = client.post("/categories", json={"name": "F"}, headers=auth_headers)
    assert response.status_code == 400


def test_update_category(client, auth_headers, category):
    response = client.put(
        f"/categories/{category['id']}", json={"name": "Sinhala Fiction"}, headers=auth_headers
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Sinhala Fiction"


def test_delete_category_in_use_is_rejected(client, auth_headers, category, book):
    response = client.delete(f"/categories/{category['id']}", headers=auth_headers)
    assert response.status_code == 400
    assert "cannot be deleted" in response.json()["detail"]


def test_delete_unused_category(client, auth_headers, category):
    response = client.delete(f"/categories/{category['id']}", headers=auth_headers)
    assert response.status_code == 200
    assert client.get(f"/categories/{category['id']}", headers=auth_headers).status_code == 404


# Books


def test_create_book_sets_available_to_total(client, auth_headers, book, category):
    assert book["total_copies"] == 3
    assert book["available_copies"] == 3
    assert book["category"] == {"id": category["id"], "name": "Fiction"}


def test_create_book_ignores_client_available_copies(client, auth_headers, category):
    response = client.post(
        "/books",
        json={
            "title": "Viragaya",
            "author": "Martin Wickramasinghe",
            "isbn": "9789552100003",
            "category": category["id"],
            "total_copies": 2,
            "available_copies": 0,
        },
        headers=auth_headers,
    )
    assert response.status_code == 201
    assert response.json()["available_copies"] == 2


def test_create_book_with_unknown_category(client, auth_headers):
    response = client.post(
        "/books",
        json={
            "title": "Viragaya",
            "author": "Martin Wickramasinghe",
            "isbn": "9789552100003",
            "category": str(ObjectId()),
            "total_copies": 2,
        },
        headers=auth_headers,
    )
    assert response.status_code == 404


def test_create_book_requires_a_copy(client, auth_headers, category):
    response = client.post(
        "/books",
        json={
            "title": "Viragaya",
            "author": "Martin Wickramasinghe",
            "isbn": "9789552100003",
            "category": category["id"],
            "total_copies": 0,
        },
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert "total_copies" in response.json()["errors"]


def test_get_and_list_books(client, auth_headers, book):
    response = client.get(f"/books/{book['id']}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["title"] == "Gamperaliya"

    books = client.get("/books", headers=auth_headers).json()
    assert [b["id"] for b in books] == [book["id"]]
    assert books[0]["category"]["name"] == "Fiction"


@pytest.mark.parametrize("book_id", ["not-an-object-id", str(ObjectId())])
def test_missing_book_is_not_found(client, auth_headers, book_id):
    assert client.get(f"/books/{book_id}", headers=auth_headers).status_code == 404
    assert client.delete(f"/books/{book_id}", headers=auth_headers).status_code == 404


def test_update_book_merges_fields(client, auth_headers, book):
    response = client.put(
        f"/books/{book['id']}", json={"title": "Gamperaliya (2nd ed.)"}, headers=auth_headers
    )
    assert response.status_code == 200
    updated = response.json()
    assert updated["title"] == "Gamperaliya (2nd ed.)"
    assert updated["author"] == "Martin Wickramasinghe"
    assert updated["total_copies"] == 3


def test_update_total_copies_keeps_lent_copies(client, auth_headers, book, reader):
    client.post(
        "/lendings", json={"book_id": book["id"], "reader_id": reader["id"]}, headers=auth_headers
    )
    response = client.put(f"/books/{book['id']}", json={"total_copies": 5}, headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["total_copies"] == 5
    assert response.json()["available_copies"] == 4


def test_update_book_rejects_broken_invariant(client, auth_headers, book):
    response = client.put(
        f"/books/{book['id']}",
        json={"total_copies": 2, "available_copies": 3},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert client.get(f"/books/{book['id']}", headers=auth_headers).json()["available_copies"] == 3


def test_update_book_cannot_restock_lent_copies(client, auth_headers, book, reader):
    lending = client.post(
        "/lendings", json={"book_id": book["id"], "reader_id": reader["id"]}, headers=auth_headers
    ).json()

    response = client.put(
        f"/books/{book['id']}", json={"available_copies": 3}, headers=auth_headers
    )
    assert response.status_code == 400
    assert "lent out" in response.json()["detail"]

    response = client.put(f"/books/{book['id']}", json={"total_copies": 1}, headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["available_copies"] == 0

    # The open lending can still be returned.
    returned = client.put(f"/lendings/return/{lending['id']}", headers=auth_headers)
    assert returned.status_code == 200
    assert client.get(f"/books/{book['id']}", headers=auth_headers).json()["available_copies"] == 1


def test_update_book_rejects_short_title(client, auth_headers, book):
    response = client.put(f"/books/{book['id']}", json={"title": "  "}, headers=auth_headers)
    assert response.status_code == 400


def test_delete_book_with_open_lending_is_rejected(client, auth_headers, book, reader):
    client.post(
        "/lendings", json={"book_id": book["id"], "reader_id": reader["id"]}, headers=auth_headers
    )
    response = client.delete(f"/books/{book['id']}", headers=auth_headers)
    assert response.status_code == 400


def test_delete_book(client, auth_headers, book):
    response = client.delete(f"/books/{book['id']}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["message"] == "Book deleted!"
    assert client.get(f"/books/{book['id']}", headers=auth_headers).status_code == 404


# Readers


def test_create_reader(client, auth_headers, reader):
    assert reader["name"] == "Saman Jayasinghe"
    assert reader["email"] == "saman@example.com"


def test_reader_validation(client, auth_headers):
    response = client.post("/readers", json={"name": "S"}, headers=auth_headers)
    assert response.status_code == 400
    assert "name" in response.json()["errors"]

    response = client.post(
        "/readers", json={"name": "Saman", "email": "saman-at-example"}, headers=auth_headers
    )
    assert response.status_code == 400
    assert "email" in response.json()["errors"]


def test_update_reader(client, auth_headers, reader):
    response = client.put(
        f"/readers/{reader['id']}", json={"address": "Galle Road, Colombo"}, headers=auth_headers
    )
    assert response.status_code == 200
    data = response.json()
    assert data["address"] == "Galle Road, Colombo"
    assert data["name"] == "Saman Jayasinghe"


def test_update_missing_reader(client, auth_headers):
    response = client.put(
        f"/readers/{ObjectId()}", json={"name": "Nobody"}, headers=auth_headers
    )
    assert response.status_code == 404


def test_delete_reader_with_open_lending_is_rejected(client, auth_headers, book, reader):
    lending = client.post(
        "/lendings", json={"book_id": book["id"], "reader_id": reader["id"]}, headers=auth_headers
    ).json()
    assert client.delete(f"/readers/{reader['id']}", headers=auth_headers).status_code == 400

    client.put(f"/lendings/return/{lending['id']}", headers=auth_headers)
    assert client.delete(f"/readers/{reader['id']}", headers=auth_headers).status_code == 200
    assert client.get(f"/readers/{reader['id']}", headers=auth_headers).status_code == 404
