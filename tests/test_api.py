import pytest
from fastapi.testclient import TestClient

from lianes_lending.main import create_app


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as c:
        yield c


def _book(client, book_id="b1"):
    resp = client.post("/books/", json={"id": book_id, "title": "Dune", "author": "Frank Herbert"})
    assert resp.status_code == 201
    return resp.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_book_lifecycle_over_http(client):
    assert _book(client)["available"] is True

    resp = client.post("/loans/", json={"book_id": "b1", "user_id": "u1"})
    assert resp.status_code == 201
    loan = resp.json()
    assert loan["userId"] == "u1"
    assert loan["status"] == "active"
    assert client.get("/books/b1").json()["available"] is False

    resp = client.post(f"/loans/{loan['id']}/renew", json={"days": 7})
    assert resp.status_code == 200
    assert resp.json()["dueDate"] > loan["dueDate"]

    resp = client.post(f"/loans/{loan['id']}/return")
    assert resp.json()["status"] == "returned"
    assert client.get("/books/b1").json()["available"] is True

    resp = client.post(f"/loans/{loan['id']}/return")
    assert resp.status_code == 409
    assert resp.json() == {
        "error": "already_returned",
        "entity_id": loan["id"],
        "detail": f"Loan {loan['id']} was already returned",
    }


def test_checkout_conflict_and_not_found(client):
    _book(client)
    client.post("/loans/", json={"book_id": "b1", "user_id": "u1"})

    resp = client.post("/loans/", json={"book_id": "b1", "user_id": "u2"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "book_unavailable"

    resp = client.post("/loans/", json={"book_id": "nope", "user_id": "u2"})
    assert resp.status_code == 404
    assert client.get("/loans/missing").status_code == 404


def test_request_validation(client):
    _book(client)
    assert client.post("/loans/", json={"book_id": "", "user_id": "u1"}).status_code == 422
    loan = client.post("/loans/", json={"book_id": "b1", "user_id": "u1"}).json()
    assert client.post(f"/loans/{loan['id']}/renew", json={"days": 0}).status_code == 422
    assert client.post(f"/loans/{loan['id']}/renew", json={"days": 366}).status_code == 422
    assert client.post(f"/loans/{loan['id']}/renew", json={"days": 5_000_000}).status_code == 422


def test_reservations_over_http(client):
    _book(client)
    resp = client.post("/reservations/", json={"user_id": "u1", "book_id": "b1"})
    assert resp.status_code == 201
    reservation_id = resp.json()["id"]

    resp = client.post("/reservations/", json={"user_id": "u1", "book_id": "b1"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "duplicate_reservation"

    reservation = client.get(f"/reservations/{reservation_id}").json()
    assert reservation["bookTitle"] == "Dune"
    assert client.get("/books/b1").json()["currentReservationId"] == reservation_id

    assert client.post(f"/reservations/{reservation_id}/ready").json()["status"] == "ready"
    assert [r["id"] for r in client.get("/users/u1/reservations", params={"active": True}).json()] == [reservation_id]

    assert client.post(f"/reservations/{reservation_id}/cancel").status_code == 204
    assert client.post(f"/reservations/{reservation_id}/cancel").status_code == 409
    assert client.get("/users/u1/reservations", params={"active": True}).json() == []
    assert client.get("/books/b1").json()["available"] is True


def test_sweep_and_reconcile_endpoints(client, clock):
    _book(client)
    client.post("/reservations/", json={"user_id": "u1", "book_id": "b1"})
    clock.advance(days=8)

    assert client.post("/reservations/sweep").json() == {"expired": 1}
    assert client.post("/books/reconcile").json() == {"changed": []}
    assert client.post("/books/b1/recompute").json()["available"] is True


def test_user_loan_views(client):
    _book(client, "b1")
    _book(client, "b2")
    first = client.post("/loans/", json={"book_id": "b1", "user_id": "u1"}).json()
    client.post("/loans/", json={"book_id": "b2", "user_id": "u1"})
    client.post(f"/loans/{first['id']}/return")

    assert [l["bookId"] for l in client.get("/users/u1/loans").json()] == ["b2"]
    assert len(client.get("/users/u1/loans/history").json()) == 2
    assert len(client.get("/users/u1/loans/history", params={"limit": 1}).json()) == 1
