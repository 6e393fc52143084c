from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from bookwize import api as api_module
from bookwize.config import settings
from bookwize.errors import TransientStoreFailure

from conftest import NOW, SAPIENS, ULYSSES

HEADERS = {"X-API-Key": settings.api_key}


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def client(library, clock):
    api_module.app.dependency_overrides[api_module.get_service] = lambda: library
    api_module.app.dependency_overrides[api_module.get_clock] = clock
    try:
        yield TestClient(api_module.app)
    finally:
        api_module.app.dependency_overrides.clear()


def _issue(client, isbn=ULYSSES, member_id="m-student"):
    response = client.post("/loans", headers=HEADERS, json={"isbn": isbn, "member_id": member_id})
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_get_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert [b["isbn"] for b in response.json()] == [SAPIENS, ULYSSES]

    response = client.get("/books", params={"q": "joyce"})
    assert [b["isbn"] for b in response.json()] == [ULYSSES]


def test_get_unknown_book(client):
    response = client.get("/books/9780132350884")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_add_book_with_valid_api_key(client):
    payload = {"isbn": "9780132350884", "title": "Clean Code", "author": "Robert C. Martin", "quantity": 2}
    response = client.post("/books", headers=HEADERS, json=payload)
    assert response.status_code == 201
    body = response.json()
    assert body["isbn"] == "9780132350884"
    assert body["available_quantity"] == 2


def test_add_book_with_invalid_api_key(client):
    payload = {"isbn": "9780132350884", "title": "Clean Code", "author": "Robert C. Martin"}
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json=payload)
    assert response.status_code == 403


def test_add_book_with_invalid_isbn(client):
    payload = {"isbn": "12", "title": "Clean Code", "author": "Robert C. Martin"}
    response = client.post("/books", headers=HEADERS, json=payload)
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"


def test_import_books(client):
    content = "ISBN,Title,Author,Publisher,Quantity\n9780132350884,Clean Code,Robert C. Martin,PH,2\n"
    response = client.post("/books/import", headers=HEADERS, json={"content": content})
    assert response.status_code == 200
    assert response.json() == {"added": 1, "merged": 0, "skipped": 0, "errors": []}


def test_retire_book(client):
    response = client.delete(f"/books/{ULYSSES}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["retired"] is True

    response = client.post("/loans", headers=HEADERS, json={"isbn": ULYSSES, "member_id": "m-student"})
    assert response.status_code == 409
    assert response.json()["code"] == "inventory_exhausted"


def test_register_and_manage_member(client):
    response = client.post("/members", headers=HEADERS,
                           json={"name": "Alan", "email": "Alan@Example.org", "membership_type": "staff"})
    assert response.status_code == 201
    member = response.json()
    assert member["email"] == "alan@example.org"
    assert member["membership_type"] == "staff"

    duplicate = client.post("/members", headers=HEADERS, json={"name": "Alan", "email": "alan@example.org"})
    assert duplicate.status_code == 409

    response = client.put(f"/members/{member['id']}/status", headers=HEADERS, json={"status": "blocked"})
    assert response.json()["status"] == "blocked"
    assert client.get(f"/members/{member['id']}").json()["status"] == "blocked"


def test_issue_and_return(client):
    loan = _issue(client)
    assert loan["member_id"] == "m-student"
    assert loan["overdue"] is False
    assert client.get(f"/books/{ULYSSES}").json()["available_quantity"] == 1

    loans = client.get("/members/m-student/loans").json()
    assert [l["id"] for l in loans] == [loan["id"]]

    response = client.post(f"/loans/{loan['id']}/return", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["fines"] == []
    assert response.json()["loan"]["return_date"] is not None

    again = client.post(f"/loans/{loan['id']}/return", headers=HEADERS)
    assert again.status_code == 409
    assert again.json()["code"] == "already_returned"


def test_ineligible_member_is_forbidden(client):
    client.put("/members/m-student/status", headers=HEADERS, json={"status": "blocked"})
    response = client.post("/loans", headers=HEADERS, json={"isbn": ULYSSES, "member_id": "m-student"})
    assert response.status_code == 403
    assert response.json()["code"] == "member_ineligible"
    assert "blocked" in response.json()["detail"]


def test_overdue_return_fine_and_payment(client, clock):
    loan = _issue(client)
    clock.now = NOW + timedelta(days=17)

    overdue = client.get("/loans/overdue").json()
    assert [l["id"] for l in overdue] == [loan["id"]]
    assert overdue[0]["overdue"] is True
    assert client.get("/members/m-student/balance").json()["balance"] == "3.00"
    assert client.get("/fines/accrued").json()["members"] == {"m-student": "3.00"}

    response = client.post(f"/loans/{loan['id']}/return", headers=HEADERS, json={"damage_fine": "4"})
    fines = response.json()["fines"]
    assert [(f["reason"], f["amount"]) for f in fines] == [("overdue", "3.00"), ("damaged", "4.00")]

    response = client.post(f"/fines/{fines[0]['id']}/pay", headers=HEADERS, json={"method": "card"})
    assert response.json()["status"] == "paid"
    assert response.json()["payment_method"] == "card"
    assert client.post(f"/fines/{fines[0]['id']}/pay", headers=HEADERS).status_code == 409

    waived = client.post(f"/fines/{fines[1]['id']}/waive", headers=HEADERS)
    assert waived.json()["status"] == "waived"
    assert client.get("/members/m-student/balance").json()["balance"] == "0.00"
    assert len(client.get("/members/m-student/fines", params={"status": "waived"}).json()) == 1


def test_assess_manual_fine(client):
    response = client.post("/fines", headers=HEADERS,
                           json={"member_id": "m-student", "amount": "15", "reason": "lost"})
    assert response.status_code == 201
    assert response.json()["amount"] == "15.00"

    response = client.post("/fines", headers=HEADERS,
                           json={"member_id": "m-student", "amount": "0", "reason": "lost"})
    assert response.status_code == 422


def test_renew(client, clock):
    loan = _issue(client)
    clock.now = NOW + timedelta(days=12)
    response = client.post(f"/loans/{loan['id']}/renew", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["renewal_count"] == 1

    clock.now = NOW + timedelta(days=40)
    response = client.post(f"/loans/{loan['id']}/renew", headers=HEADERS)
    assert response.status_code == 409
    assert response.json()["code"] == "not_renewable"


def test_reservations(client):
    _issue(client, isbn=SAPIENS, member_id="m-external")
    response = client.post("/reservations", headers=HEADERS, json={"isbn": SAPIENS, "member_id": "m-student"})
    assert response.status_code == 201
    reservation = response.json()

    queue = client.get(f"/books/{SAPIENS}/reservations").json()
    assert [r["id"] for r in queue] == [reservation["id"]]

    response = client.post(f"/reservations/{reservation['id']}/fulfill", headers=HEADERS)
    assert response.status_code == 409

    response = client.post(f"/reservations/{reservation['id']}/cancel", headers=HEADERS)
    assert response.json()["status"] == "cancelled"
    assert client.get(f"/books/{SAPIENS}/reservations").json() == []


def test_transient_store_failure_is_503(client, library, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise TransientStoreFailure("database is locked")

    monkeypatch.setattr(library.inventory, "search", unavailable)
    response = client.get("/books")
    assert response.status_code == 503
    assert response.json()["code"] == "transient_store_failure"


def test_book_request_workflow(client):
    payload = {"title": "Design Patterns", "author": "Gamma et al.", "quantity": 2, "reason": "course reading"}
    response = client.post("/book-requests", headers=HEADERS, json=payload)
    assert response.status_code == 201
    request = response.json()
    assert request["status"] == "pending"

    pending = client.get("/book-requests", params={"status": "pending"}).json()
    assert [r["id"] for r in pending] == [request["id"]]

    response = client.post(f"/book-requests/{request['id']}/approve", headers=HEADERS,
                           json={"isbn": "9780201633610"})
    assert response.status_code == 200
    assert response.json()["status"] == "approved"
    assert client.get("/books/9780201633610").json()["quantity"] == 2

    again = client.post(f"/book-requests/{request['id']}/reject", headers=HEADERS)
    assert again.status_code == 409
    assert again.json()["code"] == "request_closed"


def test_book_request_rejections_and_bad_input(client):
    denied = client.post("/book-requests", headers={"X-API-Key": "invalid-key"}, json={"title": "X", "author": "Y"})
    assert denied.status_code == 403
    bad = client.post("/book-requests", headers=HEADERS, json={"title": "X", "author": "Y", "quantity": 0})
    assert bad.status_code == 422

    request = client.post("/book-requests", headers=HEADERS, json={"title": "X", "author": "Y"}).json()
    response = client.post(f"/book-requests/{request['id']}/approve", headers=HEADERS, json={"isbn": "12"})
    assert response.status_code == 400

    response = client.post(f"/book-requests/{request['id']}/reject", headers=HEADERS)
    assert response.json()["status"] == "rejected"
    assert client.post("/book-requests/missing/reject", headers=HEADERS).status_code == 404
