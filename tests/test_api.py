import pytest

from bookflix import main
from bookflix.config import Settings


def create_member(client, email="reader@example.com", plan="free"):
    response = client.post(
        "/members/",
        json={"email": email, "name": "Reader", "subscription_type": plan},
    )
    assert response.status_code == 201
    return response.json()


def create_book(client, copies=1, isbn="9780000000001"):
    response = client.post(
        "/books/",
        json={"title": "Dune", "author": "Frank Herbert", "isbn": isbn, "copies": copies},
    )
    assert response.status_code == 201
    return response.json()


def borrow(client, member_id, book_id):
    return client.post(
        "/borrowings/borrow", json={"member_id": member_id, "book_id": book_id}
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_book_reports_counts(client):
    book = create_book(client, copies=3)
    assert book["total_copies"] == 3
    assert book["available_copies"] == 3

    response = client.get(f"/books/{book['id']}")
    assert response.status_code == 200
    assert response.json()["title"] == "Dune"


def test_duplicate_member_email(client):
    create_member(client)
    response = client.post("/members/", json={"email": "reader@example.com", "name": "Again"})
    assert response.status_code == 409
    assert response.json()["code"] == "duplicate_member"


def test_borrow_and_limit(client):
    member = create_member(client)
    first = create_book(client, isbn="9780000000001")
    second = create_book(client, isbn="9780000000002")

    response = borrow(client, member["id"], first["id"])
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "active"
    assert loan["days_remaining"] == 7
    assert client.get(f"/books/{first['id']}").json()["available_copies"] == 0

    response = borrow(client, member["id"], second["id"])
    assert response.status_code == 403
    data = response.json()
    assert data["code"] == "borrow_limit_reached"
    assert data["limit"] == 1
    assert "Borrowing limit reached" in data["detail"]


def test_borrow_unavailable_book(client):
    owner = create_member(client, "owner@example.com")
    other = create_member(client, "other@example.com")
    book = create_book(client)
    borrow(client, owner["id"], book["id"])

    response = borrow(client, other["id"], book["id"])
    assert response.status_code == 409
    assert response.json()["can_reserve"] is True


def test_unknown_member_is_404(client):
    book = create_book(client)
    response = borrow(client, 999, book["id"])
    assert response.status_code == 404
    assert response.json()["code"] == "member_not_found"


def test_invalid_payload_is_422(client):
    response = client.post("/borrowings/borrow", json={"member_id": "abc"})
    assert response.status_code == 422


def test_renew_and_return(client):
    member = create_member(client)
    book = create_book(client)
    loan = borrow(client, member["id"], book["id"]).json()

    response = client.post(f"/borrowings/{loan['id']}/renew")
    assert response.status_code == 200
    assert response.json()["renewal_count"] == 1

    response = client.post(f"/borrowings/{loan['id']}/return", json={"returned_by": 5})
    assert response.status_code == 200
    assert response.json()["status"] == "returned"

    response = client.post(f"/borrowings/{loan['id']}/return")
    assert response.status_code == 409
    assert response.json()["code"] == "already_returned"


def test_reservation_flow(client):
    holder = create_member(client, "holder@example.com")
    waiting = create_member(client, "waiting@example.com")
    book = create_book(client)
    loan = borrow(client, holder["id"], book["id"]).json()

    response = client.post(
        "/reservations/", json={"member_id": waiting["id"], "book_id": book["id"]}
    )
    assert response.status_code == 201
    reservation = response.json()
    assert reservation["queue_position"] == 1
    assert reservation["days_until_expiry"] == 3

    client.post(f"/borrowings/{loan['id']}/return")
    response = client.post(f"/reservations/{reservation['id']}/mark-ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"

    response = client.post(f"/reservations/{reservation['id']}/complete")
    assert response.status_code == 200
    data = response.json()
    assert data["reservation"]["status"] == "completed"
    assert data["borrowing"]["member_id"] == waiting["id"]

    kinds = [n["type"] for n in client.get(f"/members/{waiting['id']}/notifications").json()]
    assert sorted(kinds) == ["book_borrowed", "reservation_ready"]
    count = client.get(f"/members/{waiting['id']}/notifications/unread-count").json()
    assert count["unread"] == 2


def test_reserve_available_book_is_rejected(client):
    member = create_member(client)
    book = create_book(client)
    response = client.post(
        "/reservations/", json={"member_id": member["id"], "book_id": book["id"]}
    )
    assert response.status_code == 409
    assert response.json()["available"] is True


def test_stock_update(client):
    book = create_book(client, copies=2)

    response = client.patch(f"/books/{book['id']}/stock", json={"copies": 4})
    assert response.status_code == 200
    assert response.json()["total_copies"] == 4

    response = client.patch(f"/books/{book['id']}/stock", json={"copies": 5000})
    assert response.status_code == 400

    copies = client.get(f"/books/{book['id']}/copies").json()
    assert [c["copy_number"] for c in copies] == [f"{book['id']}-{n}" for n in range(1, 5)]


def test_fine_sweep_endpoint(client):
    response = client.post("/cron/calculate-fines")
    assert response.status_code == 200
    data = response.json()
    assert data["processed"] == 0
    assert data["errors"] == 0

    response = client.post("/cron/send-notifications")
    assert response.status_code == 200
    assert response.json()["reservations_expired"] == 0


def test_cron_requires_secret_when_configured(client, monkeypatch):
    monkeypatch.setattr(main, "settings", Settings(cron_secret="s3cret"))

    assert client.post("/cron/calculate-fines").status_code == 401
    response = client.post(
        "/cron/calculate-fines", headers={"Authorization": "Bearer s3cret"}
    )
    assert response.status_code == 200


def test_config_roundtrip(client):
    assert client.get("/config").json()["max_renewals"] == 2

    response = client.put("/config", json={"standard_loan_days": 10})
    assert response.status_code == 200
    assert response.json()["standard_loan_days"] == 10

    response = client.put("/config", json={"max_renewals": 9})
    assert response.status_code == 400


@pytest.mark.parametrize("path", ["/fines/1", "/reservations/1", "/borrowings/1"])
def test_missing_resources(client, path):
    assert client.get(path).status_code == 404
