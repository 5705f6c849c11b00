import pytest

from lending.errors import StorageFailure


@pytest.fixture
def reader(lib):
    return lib.users.create_user("reader")


@pytest.fixture
def reader_headers(reader):
    return {"X-API-Key": reader.api_key}


@pytest.fixture
def title_id(client, admin_headers):
    response = client.post("/titles", headers=admin_headers,
                           json={"title": "Dune", "author": "Frank Herbert", "total_copies": 1})
    assert response.status_code == 201
    return response.json()["id"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["db"] is True


def test_missing_or_invalid_key_is_401(client):
    assert client.get("/titles").status_code == 401
    response = client.get("/titles", headers={"X-API-Key": "invalid-key"})
    assert response.status_code == 401
    assert response.json()["code"] == "not_authenticated"


def test_inactive_user_is_403(client, lib, reader, reader_headers):
    lib.users.set_status(reader.id, "inactive")
    assert client.get("/titles", headers=reader_headers).status_code == 403


def test_non_admin_cannot_create_title(client, reader_headers):
    response = client.post("/titles", headers=reader_headers,
                           json={"title": "Dune", "author": "Frank Herbert", "total_copies": 1})
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_create_title_validation(client, admin_headers):
    response = client.post("/titles", headers=admin_headers,
                           json={"title": "Dune", "author": "Frank Herbert", "total_copies": 0})
    assert response.status_code == 422
    response = client.post("/titles", headers=admin_headers,
                           json={"title": "   ", "author": "Frank Herbert", "total_copies": 1})
    assert response.status_code == 400
    assert response.json()["code"] == "invalid"


def test_borrow_and_return_flow(client, reader_headers, title_id):
    response = client.post("/loans", headers=reader_headers, json={"title_id": title_id})
    assert response.status_code == 201
    loan = response.json()
    assert loan["state"] == "OPEN"

    response = client.get(f"/titles/{title_id}", headers=reader_headers)
    assert response.json()["status"] == "ALL_LOANED"

    response = client.post("/loans", headers=reader_headers, json={"title_id": title_id})
    assert response.status_code == 409
    assert response.json()["code"] == "out_of_stock"

    response = client.put(f"/loans/{loan['id']}/return", headers=reader_headers)
    assert response.status_code == 200
    assert response.json()["state"] == "CLOSED"

    response = client.put(f"/loans/{loan['id']}/return", headers=reader_headers)
    assert response.status_code == 409
    assert response.json()["code"] == "already_closed"


def test_loans_are_scoped_to_their_borrower(client, lib, admin_headers, reader_headers, title_id):
    other = lib.users.create_user("other")
    lib.borrow(title_id, other.id)

    assert client.get("/loans", headers=reader_headers).json()["total"] == 0
    page = client.get("/loans", headers=admin_headers).json()
    assert page["total"] == 1
    assert page["items"][0]["username"] == "other"

    loan_id = page["items"][0]["id"]
    response = client.put(f"/loans/{loan_id}/return", headers=reader_headers)
    assert response.status_code == 403


def test_admin_borrows_on_behalf_of_user(client, admin_headers, reader, title_id):
    response = client.post("/loans", headers=admin_headers, json={"title_id": title_id})
    assert response.status_code == 400

    response = client.post("/loans", headers=admin_headers, json={"title_id": title_id, "user_id": reader.id})
    assert response.status_code == 201
    assert response.json()["borrower_id"] == reader.id


def test_user_cannot_borrow_for_someone_else(client, lib, reader_headers, title_id):
    other = lib.users.create_user("other")
    response = client.post("/loans", headers=reader_headers, json={"title_id": title_id, "user_id": other.id})
    assert response.status_code == 403


def test_unknown_title_is_404(client, reader_headers):
    response = client.get("/titles/999", headers=reader_headers)
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_update_and_delete_title(client, admin_headers, reader, title_id):
    client.post("/loans", headers=admin_headers, json={"title_id": title_id, "user_id": reader.id})

    response = client.put(f"/titles/{title_id}", headers=admin_headers, json={"total_copies": 3, "price": 9.5})
    assert response.status_code == 200
    assert response.json()["available_copies"] == 2

    response = client.delete(f"/titles/{title_id}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["loans_removed"] == 1
    assert client.get(f"/titles/{title_id}", headers=admin_headers).status_code == 404


def test_admin_delete_loan(client, admin_headers, reader, title_id):
    loan = client.post("/loans", headers=admin_headers, json={"title_id": title_id, "user_id": reader.id}).json()
    response = client.delete(f"/loans/{loan['id']}", headers=admin_headers)
    assert response.json()["copy_restored"] is True
    assert client.get(f"/titles/{title_id}", headers=admin_headers).json()["available_copies"] == 1


def test_user_management(client, admin_headers):
    response = client.post("/users", headers=admin_headers, json={"username": "newbie", "email": "n@example.com"})
    assert response.status_code == 201
    created = response.json()
    headers = {"X-API-Key": created["api_key"]}

    me = client.get("/users/me", headers=headers).json()
    assert me["username"] == "newbie"
    assert "api_key" not in me

    response = client.put("/users/me", headers=headers, json={"student_id": "S-9"})
    assert response.json()["student_id"] == "S-9"

    response = client.patch(f"/users/{created['id']}/status", headers=admin_headers, json={"status": "inactive"})
    assert response.json()["status"] == "inactive"
    assert client.get("/users/me", headers=headers).status_code == 403

    rotated = client.post(f"/users/{created['id']}/reset-key", headers=admin_headers).json()
    assert rotated["api_key"] != created["api_key"]

    listing = client.get("/users", headers=admin_headers).json()
    assert listing["total"] == 1
    assert "api_key" not in listing["items"][0]

    response = client.post("/users", headers=admin_headers, json={"username": "NEWBIE"})
    assert response.status_code == 400


def test_delete_user_reports_auto_returns(client, admin_headers, reader, title_id):
    client.post("/loans", headers=admin_headers, json={"title_id": title_id, "user_id": reader.id})
    response = client.delete(f"/users/{reader.id}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["auto_returned"] == 1
    assert client.get(f"/titles/{title_id}", headers=admin_headers).json()["available_copies"] == 1


def test_admin_cannot_delete_self(client, lib):
    admin = lib.users.create_user("boss", role="admin")
    response = client.delete(f"/users/{admin.id}", headers={"X-API-Key": admin.api_key})
    assert response.status_code == 400


def test_stats_and_audit_are_admin_only(client, admin_headers, reader_headers, title_id):
    assert client.get("/stats", headers=reader_headers).status_code == 403
    stats = client.get("/stats", headers=admin_headers).json()
    assert stats["books"] == 1
    assert len(stats["trend"]) == 7

    audit = client.get("/admin/audit", headers=admin_headers).json()
    assert audit == {"consistent": True, "problems": []}


def test_storage_failure_is_503_with_retry_after(client, lib, monkeypatch, reader_headers, title_id):
    def fail(*args, **kwargs):
        raise StorageFailure("database is locked")

    monkeypatch.setattr(lib, "borrow", fail)
    response = client.post("/loans", headers=reader_headers, json={"title_id": title_id})
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.json()["code"] == "storage_failure"


def test_refused_self_deactivation_writes_nothing(client, lib):
    admin = lib.users.create_user("boss", role="admin")
    headers = {"X-API-Key": admin.api_key}

    response = client.put(f"/users/{admin.id}", headers=headers, json={"username": "renamed", "status": "inactive"})

    assert response.status_code == 400
    assert lib.users.get_user(admin.id).username == "boss"


def test_admin_filters_loans_by_borrower(client, lib, admin_headers, reader, reader_headers, title_id):
    other = lib.users.create_user("other")
    second = lib.catalog.create_title("Emma", "Jane Austen", 1)
    lib.borrow(title_id, reader.id)
    lib.borrow(second.id, other.id)

    page = client.get("/loans", headers=admin_headers, params={"user_id": other.id}).json()
    assert page["total"] == 1
    assert page["items"][0]["username"] == "other"

    # the filter cannot widen a non-admin's view
    page = client.get("/loans", headers=reader_headers, params={"user_id": other.id}).json()
    assert page["total"] == 1
    assert page["items"][0]["username"] == "reader"


def test_non_ascii_api_key_is_401(client):
    response = client.get("/titles", headers={"X-API-Key": "clé-secrète".encode("latin-1")})
    assert response.status_code == 401
