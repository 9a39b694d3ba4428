from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db


def _client() -> TestClient:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    # Not used as a context manager so startup hooks (scheduler) stay off.
    return TestClient(app)


USER = {"X-User-Id": "1"}
OTHER = {"X-User-Id": "2"}


def _create_account(client: TestClient, name: str, balance: str = "100.00") -> dict:
    response = client.post(
        "/accounts",
        json={"name": name, "account_type": "checking", "initial_balance": balance},
        headers=USER,
    )
    assert response.status_code == 201
    return response.json()


def test_user_header_is_required() -> None:
    client = _client()
    assert client.get("/accounts").status_code == 400
    assert client.get("/accounts", headers={"X-User-Id": "0"}).status_code == 400


def test_transaction_flow_and_error_mapping() -> None:
    client = _client()
    account = _create_account(client, "Checking")
    category = client.post(
        "/categories",
        json={"name": "Food", "category_type": "expense"},
        headers=USER,
    ).json()

    response = client.post(
        "/transactions",
        json={
            "account_id": account["id"],
            "category_id": category["id"],
            "transaction_type": "expense",
            "amount": "12.30",
            "description": "Lunch",
            "date": "2025-06-01",
            "tags": ["work"],
        },
        headers=USER,
    )
    assert response.status_code == 201
    txn = response.json()
    assert txn["amount"] == "12.30"
    assert txn["tags"] == ["work"]

    balance = client.get(f"/accounts/{account['id']}", headers=USER).json()["balance"]
    assert balance == "87.70"

    foreign = client.get(f"/transactions/{txn['id']}", headers=OTHER)
    assert foreign.status_code == 404
    assert foreign.json() == {"detail": "Transaction not found", "kind": "not_found"}

    blocked = client.delete(f"/accounts/{account['id']}", headers=USER)
    assert blocked.status_code == 409
    assert blocked.json()["kind"] == "constraint_violation"

    same_account = client.post(
        "/transactions",
        json={
            "account_id": account["id"],
            "to_account_id": account["id"],
            "transaction_type": "transfer",
            "amount": "1.00",
            "description": "Loop",
            "date": "2025-06-01",
        },
        headers=USER,
    )
    assert same_account.status_code == 400
    assert same_account.json()["kind"] == "validation_failed"

    patched = client.patch(
        f"/transactions/{txn['id']}", json={"notes": "client meeting"}, headers=USER
    )
    assert patched.status_code == 200
    assert patched.json()["notes"] == "client meeting"
    assert patched.json()["amount"] == "12.30"

    assert client.delete(f"/transactions/{txn['id']}", headers=USER).status_code == 204
    assert client.delete(f"/accounts/{account['id']}", headers=USER).status_code == 204


def test_json_import_reports_rows() -> None:
    client = _client()
    account = _create_account(client, "Checking")
    response = client.post(
        "/transactions/import",
        json={
            "rows": [
                {
                    "date": "2025-06-02",
                    "description": "Bus",
                    "amount": 3.5,
                    "type": "expense",
                },
                {
                    "date": "2025-06-02",
                    "description": "Bus",
                    "amount": "-1",
                    "type": "expense",
                },
            ],
            "default_account_id": account["id"],
        },
        headers=USER,
    )
    assert response.status_code == 200
    assert response.json() == {
        "imported": 1,
        "skipped": 1,
        "errors": ["Row 2: Amount must be a positive number"],
    }

    empty = client.post("/transactions/import", json={}, headers=USER)
    assert empty.json()["errors"] == ["No transaction data provided"]


def test_csv_upload_and_export() -> None:
    client = _client()
    _create_account(client, "Wallet", "10.00")
    content = "Date,Description,Amount,Type,Account\n2025-06-03,Tip,2.50,income,Wallet\n"
    response = client.post(
        "/transactions/import/csv",
        files={"file": ("rows.csv", content, "text/csv")},
        headers=USER,
    )
    assert response.status_code == 200
    assert response.json()["imported"] == 1

    exported = client.get("/transactions/export.csv", headers=USER)
    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    lines = exported.text.strip().splitlines()
    assert lines[0].startswith("Date,Description,Amount")
    assert lines[1].startswith("2025-06-03,Tip,2.50,income")


def test_summary_endpoint_with_custom_range() -> None:
    client = _client()
    account = _create_account(client, "Checking", "0")
    client.post(
        "/transactions",
        json={
            "account_id": account["id"],
            "transaction_type": "income",
            "amount": "40.00",
            "description": "Refund",
            "date": "2025-05-05",
        },
        headers=USER,
    )
    response = client.get(
        "/summary", params={"start": "2025-05-01", "end": "2025-05-31"}, headers=USER
    )
    assert response.status_code == 200
    body = response.json()
    assert body["total_income"] == "40.00"
    assert body["net_income"] == "40.00"
    assert body["expense_by_category"] == []

    inverted = client.get(
        "/summary", params={"start": "2025-06-01", "end": "2025-05-01"}, headers=USER
    )
    assert inverted.status_code == 400


def test_profile_endpoints_and_demo_data() -> None:
    client = _client()
    assert client.get("/profile", headers=USER).status_code == 404

    created = client.post(
        "/profile",
        json={"display_name": "Budi", "email": "budi@example.com", "currency": "usd"},
        headers=USER,
    )
    assert created.status_code == 201
    assert created.json()["currency"] == "USD"
    assert created.json()["timezone"] == "Asia/Jakarta"

    patched = client.patch("/profile", json={"locale": "en-US"}, headers=USER)
    assert patched.status_code == 200
    assert patched.json()["locale"] == "en-US"
    assert patched.json()["currency"] == "USD"

    bad_zone = client.patch("/profile", json={"timezone": "Nowhere/City"}, headers=USER)
    assert bad_zone.status_code == 400

    account = _create_account(client, "Wallet")
    assert account["currency"] == "USD"

    blocked = client.post("/demo-data", headers=USER)
    assert blocked.status_code == 400

    seeded = client.post("/demo-data", headers=OTHER)
    assert seeded.status_code == 201
    assert seeded.json() == {"success": True, "message": "Demo data created successfully"}
    names = [a["name"] for a in client.get("/accounts", headers=OTHER).json()]
    assert "BCA Checking" in names
