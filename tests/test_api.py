import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, create_db_engine
from main import app, get_db


@pytest.fixture()
def client():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_account(client, cpf: str = "123", balance: str = "100.00") -> dict:
    response = client.post(
        "/accounts",
        json={
            "name": "Carla Dias",
            "cpf": cpf,
            "date_of_birth": "1990-05-01",
            "bank": "Santander",
            "balance": balance,
        },
    )
    assert response.status_code == 201
    return response.json()


def create_references(client) -> tuple[int, int, int, int]:
    user = client.post("/users", json={"name": "Carla", "email": "carla@example.com"})
    category = client.post("/categories", json={"name": "Work"})
    income = client.post("/transaction-types", json={"label": "Income"})
    expense = client.post("/transaction-types", json={"label": "Expense"})
    assert income.json()["kind"] == "income"
    return (
        user.json()["id"],
        category.json()["id"],
        income.json()["id"],
        expense.json()["id"],
    )


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "healthy"}


def test_account_lifecycle(client) -> None:
    account = create_account(client)
    assert account["balance"] == "100.00"

    response = client.patch(f"/accounts/{account['id']}/deposit", json={"value": "20.00"})
    assert response.status_code == 200
    assert response.json()["balance"] == "120.00"

    response = client.patch(f"/accounts/{account['id']}/withdraw", json={"value": "120.00"})
    assert response.json()["balance"] == "0.00"

    movements = client.get(f"/accounts/{account['id']}/movements").json()
    assert [m["type"] for m in movements] == ["DEPOSIT", "WITHDRAW"]

    audit = client.get(f"/accounts/{account['id']}/audit").json()
    assert audit["consistent"] is True
    assert audit["movement_count"] == 2

    listed = client.get("/accounts").json()
    assert [a["id"] for a in listed] == [account["id"]]
    assert "cpf" not in listed[0]


def test_error_statuses_are_distinct(client) -> None:
    account = create_account(client)

    missing = client.get("/accounts/999")
    assert missing.status_code == 404
    assert "not found" in missing.json()["detail"]

    too_young = client.post(
        "/accounts",
        json={
            "name": "Kid",
            "cpf": "555",
            "date_of_birth": "2020-01-01",
            "bank": "Inter",
        },
    )
    assert too_young.status_code == 422
    assert isinstance(too_young.json()["detail"], str)

    overdrawn = client.patch(
        f"/accounts/{account['id']}/withdraw", json={"value": "100.01"}
    )
    assert overdrawn.status_code == 400

    duplicate = client.post(
        "/accounts",
        json={
            "name": "Other",
            "cpf": "123",
            "date_of_birth": "1980-01-01",
            "bank": "Inter",
        },
    )
    assert duplicate.status_code == 409

    bad_amount = client.patch(f"/accounts/{account['id']}/deposit", json={"value": "0"})
    assert bad_amount.status_code == 422
    assert isinstance(bad_amount.json()["detail"], list)


def test_transaction_flow(client) -> None:
    account = create_account(client)
    user_id, category_id, income_id, expense_id = create_references(client)
    payload = {
        "description": "Freelance",
        "amount": "50.00",
        "user_id": user_id,
        "category_id": category_id,
        "transaction_type_id": income_id,
        "account_id": account["id"],
    }

    created = client.post("/transactions", json=payload)
    assert created.status_code == 201
    txn = created.json()
    assert txn["transaction_type"]["kind"] == "income"
    assert client.get(f"/accounts/{account['id']}").json()["balance"] == "150.00"

    payload.update(amount="30.00")
    updated = client.put(f"/transactions/{txn['id']}", json=payload)
    assert updated.status_code == 200
    assert client.get(f"/accounts/{account['id']}").json()["balance"] == "130.00"

    payload.update(transaction_type_id=expense_id, amount="500.00")
    rejected = client.put(f"/transactions/{txn['id']}", json=payload)
    assert rejected.status_code == 400
    assert client.get(f"/transactions/{txn['id']}").json()["amount"] == "30.00"
    assert client.get(f"/accounts/{account['id']}").json()["balance"] == "130.00"

    deleted = client.delete(f"/transactions/{txn['id']}")
    assert deleted.status_code == 204
    assert client.get(f"/transactions/{txn['id']}").status_code == 404
    assert client.get("/transactions").json() == []
    assert client.get(f"/accounts/{account['id']}").json()["balance"] == "100.00"


def test_deleting_account_with_history_is_a_conflict(client) -> None:
    account = create_account(client)
    client.patch(f"/accounts/{account['id']}/deposit", json={"value": "1.00"})

    response = client.delete(f"/accounts/{account['id']}")
    assert response.status_code == 409

    fresh = create_account(client, cpf="777")
    assert client.delete(f"/accounts/{fresh['id']}").status_code == 204
