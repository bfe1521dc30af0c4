from contextlib import contextmanager

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from main import app
from models import DEFAULT_CATEGORY_OWNER
from services import CategoryService


def make_client() -> TestClient:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with TestingSession() as session:
        CategoryService(session, DEFAULT_CATEGORY_OWNER).seed_defaults()

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


PLAN = {
    "month": "April",
    "year": "2024",
    "fixedIncome": 3000,
    "fixedCosts": 1000,
    "savingsPercentage": 20,
}


def test_plan_lifecycle_over_http() -> None:
    client = make_client()
    headers = {"X-User-Id": "u1"}

    created = client.post("/api/savings", json=PLAN, headers=headers)
    assert created.status_code == 201
    body = created.json()
    assert body["success"] is True
    plan_id = body["data"]["id"]
    assert round(body["data"]["dailySpendingLimit"], 2) == 53.33

    duplicate = client.post("/api/savings", json=PLAN, headers=headers)
    assert duplicate.status_code == 409
    assert duplicate.json() == {
        "success": False,
        "error": "conflict",
        "message": "A savings plan already exists for this month and year",
    }

    expense = client.post(
        "/api/savings/expense",
        json={"amount": 100, "category": "Groceries", "date": "2024-04-02"},
        headers=headers,
    )
    assert expense.status_code == 200
    assert expense.json()["data"]["progress"] == 6.25

    forbidden = client.put(
        f"/api/savings/{plan_id}", json={"fixedCosts": 500}, headers={"X-User-Id": "u2"}
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "permission"

    history = client.get("/api/savings/history", headers=headers)
    assert [plan["id"] for plan in history.json()["data"]] == [plan_id]

    deleted = client.delete(f"/api/savings/{plan_id}", headers=headers)
    assert deleted.status_code == 200
    missing = client.delete(f"/api/savings/{plan_id}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"


def test_validation_errors_use_envelope() -> None:
    client = make_client()
    headers = {"X-User-Id": "u1"}

    bad_percentage = client.post(
        "/api/savings", json={**PLAN, "savingsPercentage": 150}, headers=headers
    )
    assert bad_percentage.status_code == 400
    assert bad_percentage.json()["error"] == "validation"

    bad_period = client.get(
        "/api/transactions/graph",
        params={"startDate": "2024-03-01", "endDate": "2024-03-02", "period": "weekly"},
        headers=headers,
    )
    assert bad_period.status_code == 400
    assert bad_period.json()["message"] == "Period must be daily, monthly, or yearly"


def test_missing_user_header_is_rejected() -> None:
    client = make_client()
    response = client.get("/api/savings/current")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthenticated"


def test_transactions_feed_graph_and_summary() -> None:
    client = make_client()
    headers = {"X-User-Id": "u1"}

    for payload in [
        {"type": "EXPENSE", "category": "groceries", "amount": 40},
        {"type": "EXPENSE", "category": "Electronics", "amount": 60},
        {"type": "INCOME", "category": "Income", "amount": 300},
    ]:
        response = client.post("/api/transactions", json=payload, headers=headers)
        assert response.status_code == 201

    listed = client.get("/api/transactions", params={"type": "EXPENSE"}, headers=headers)
    assert len(listed.json()["data"]) == 2

    summary = client.get("/api/transactions/categories", headers=headers).json()["data"]
    assert summary["totalExpenses"] == 100
    assert [row["category"] for row in summary["categories"]] == [
        "Electronics",
        "Groceries",
    ]

    overview = client.get("/api/transactions/summary", headers=headers).json()["data"]
    assert overview["availableBalance"] == 200

    categories = client.get("/api/categories", headers=headers).json()["data"]
    assert len(categories) == 4


def test_startup_creates_tables_and_seeds_categories(monkeypatch) -> None:
    import main

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def testing_scope():
        session = TestingSession()
        try:
            yield session
            session.commit()
        finally:
            session.close()

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(main, "engine", engine)
    monkeypatch.setattr(main, "session_scope", testing_scope)
    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        response = client.get("/api/categories", headers={"X-User-Id": "u1"})

    assert response.status_code == 200
    assert [c["name"] for c in response.json()["data"]] == [
        "Apparels",
        "Electronics",
        "Groceries",
        "Income",
    ]
