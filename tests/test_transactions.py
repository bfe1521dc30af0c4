from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ConflictError, ValidationError
from models import DEFAULT_CATEGORY_OWNER, TRANSACTIONS, CategoryScope, TransactionType
from schemas import CategoryIn, TransactionIn
from services import CategoryService, TransactionFilters, TransactionService
from store import DocumentStore


def test_seed_defaults_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seeder = CategoryService(session, DEFAULT_CATEGORY_OWNER)
        assert seeder.seed_defaults() == 4
        assert seeder.seed_defaults() == 0

        names = [category.name for category in CategoryService(session, "u1").list_all()]
        assert names == ["Apparels", "Electronics", "Groceries", "Income"]


def test_user_categories_follow_defaults() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session, DEFAULT_CATEGORY_OWNER).seed_defaults()
        service = CategoryService(session, "u1")
        created = service.create(CategoryIn(name="  Books ", icon="book", color="#123456"))

        assert created.name == "Books"
        assert created.scope == CategoryScope.user
        assert created.type == TransactionType.expense
        assert service.list_all()[-1].name == "Books"
        assert [c.name for c in CategoryService(session, "u2").list_all()][-1] == "Income"

        with pytest.raises(ConflictError):
            service.create(CategoryIn(name="books", icon="book", color="#123456"))


def test_category_name_length_is_validated() -> None:
    with pytest.raises(ValueError):
        CategoryIn(name="x", icon="book", color="#123456")
    with pytest.raises(ValueError):
        CategoryIn(name="x" * 51, icon="book", color="#123456")


def test_transaction_category_resolves_case_and_typos() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session, DEFAULT_CATEGORY_OWNER).seed_defaults()
        service = TransactionService(session, "u1")

        exact = service.create(
            TransactionIn(type=TransactionType.expense, category="groceries", amount=5)
        )
        typo = service.create(
            TransactionIn(type=TransactionType.expense, category="Grocerie", amount=6)
        )
        unknown = service.create(
            TransactionIn(type=TransactionType.expense, category="Travel", amount=7)
        )

        assert exact.category == "Groceries"
        assert typo.category == "Groceries"
        assert unknown.category == "Travel"
        assert unknown.payment_method == "Other"
        assert unknown.description == ""


def test_equally_close_categories_are_ambiguous() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session, "u1")
        categories.create(CategoryIn(name="Gas", icon="car", color="#000000"))
        categories.create(CategoryIn(name="Gap", icon="shirt", color="#000000"))

        with pytest.raises(ValidationError, match="ambiguous"):
            categories.resolve("Gax")


def test_list_filters_and_sorts_newest_first() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = DocumentStore(session)
        for amount, day, txn_type in [
            (1, 1, "EXPENSE"),
            (2, 3, "EXPENSE"),
            (3, 2, "INCOME"),
            (4, 9, "EXPENSE"),
        ]:
            store.add(
                TRANSACTIONS,
                {
                    "userId": "u1",
                    "type": txn_type,
                    "category": "Groceries",
                    "amount": amount,
                    "createdAt": datetime(2024, 3, day, tzinfo=timezone.utc),
                },
            )
        store.add(TRANSACTIONS, {"userId": "u1", "type": "EXPENSE", "amount": 5})

        service = TransactionService(session, "u1")
        everything = service.list()
        assert [txn.amount for txn in everything] == [4, 2, 3, 1]

        filtered = service.list(
            TransactionFilters(
                type=TransactionType.expense, start="2024-03-01", end="2024-03-05"
            )
        )
        assert [txn.amount for txn in filtered] == [2, 1]
        assert service.list(TransactionFilters(category="Rent")) == []
