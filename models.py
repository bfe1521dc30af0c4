from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class GraphPeriod(str, Enum):
    daily = "daily"
    monthly = "monthly"
    yearly = "yearly"


class CategoryScope(str, Enum):
    default = "default"
    user = "user"


SAVINGS_PLANS = "savingsPlans"
TRANSACTIONS = "transactions"
CATEGORIES = "categories"

DEFAULT_CATEGORY_OWNER = "default"

DEFAULT_CATEGORIES: dict[str, dict[str, str]] = {
    "Groceries": {"icon": "cart", "color": "#4ECDC4", "type": "EXPENSE"},
    "Apparels": {"icon": "shirt", "color": "#A06CD5", "type": "EXPENSE"},
    "Electronics": {"icon": "desktop", "color": "#FF8C42", "type": "EXPENSE"},
    "Income": {"icon": "trending-up", "color": "#4CD97B", "type": "INCOME"},
}


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Document(Base, TimestampMixin):
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Optional per-collection uniqueness key, e.g. "<userId>:<month>:<year>".
    key: Mapped[Optional[str]] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        UniqueConstraint("collection", "key", name="uq_document_collection_key"),
        Index("ix_documents_collection", "collection"),
        CheckConstraint("version > 0", name="ck_documents_version_positive"),
    )
