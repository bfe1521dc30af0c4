from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import DependencyError
from models import Document

logger = logging.getLogger(__name__)


class DuplicateKey(Exception):
    """The uniqueness key passed to ``DocumentStore.add`` is already taken."""


@dataclass(frozen=True)
class StoredDocument:
    id: str
    data: dict[str, Any]
    version: int

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, **self.data}


def encode_value(value: Any) -> Any:
    """Convert a Python value into its JSON document form.

    Datetimes are written as UTC ISO-8601 strings with microseconds so that
    lexical ordering in the store matches chronological ordering.
    """
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Mapping):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def _field_equals(name: str, value: Any):
    element = Document.body[name]
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, (int, float)):
        return element.as_float() == float(value)
    return element.as_string() == str(encode_value(value))


def _to_stored(row) -> StoredDocument:
    return StoredDocument(id=row.id, data=dict(row.body or {}), version=row.version)


class DocumentStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_id(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        stmt = select(Document.id, Document.body, Document.version).where(
            Document.collection == collection, Document.id == doc_id
        )
        row = self._read(stmt, collection).first()
        return _to_stored(row) if row else None

    def query_equals(
        self,
        collection: str,
        filters: Mapping[str, Any],
        *,
        limit: Optional[int] = None,
    ) -> list[StoredDocument]:
        stmt = self._select(collection, filters).order_by(Document.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [_to_stored(row) for row in self._read(stmt, collection).all()]

    def query_ordered(
        self,
        collection: str,
        filters: Mapping[str, Any],
        order_by: Sequence[tuple[str, str]],
    ) -> list[StoredDocument]:
        stmt = self._select(collection, filters)
        for field_name, direction in order_by:
            if direction not in ("asc", "desc"):
                raise ValueError(f"Unsupported sort direction: {direction}")
            column = Document.body[field_name].as_string()
            stmt = stmt.order_by(column.desc() if direction == "desc" else column.asc())
        stmt = stmt.order_by(Document.id.asc())
        return [_to_stored(row) for row in self._read(stmt, collection).all()]

    def add(
        self, collection: str, doc: Mapping[str, Any], *, key: Optional[str] = None
    ) -> str:
        doc_id = uuid.uuid4().hex
        row = Document(
            collection=collection,
            id=doc_id,
            key=key,
            version=1,
            body=encode_value(dict(doc)),
        )
        try:
            self.session.add(row)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            if key is not None:
                raise DuplicateKey(key) from exc
            raise DependencyError(f"Failed to add document to {collection}") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise DependencyError(f"Failed to add document to {collection}") from exc
        self.session.expunge(row)
        return doc_id

    def update(
        self,
        collection: str,
        doc_id: str,
        partial: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[StoredDocument]:
        """
        Merge ``partial`` into the stored body as one conditional write.
        Returns None when the document is missing or its version moved on.
        """
        current = self.get_by_id(collection, doc_id)
        if current is None:
            return None
        if expected_version is not None and current.version != expected_version:
            return None

        body = {**current.data, **encode_value(dict(partial))}
        next_version = current.version + 1
        stmt = (
            update(Document)
            .where(
                Document.collection == collection,
                Document.id == doc_id,
                Document.version == current.version,
            )
            .values(body=body, version=next_version, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if self._write(stmt, collection) != 1:
            logger.debug(
                f"stale write rejected: collection={collection} id={doc_id} "
                f"version={current.version}"
            )
            return None
        return StoredDocument(id=doc_id, data=body, version=next_version)

    def delete(self, collection: str, doc_id: str) -> bool:
        stmt = (
            delete(Document)
            .where(Document.collection == collection, Document.id == doc_id)
            .execution_options(synchronize_session=False)
        )
        return self._write(stmt, collection) == 1

    def _select(self, collection: str, filters: Mapping[str, Any]):
        stmt = select(Document.id, Document.body, Document.version).where(
            Document.collection == collection
        )
        for name, value in filters.items():
            stmt = stmt.where(_field_equals(name, value))
        return stmt

    def _read(self, stmt, collection: str):
        try:
            return self.session.execute(stmt)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise DependencyError(f"Failed to read from {collection}") from exc

    def _write(self, stmt, collection: str) -> int:
        try:
            result = self.session.execute(stmt)
            count = result.rowcount
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise DependencyError(f"Failed to write to {collection}") from exc
        return count
