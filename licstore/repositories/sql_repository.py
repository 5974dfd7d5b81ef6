"""Schema-validated SQL backend exposing the same units of work as the file store."""
from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from typing import Iterable, Iterator

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from licstore.core.errors import ConflictError, DuplicateIdError, WriteFailureError
from licstore.core.utils import parse_datetime, utcnow
from licstore.db.models import DocumentRow
from licstore.db.session import get_engine, make_sessionmaker

from .base import COLLECTIONS, Database, UnitOfWork
from .document_set import DocumentSet

logger = logging.getLogger(__name__)


class SQLDatabase(Database):
    """Documents stored as JSON rows of the ``documents`` table, one transaction per unit of work."""

    def __init__(self, engine: Engine | None = None, collection_names: Iterable[str] = COLLECTIONS):
        super().__init__(collection_names)
        self.engine = engine or get_engine()
        self._sessionmaker = make_sessionmaker(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _begin(self, names: list[str]) -> Iterator[UnitOfWork]:
        session: Session = self._sessionmaker()
        try:
            rows: dict[str, dict[str, DocumentRow]] = {}
            sets: dict[str, DocumentSet] = {}
            for name in names:
                stmt = (
                    select(DocumentRow)
                    .where(DocumentRow.collection == name)
                    .order_by(DocumentRow.seq, DocumentRow.id)
                )
                loaded = session.execute(stmt).scalars().all()
                rows[name] = {row.id: row for row in loaded}
                sets[name] = DocumentSet(name, [copy.deepcopy(row.data) for row in loaded])
            work = UnitOfWork(sets)

            yield work

            if any(docs.dirty for _name, docs in work.items()):
                self._commit(session, work, rows, names)
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def _commit(self, session: Session, work: UnitOfWork, rows: dict[str, dict[str, DocumentRow]], names: list[str]) -> None:
        try:
            self._flush(session, work, rows)
            session.commit()
        except StaleDataError as exc:
            logger.error("Concurrent modification detected in %s: %s", names, exc)
            raise ConflictError(",".join(names)) from exc
        except IntegrityError as exc:
            session.rollback()
            duplicate = self._created_elsewhere(session, work)
            if duplicate is None:
                logger.error("SQL write failed for %s: %s", names, exc)
                raise WriteFailureError(DocumentRow.__tablename__, exc) from exc
            logger.error("Document %s/%s was created by another writer", *duplicate)
            raise DuplicateIdError(*duplicate) from exc
        except SQLAlchemyError as exc:
            logger.error("SQL write failed for %s: %s", names, exc)
            raise WriteFailureError(DocumentRow.__tablename__, exc) from exc

    def _flush(self, session: Session, work: UnitOfWork, rows: dict[str, dict[str, DocumentRow]]) -> None:
        for name, docs in work.items():
            if not docs.dirty:
                continue
            existing = rows[name]
            created, updated, deleted = docs.changed_documents()
            next_seq = self._next_seq(session, name)

            for document_id in deleted:
                row = existing.get(document_id)
                if row is not None:
                    session.delete(row)

            for doc in created + updated:
                row = existing.get(doc["id"])
                if row is None:
                    row = DocumentRow(
                        collection=name,
                        id=doc["id"],
                        seq=next_seq,
                        data=copy.deepcopy(doc),
                        created_at=parse_datetime(doc.get("createdAt")) or utcnow(),
                        updated_at=parse_datetime(doc.get("updatedAt")) or utcnow(),
                    )
                    next_seq += 1
                    session.add(row)
                else:
                    row.data = copy.deepcopy(doc)
                    row.updated_at = parse_datetime(doc.get("updatedAt")) or utcnow()
            logger.debug(
                "Flushing %s: %d created, %d updated, %d deleted",
                name, len(created), len(updated), len(deleted),
            )
        session.flush()

    @staticmethod
    def _next_seq(session: Session, name: str) -> int:
        stmt = select(func.max(DocumentRow.seq)).where(DocumentRow.collection == name)
        return (session.execute(stmt).scalar() or 0) + 1

    @staticmethod
    def _created_elsewhere(session: Session, work: UnitOfWork) -> tuple[str, str] | None:
        """First document this unit of work created that now exists as a row."""
        for name, docs in work.items():
            created, _updated, _deleted = docs.changed_documents()
            for doc in created:
                stmt = select(DocumentRow.id).where(
                    DocumentRow.collection == name, DocumentRow.id == doc["id"]
                )
                if session.execute(stmt).first() is not None:
                    return name, doc["id"]
        return None
