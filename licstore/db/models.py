"""SQLAlchemy model mirroring the per-collection JSON files."""
from __future__ import annotations

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import validates

from licstore.core.ids import normalize

from .session import Base

COLLECTION_NAMES = ("licenses", "systems", "users", "vendors")


class DocumentRow(Base):
    """One document of one collection; ``data`` holds the full document."""

    __tablename__ = "documents"

    collection = Column(String(32), primary_key=True)
    id = Column(String(64), primary_key=True)
    seq = Column(Integer, nullable=False)
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    version = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "collection IN ({})".format(", ".join(f"'{name}'" for name in COLLECTION_NAMES)),
            name="ck_documents_collection",
        ),
        CheckConstraint("length(id) > 0", name="ck_documents_id_not_blank"),
        Index("ix_documents_collection_seq", "collection", "seq"),
    )
    __mapper_args__ = {"version_id_col": version}

    @validates("data")
    def _validate_data(self, _key, value):
        if not isinstance(value, dict):
            raise ValueError("document data must be an object")
        if normalize(value.get("id")) != normalize(self.id):
            raise ValueError(f"document id {value.get('id')!r} does not match row id {self.id!r}")
        for field in ("createdAt", "updatedAt"):
            if not value.get(field):
                raise ValueError(f"document is missing {field}")
        return value
