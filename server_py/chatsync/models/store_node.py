from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, JSON, String

from chatsync.core.database import Base


class StoreNode(Base):
    """One leaf of the store tree, keyed by its full path."""

    __tablename__ = "store_nodes"

    path = Column(String(768), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
