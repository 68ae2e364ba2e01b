from sqlalchemy import Column, Integer, String, JSON, UniqueConstraint, DateTime, func
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone

Base = declarative_base()

# --- SQLAlchemy ORM Models ---

class Record(Base):
    """
    One stored record of a collection ('items', 'tags', 'categories', 'settings').
    The surrogate id preserves insertion order, which the query engine relies
    on to break ties between items created at the same instant.
    """
    __tablename__ = 'records'
    id = Column(Integer, primary_key=True)
    collection = Column(String, nullable=False, index=True)
    # The record's own key field (item id, tag name, category key...) as text.
    key = Column(String, nullable=False)
    data = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), server_default=func.now(), nullable=False)
    # A record is defined by the unique combination of its collection and key.
    __table_args__ = (UniqueConstraint('collection', 'key', name='_collection_key_uc'),)
