"""SQLAlchemy ORM models for the time-indexed log store.

Provides:
- EventLog: One consumed event (log line or structured event)
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint, func

from .database import Base


class EventLog(Base):
    """Stored event keyed by correlation id and timestamp.

    Tracks:
    - Identity (correlation_id + timestamp, unique so replays are no-ops)
    - Day bucket (UTC calendar day) for day/range queries
    - Classification (service, level, event_type)
    - Payload (message, metadata, sanitized request snapshot, full event)
    """

    __tablename__ = "event_logs"
    __table_args__ = (
        UniqueConstraint("correlation_id", "timestamp", name="uq_event_logs_correlation_ts"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Identity
    correlation_id = Column(String(255), nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    # Naive UTC

    day = Column(String(10), nullable=False, index=True)
    # Format: YYYY-MM-DD (UTC)

    # Classification
    service = Column(String(255), nullable=False)
    level = Column(String(20), nullable=False, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    # Values: log|request|response|error|info|warning|debug

    # Payload
    message = Column(Text, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    http_request = Column(JSON, nullable=True)
    payload = Column(JSON, nullable=False)
    # Full wire form of the event (camelCase keys)

    created_at = Column(DateTime, nullable=False, default=func.now())

    def __repr__(self):
        return (
            f"<EventLog(id={self.id}, type={self.event_type}, level={self.level}, "
            f"correlation_id={self.correlation_id})>"
        )
