"""
Write-source marker - remembers who last wrote an external object.
"""
from sqlalchemy import Column, String, Integer, DateTime, UniqueConstraint

from app.core.time_utils import utcnow
from app.db.database import Base

# Source recorded for writes made by this service
SELF_WRITE_SOURCE = "self"


class WriteSourceMarker(Base):
    """Used only to ignore webhooks caused by our own writes"""

    __tablename__ = "write_source_markers"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(100), nullable=False)
    object_type = Column(String(30), nullable=False)
    object_id = Column(String(100), nullable=False)
    last_write_source = Column(String(30), nullable=False)
    last_write_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "object_type", "object_id", name="uq_write_source_marker_object"),
    )
