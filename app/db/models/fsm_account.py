"""
FSM account credentials.
"""
from sqlalchemy import Column, String, DateTime, Text

from app.core.time_utils import utcnow
from app.db.database import Base


class FSMAccount(Base):
    """OAuth tokens for one connected FSM account"""

    __tablename__ = "fsm_accounts"

    account_id = Column(String(100), primary_key=True)
    name = Column(String(200), nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
