"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, String, Text

from relay.storage import Base


class Exchange(Base):
    """
    One inbound WhatsApp message and the reply generated for it.

    Table: exchanges
    Primary Key: message_id (upserts overwrite, so retries never duplicate)
    """
    __tablename__ = "exchanges"

    message_id = Column(String, primary_key=True, index=True)
    from_number = Column(String, nullable=False, index=True)
    received_text = Column(Text, nullable=True)
    received_at = Column(String, nullable=False)  # ISO-8601 UTC string
    reply = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)
