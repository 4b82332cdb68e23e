"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text, JSON

from app.storage import Base


class WhatsAppMessage(Base):
    """
    One durable record per WhatsApp message, incoming or outgoing.

    Table: wa_messages
    Unique: wa_message_id (one record per provider message id)

    A record created by a status event before its message event arrived is a
    placeholder: message_type and body stay NULL until the message is
    reconciled.
    """
    __tablename__ = "wa_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wa_message_id = Column(String, nullable=False, unique=True, index=True)
    from_phone = Column(String, nullable=True, index=True)
    to_phone = Column(String, nullable=True, index=True)
    direction = Column(String, nullable=False, index=True)  # incoming | outgoing
    message_type = Column(String, nullable=True)
    body = Column(Text, nullable=True)  # text content or JSON for other types
    status = Column(String, nullable=False, default="pending", index=True)
    status_updated_at = Column(String, nullable=True)  # ISO-8601 UTC from provider clock
    payload = Column(JSON, nullable=True)  # last applied event
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)
    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def counterparty_phone(self):
        """The other party: sender of incoming messages, recipient of outgoing ones."""
        return self.from_phone if self.direction == "incoming" else self.to_phone

    @property
    def is_placeholder(self) -> bool:
        return self.message_type is None

    def __repr__(self):
        return f"<WhatsAppMessage {self.wa_message_id} {self.direction} {self.status}>"
