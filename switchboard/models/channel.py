import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text
from sqlalchemy.sql import func

from switchboard.database import Base


class Channel(Base):
    __tablename__ = "channels"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(Text, nullable=False)
    channel_type = Column(Text, nullable=False, default="webchat")  # webchat, whatsapp, telegram, email
    is_active = Column(Boolean, nullable=False, default=True)
    greeting_message = Column(Text)
    config = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def webhook_tools(self) -> dict:
        """Outbound webhook tools keyed by tool name: ``{"name": {"url": ..., "headers": {...}}}``."""
        if not self.config:
            return {}
        return self.config.get("webhook_tools") or {}
