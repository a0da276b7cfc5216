from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey
from sqlalchemy.sql import func
from voyaj.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False, index=True)

    # Sender phone, or "bot" for outbound messages
    from_phone = Column(String(32), nullable=False)
    body = Column(Text, nullable=False)
    group_chat_id = Column(String(128), nullable=True)

    received_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, index=True)
    # No FK: errors are kept after the trip is gone
    trip_id = Column(Integer, nullable=True, index=True)

    error_type = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    context = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
