from sqlalchemy import Column, Integer, DateTime, Date, Boolean, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from voyaj.database import Base


class DestinationSuggestion(Base):
    __tablename__ = "destination_suggestions"
    __table_args__ = (
        UniqueConstraint("trip_id", "member_id", name="uq_suggestion_per_member"),
    )

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False)

    destinations = Column(JSON, default=list)

    suggested_at = Column(DateTime(timezone=True), server_default=func.now())

    member = relationship("Member")


class DateAvailability(Base):
    __tablename__ = "date_availability"
    __table_args__ = (
        UniqueConstraint("trip_id", "member_id", name="uq_availability_per_member"),
    )

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False)

    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    is_flexible = Column(Boolean, default=False, nullable=False)

    submitted_at = Column(DateTime(timezone=True), server_default=func.now())

    member = relationship("Member")
