from sqlalchemy import Column, Integer, String, DateTime, Date
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from voyaj.database import Base


class Trip(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, index=True)

    # One of TripStage; stored as plain text so an unknown value can be logged rather than crash a load
    stage = Column(String(32), nullable=False, default="created", index=True)
    stage_entered_at = Column(DateTime(timezone=True), nullable=True)

    # Set only when a poll or the overlap resolver settles them
    destination = Column(String(128), nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)

    nudge_count = Column(Integer, default=0, nullable=False)
    last_nudge_at = Column(DateTime(timezone=True), nullable=True)

    group_chat_id = Column(String(128), unique=True, nullable=True, index=True)
    invite_code = Column(String(16), unique=True, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    members = relationship("Member", back_populates="trip", cascade="all, delete-orphan", passive_deletes=True)
    votes = relationship("Vote", cascade="all, delete-orphan", passive_deletes=True)
    suggestions = relationship("DestinationSuggestion", cascade="all, delete-orphan", passive_deletes=True)
    availability = relationship("DateAvailability", cascade="all, delete-orphan", passive_deletes=True)
    flights = relationship("Flight", cascade="all, delete-orphan", passive_deletes=True)
    messages = relationship("Message", cascade="all, delete-orphan", passive_deletes=True)

    def __repr__(self):
        return f"<Trip {self.id} {self.stage}>"
