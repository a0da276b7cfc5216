from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from voyaj.database import Base


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("trip_id", "poll_type", "member_id", name="uq_vote_per_poll"),
    )

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False)

    poll_type = Column(String(16), nullable=False)
    # Destination name, or "YYYY-MM-DD/YYYY-MM-DD" for date polls
    choice = Column(String(128), nullable=False)

    voted_at = Column(DateTime(timezone=True), server_default=func.now())
