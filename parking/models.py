from sqlalchemy import Column, String, Boolean, Enum, ForeignKey, Index, Integer, Numeric, Text
from auth.database import Base, UTCDateTime, utcnow, new_id
from auth.core.enums import SessionStatus, PaymentStatus

class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=True, index=True)
    plate = Column(String(20), unique=True, nullable=False, index=True)
    vehicle_type = Column(String(30), nullable=True)
    make = Column(String(50), nullable=True)
    model = Column(String(50), nullable=True)
    color = Column(String(30), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

class ParkingSpace(Base):
    __tablename__ = "parking_spaces"
    id = Column(String(36), primary_key=True, default=new_id)
    space_number = Column(String(50), unique=True, nullable=False)
    section = Column(String(50), nullable=True)
    address = Column(String(255), nullable=True)
    category = Column(String(50), nullable=True)
    daily_rate = Column(Numeric(10, 2), nullable=False, default=0)
    is_occupied = Column(Boolean, nullable=False, default=False, index=True)
    occupied_since = Column(UTCDateTime, nullable=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

class ParkingSession(Base):
    __tablename__ = "parking_sessions"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True, index=True)
    # nulled before the space row is deleted so the session outlives it
    space_id = Column(String(36), ForeignKey("parking_spaces.id", ondelete="SET NULL"), nullable=True, index=True)
    start_time = Column(UTCDateTime, nullable=True, index=True)
    end_time = Column(UTCDateTime, nullable=True)
    status = Column(Enum(SessionStatus), default=SessionStatus.BOOKED, nullable=False, index=True)
    total_amount = Column(Numeric(10, 2), nullable=True)
    daily_rate_snapshot = Column(Numeric(10, 2), nullable=True)
    days_booked = Column(Integer, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    __table_args__ = (
        Index("idx_sessions_space_status", "space_id", "status"),
    )

class Payment(Base):
    __tablename__ = "payments"
    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=True)
    payment_method = Column(String(30), nullable=True)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
    __table_args__ = (
        Index("idx_payments_session_user_status", "session_id", "user_id", "status"),
    )

class AdminActivity(Base):
    __tablename__ = "admin_activities"
    id = Column(String(36), primary_key=True, default=new_id)
    admin_id = Column(String(36), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)

class UserActivity(Base):
    __tablename__ = "user_activities"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True, index=True)
    type = Column(String(20), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    # plain references: these rows must outlive the space and session rows
    session_id = Column(String(36), nullable=True, index=True)
    space_id = Column(String(36), nullable=True, index=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
