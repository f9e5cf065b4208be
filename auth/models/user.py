# /models/user.py
from sqlalchemy import Column, String, Enum, Index
from ..database import Base, UTCDateTime, utcnow, new_id
from ..core.enums import UserRole

class Profile(Base):
    """Profile row mirrored from the identity service; only the role matters here."""
    __tablename__ = "profiles"
    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=True, comment="display name")
    email = Column(String(100), unique=True, index=True, nullable=True)
    role = Column(Enum(UserRole), default=UserRole.USER, nullable=False, comment="user role (admin/user)")
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
    __table_args__ = (
        Index("idx_profiles_role", "role"),
    )
