from sqlalchemy import Column, String, DateTime, func
from sqlalchemy.orm import relationship
from app.db.deps import Base


class User(Base):
    __tablename__ = "users"

    # Issued by the authentication provider; stable for the lifetime of the account
    id = Column(String, primary_key=True)
    email = Column(String, unique=True, index=True, nullable=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscription = relationship(
        "Subscription", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    subject_grants = relationship(
        "SubjectGrant", back_populates="user", cascade="all, delete-orphan"
    )
