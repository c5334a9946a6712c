"""
Login attempt tracking for lockout.

One row per (lower-cased email, origin address). The identity id is filled
in when the email resolves to a real account but is not a foreign key:
attempts against unknown emails are tracked the same way.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from onboarding_auth.db.base import Base


class LoginAttempt(Base):
    """Failed login counter for one email/origin bucket."""

    __tablename__ = "login_attempts"
    __table_args__ = (
        UniqueConstraint("email", "ip_address", name="uq_login_attempts_email_ip"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)  # IPv6 max length
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lockout_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    identity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    def __repr__(self) -> str:
        return f"<LoginAttempt {self.email} from {self.ip_address} count={self.attempt_count}>"
