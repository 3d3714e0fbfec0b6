import uuid
from datetime import datetime
from sqlalchemy import String, Integer, SmallInteger, TIMESTAMP, ForeignKey, CheckConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from database import Base
from utils.time_utils import utc_now

INVITE_KINDS = ("code", "direct", "email")
INVITE_STATUSES = ("pending", "accepted", "expired")


class Invitation(Base):
    __tablename__ = "invitations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    room_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False
    )
    issued_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    invited_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    invited_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    kind: Mapped[str] = mapped_column(String(10), default="code", nullable=False)
    status: Mapped[str] = mapped_column(String(10), default="pending", nullable=False)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    usage_limit: Mapped[int] = mapped_column(SmallInteger, default=1, nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    message: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utc_now)

    room: Mapped["Room"] = relationship("Room")
    issuer: Mapped["User"] = relationship("User", foreign_keys=[issued_by])

    __table_args__ = (
        CheckConstraint("used_count >= 0 AND used_count <= usage_limit", name="ck_invitation_usage"),
        Index("idx_invitations_room_status", "room_id", "status"),
        Index("idx_invitations_target", "invited_user_id", "status"),
        Index("idx_invitations_expires", "expires_at"),
    )
