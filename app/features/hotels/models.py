"""
Hotel, Room and Booking models.
"""
from datetime import date
from decimal import Decimal
from sqlalchemy import String, ForeignKey, Date, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class Hotel(Base, TimestampMixin):
    __tablename__ = "hotels"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True
    )

    def __repr__(self) -> str:
        return f"<Hotel(id={self.id}, name={self.name!r})>"


class Room(Base, TimestampMixin):
    __tablename__ = "rooms"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    hotel_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    number: Mapped[str] = mapped_column(String(20), nullable=False)
    room_type: Mapped[str] = mapped_column(String(50), nullable=False, default="standard")
    price_per_night: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)

    created_by_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True
    )

    def __repr__(self) -> str:
        return f"<Room(id={self.id}, hotel_id={self.hotel_id}, number={self.number!r})>"


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    room_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("rooms.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    guest_name: Mapped[str] = mapped_column(String(255), nullable=False)
    check_in: Mapped[date] = mapped_column(Date, nullable=False)
    check_out: Mapped[date] = mapped_column(Date, nullable=False)

    created_by_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    updated_by_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True
    )

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, room_id={self.room_id}, guest={self.guest_name!r})>"
