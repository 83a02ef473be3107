from sqlalchemy import Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from matatu_tracker.models.base import Base


class Route(Base):
    __tablename__ = "routes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    start_location: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    end_location: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    start_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    fare_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    estimated_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # minutes
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    distance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Insertion order is unreliable; consumers sort by point_order
    route_coordinates: Mapped[list["RouteCoordinate"]] = relationship(
        back_populates="route", cascade="all, delete-orphan",
    )


class RouteCoordinate(Base):
    __tablename__ = "route_coordinates"
    __table_args__ = (
        Index("ix_rc_route_order", "route_id", "point_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    route_id: Mapped[str] = mapped_column(String(64), ForeignKey("routes.id"), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    point_order: Mapped[int] = mapped_column(Integer, nullable=False)

    route: Mapped["Route"] = relationship(back_populates="route_coordinates")


# Stages and vehicles reference routes by id without a foreign key:
# orphans are tolerated and simply excluded from route views.
class Stage(Base):
    __tablename__ = "stages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    route_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    congestion: Mapped[str | None] = mapped_column(String(20), nullable=True)


class Vehicle(Base):
    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    route_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plate_number: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
