# models.py
from __future__ import annotations

import datetime as dt
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Device(Base):
    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(String, primary_key=True)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sensor_height_cm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    alert_threshold_absolute_cm: Mapped[Optional[float]] = mapped_column(
        Float, nullable=True
    )
    alert_threshold_percentage: Mapped[Optional[float]] = mapped_column(
        Float, nullable=True
    )
    is_offline: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


class SensorReading(Base):
    __tablename__ = "sensor_readings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(
        ForeignKey("devices.device_id"), nullable=False, index=True
    )
    timestamp: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, index=True)
    raw_distance_cm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    water_level_cm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ph_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    turbidity_ntu: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    tds_ppm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    temperature_c: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rainfall_value_raw: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    received_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


class LatestReading(Base):
    __tablename__ = "latest_device_readings"

    device_id: Mapped[str] = mapped_column(
        ForeignKey("devices.device_id"), primary_key=True
    )
    timestamp: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    water_level_cm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    previous_timestamp: Mapped[Optional[dt.datetime]] = mapped_column(
        DateTime, nullable=True
    )
    previous_water_level_cm: Mapped[Optional[float]] = mapped_column(
        Float, nullable=True
    )
    raw_distance_cm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ph_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    turbidity_ntu: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    tds_ppm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    temperature_c: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rainfall_value_raw: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_updated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(
        ForeignKey("devices.device_id"), nullable=False, index=True
    )
    alert_type: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(String, nullable=False)
    triggering_sensor_data: Mapped[str] = mapped_column(Text, nullable=False)
    sensor_data_timestamp: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    triggered_at: Mapped[dt.datetime] = mapped_column(
        DateTime, nullable=False, index=True
    )
    resolved_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # at most one active row per (device, rule)
    __table_args__ = (
        Index(
            "uq_alerts_active_device_type",
            "device_id",
            "alert_type",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    endpoint: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    subscription_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)

    preferences: Mapped[List["NotificationPreference"]] = relationship(
        back_populates="subscription", cascade="all, delete-orphan"
    )


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    push_subscription_id: Mapped[int] = mapped_column(
        ForeignKey("push_subscriptions.id", ondelete="CASCADE"), primary_key=True
    )
    device_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)

    subscription: Mapped[PushSubscription] = relationship(back_populates="preferences")
