"""Table declarations - registered on Base.metadata so create_all can build the schema.

Stores query these tables with raw SQL; the ORM classes are only the schema source.
Timestamps are epoch seconds (float) to keep the schema portable across drivers.
"""

from sqlalchemy import Boolean, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from atsight.core.database import Base


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), index=True)
    child_id: Mapped[str] = mapped_column(String(128), index=True)
    guardian_id: Mapped[str] = mapped_column(String(128), index=True)
    ts: Mapped[float] = mapped_column(Float, index=True)
    payload: Mapped[str] = mapped_column(Text, default="{}")
    processed: Mapped[bool] = mapped_column(Boolean, default=False)


class AlertWatermarkRow(Base):
    __tablename__ = "alert_watermarks"

    guardian_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    ts: Mapped[float] = mapped_column(Float)


class ZoneRow(Base):
    __tablename__ = "zones"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    child_id: Mapped[str] = mapped_column(String(128), index=True)
    name: Mapped[str] = mapped_column(String(128))
    lat: Mapped[float] = mapped_column(Float)
    lon: Mapped[float] = mapped_column(Float)
    radius_meters: Mapped[float] = mapped_column(Float)
    is_safe: Mapped[bool] = mapped_column(Boolean, default=True)
    position: Mapped[int] = mapped_column(Integer, default=0)


class NotificationSettingsRow(Base):
    __tablename__ = "notification_settings"

    child_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    safe_zone_alert: Mapped[bool] = mapped_column(Boolean, default=True)
    unsafe_zone_alert: Mapped[bool] = mapped_column(Boolean, default=True)
    low_battery_alert: Mapped[bool] = mapped_column(Boolean, default=True)
    watch_removed_alert: Mapped[bool] = mapped_column(Boolean, default=True)
    new_connection_request: Mapped[bool] = mapped_column(Boolean, default=True)
    sound: Mapped[str] = mapped_column(String(32), default="default_sound")
    low_battery_threshold: Mapped[int] = mapped_column(Integer, default=20)


class PairingCodeRow(Base):
    __tablename__ = "pairing_codes"

    pin: Mapped[str] = mapped_column(String(6), primary_key=True)
    guardian_id: Mapped[str] = mapped_column(String(128), nullable=True)
    child_id: Mapped[str] = mapped_column(String(128), nullable=True)
    child_name: Mapped[str] = mapped_column(String(128), nullable=True)
    parent_name: Mapped[str] = mapped_column(String(128), nullable=True)
    admin_id: Mapped[str] = mapped_column(String(128), nullable=True)
    admin_child_id: Mapped[str] = mapped_column(String(128), nullable=True)
    approval_status: Mapped[str] = mapped_column(String(32), default="")
    created_ts: Mapped[float] = mapped_column(Float)


class GuardianLinkRow(Base):
    __tablename__ = "guardian_links"

    guardian_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    child_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    guardian_name: Mapped[str] = mapped_column(String(128), default="Parent")
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    linked_ts: Mapped[float] = mapped_column(Float)


class PushSubscriptionRow(Base):
    __tablename__ = "push_subscriptions"

    recipient_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    endpoint: Mapped[str] = mapped_column(Text)
    p256dh_key: Mapped[str] = mapped_column(Text)
    auth_key: Mapped[str] = mapped_column(Text)
    updated_ts: Mapped[float] = mapped_column(Float)


class ChildRow(Base):
    __tablename__ = "children"

    child_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=True)
