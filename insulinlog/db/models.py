# insulinlog/db/models.py
from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    SmallInteger,
    String,
    Table,
    Text,
)

metadata = MetaData()

# SQLite only autoincrements INTEGER PRIMARY KEY
PK = BigInteger().with_variant(Integer, "sqlite")

patients = Table(
    "patients",
    metadata,
    Column("id", PK, primary_key=True, autoincrement=True),
    Column("name", String(120), nullable=False),
    Column("email", String(255), nullable=True, unique=True),
    Column("phone", String(32), nullable=True),
    Column("role", String(16), nullable=False, default="patient"),  # patient | admin | superadmin
    Column("active", Boolean, nullable=False, default=False),
    Column("verified", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),  # soft delete
    Column("created_at", DateTime, nullable=True),  # UTC naive
    # reminder state
    Column("last_dose_time", DateTime, nullable=True),
    Column("has_logged_first_dose", Boolean, nullable=False, default=False),
    Column("sms_reminder_cycle", String(16), nullable=False, default="new_user"),
    Column("reminder_attempts", SmallInteger, nullable=False, default=0),
    Column("last_reminder_sent", DateTime, nullable=True),
    Column("next_reminder_time", DateTime, nullable=True),
    Column("welcome_sms_sent_at", DateTime, nullable=True),
    Column("admin_notified_date", DateTime, nullable=True),
    Column("last_activation_date", DateTime, nullable=True),
    Column("previous_active_state", Boolean, nullable=True),
    # subscription
    Column("subscription_expiry", DateTime, nullable=True),
    Column("subscription_type", String(10), nullable=True),  # Monthly | Yearly
    Column("deactivated_at", DateTime, nullable=True),
    Column("deactivation_reason", String(64), nullable=True),
    Index("ix_patients_cycle_active", "sms_reminder_cycle", "active"),
    Index("ix_patients_activation", "last_activation_date"),
    Index("ix_patients_expiry_active", "subscription_expiry", "active"),
)

doses = Table(
    "doses",
    metadata,
    Column("id", PK, primary_key=True, autoincrement=True),
    Column("patient_id", BigInteger, ForeignKey("patients.id"), nullable=False),
    Column("type", String(8), nullable=False),  # 'Basal' | 'Bolus'
    Column("timestamp", DateTime, nullable=False),  # UTC naive
    Column("notes", Text, nullable=True),
    Column("created_at", DateTime, nullable=True),
    Index("ix_doses_patient_ts", "patient_id", "timestamp"),
)
