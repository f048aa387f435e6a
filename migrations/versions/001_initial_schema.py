"""Initial schema: riders, drivers and rides with the embedded match attempt.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

VEHICLE_TYPES = ("motorcycle", "car")
DRIVER_AVAILABILITY = (
    "available",
    "en_route_to_pickup",
    "waiting_to_pickup",
    "en_route_to_drop_off",
    "waiting_for_payment",
)
RIDE_STATUSES = (
    "searching",
    "requesting_driver",
    "driver_accepted",
    "driver_arrived",
    "in_progress",
    "payment_in_progress",
    "completed",
    "cancelled",
)


def upgrade() -> None:
    vehicle_type = sa.Enum(*VEHICLE_TYPES, name="vehicletype")

    # ── riders ────────────────────────────────────────────────────────
    op.create_table(
        "riders",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("vehicle_type", vehicle_type, nullable=False),
        sa.Column(
            "availability_status",
            sa.Enum(*DRIVER_AVAILABILITY, name="driveravailability"),
            nullable=False,
            server_default="available",
        ),
        sa.Column("decline_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("missed_requests", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_drivers_availability", "drivers", ["availability_status"])

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "rider_id", sa.Integer, sa.ForeignKey("riders.id"), nullable=False
        ),
        sa.Column(
            "driver_id", sa.Integer, sa.ForeignKey("drivers.id"), nullable=True
        ),
        sa.Column(
            "status",
            sa.Enum(*RIDE_STATUSES, name="ridestatus"),
            nullable=False,
            server_default="searching",
        ),
        sa.Column(
            "vehicle_type",
            postgresql.ENUM(*VEHICLE_TYPES, name="vehicletype", create_type=False),
            nullable=False,
        ),
        sa.Column("service_variant", sa.String(40), nullable=False),
        sa.Column("distance_m", sa.Float, nullable=False),
        sa.Column("duration_s", sa.Float, nullable=False),
        sa.Column("fare", sa.Float, nullable=False),
        sa.Column("platform_fee", sa.Float, nullable=False),
        sa.Column("driver_earning", sa.Float, nullable=False),
        sa.Column("app_commission", sa.Float, nullable=False),
        sa.Column("fare_breakdown", sa.JSON, nullable=False),
        sa.Column("planned_pickup_lng", sa.Float, nullable=False),
        sa.Column("planned_pickup_lat", sa.Float, nullable=False),
        sa.Column("planned_pickup_address", sa.String(255), nullable=False),
        sa.Column("planned_dropoff_lng", sa.Float, nullable=False),
        sa.Column("planned_dropoff_lat", sa.Float, nullable=False),
        sa.Column("planned_dropoff_address", sa.String(255), nullable=False),
        sa.Column("actual_pickup_lng", sa.Float, nullable=True),
        sa.Column("actual_pickup_lat", sa.Float, nullable=True),
        sa.Column("actual_dropoff_lng", sa.Float, nullable=True),
        sa.Column("actual_dropoff_lat", sa.Float, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("attempted_drivers", sa.JSON, nullable=False),
        sa.Column("message_data", sa.JSON, nullable=False),
        sa.Column("status_reason", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_rider", "rides", ["rider_id"])
    op.create_index("idx_rides_driver", "rides", ["driver_id"])
    # At most one non-terminal ride per rider
    op.create_index(
        "uq_rides_rider_active",
        "rides",
        ["rider_id"],
        unique=True,
        postgresql_where=sa.text("status NOT IN ('completed', 'cancelled')"),
    )


def downgrade() -> None:
    op.drop_table("rides")
    op.drop_table("drivers")
    op.drop_table("riders")
    op.execute("DROP TYPE IF EXISTS ridestatus")
    op.execute("DROP TYPE IF EXISTS driveravailability")
    op.execute("DROP TYPE IF EXISTS vehicletype")
