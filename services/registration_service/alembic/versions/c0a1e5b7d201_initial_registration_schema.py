"""initial_registration_schema

Revision ID: c0a1e5b7d201
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "c0a1e5b7d201"
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    "cohort_admin_status_enum": ("scheduled", "cancelled"),
    "seat_holder_kind_enum": ("registration", "waitlist_offer"),
    "seat_hold_status_enum": ("held", "released"),
    "registration_status_enum": (
        "pending_payment",
        "confirmed",
        "cancelled",
        "expired",
        "refunded",
    ),
    "payment_status_enum": ("pending", "completed", "failed", "refunded"),
    "discount_type_enum": ("percentage", "fixed_amount"),
    "waitlist_status_enum": ("waiting", "offered", "expired", "converted"),
    "gateway_event_type_enum": ("created", "paid", "failed", "refund_issued"),
    "gateway_event_status_enum": ("received", "processed", "anomaly", "failed"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "cohorts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("program_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("enrolled_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("price_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        _ts("registration_opens_at", nullable=False),
        _ts("registration_closes_at", nullable=False),
        _ts("start_date", nullable=False),
        _ts("end_date", nullable=False),
        sa.Column("admin_status", _enum("cohort_admin_status_enum"), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint(
            "enrolled_count >= 0 AND enrolled_count <= capacity",
            name="ck_cohorts_enrolled_within_capacity",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_cohorts"),
    )
    op.create_index("ix_cohorts_program_id", "cohorts", ["program_id"])

    op.create_table(
        "seat_holds",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("cohort_id", sa.Uuid(), nullable=False),
        sa.Column("holder_kind", _enum("seat_holder_kind_enum"), nullable=False),
        sa.Column("status", _enum("seat_hold_status_enum"), nullable=False),
        _ts("created_at"),
        _ts("released_at"),
        sa.ForeignKeyConstraint(
            ["cohort_id"], ["cohorts.id"], name="fk_seat_holds_cohort_id_cohorts"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_seat_holds"),
    )
    op.create_index("ix_seat_holds_cohort_id", "seat_holds", ["cohort_id"])

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("discount_type", _enum("discount_type_enum"), nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=False),
        sa.Column("max_discount", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_purchase", sa.Numeric(12, 2), nullable=True),
        sa.Column("program_id", sa.Uuid(), nullable=True),
        _ts("valid_from"),
        _ts("valid_until"),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), server_default="0", nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_promo_codes"),
    )
    op.create_index("ix_promo_codes_code", "promo_codes", ["code"], unique=True)

    op.create_table(
        "registrations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("learner_id", sa.String(), nullable=False),
        sa.Column("cohort_id", sa.Uuid(), nullable=False),
        sa.Column("status", _enum("registration_status_enum"), nullable=False),
        sa.Column("base_amount", sa.Integer(), nullable=False),
        sa.Column("discount_amount", sa.Integer(), server_default="0", nullable=False),
        sa.Column("amount_due", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("promo_code_id", sa.Uuid(), nullable=True),
        sa.Column("promo_code", sa.String(length=50), nullable=True),
        sa.Column("seat_hold_id", sa.Uuid(), nullable=True),
        _ts("created_at"),
        _ts("expires_at"),
        _ts("confirmed_at"),
        _ts("cancelled_at"),
        _ts("expired_at"),
        _ts("refunded_at"),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        _ts("updated_at"),
        sa.ForeignKeyConstraint(
            ["cohort_id"], ["cohorts.id"], name="fk_registrations_cohort_id_cohorts"
        ),
        sa.ForeignKeyConstraint(
            ["promo_code_id"],
            ["promo_codes.id"],
            name="fk_registrations_promo_code_id_promo_codes",
        ),
        sa.ForeignKeyConstraint(
            ["seat_hold_id"],
            ["seat_holds.id"],
            name="fk_registrations_seat_hold_id_seat_holds",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_registrations"),
    )
    op.create_index("ix_registrations_learner_id", "registrations", ["learner_id"])
    op.create_index("ix_registrations_cohort_id", "registrations", ["cohort_id"])
    op.create_index("ix_registrations_expires_at", "registrations", ["expires_at"])
    op.create_index(
        "uq_registrations_active_learner_cohort",
        "registrations",
        ["learner_id", "cohort_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending_payment', 'confirmed')"),
    )

    op.create_table(
        "registration_transitions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("registration_id", sa.Uuid(), nullable=False),
        sa.Column("from_status", _enum("registration_status_enum"), nullable=False),
        sa.Column("to_status", _enum("registration_status_enum"), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("occurred_at"),
        sa.ForeignKeyConstraint(
            ["registration_id"],
            ["registrations.id"],
            name="fk_registration_transitions_registration_id_registrations",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_registration_transitions"),
    )
    op.create_index(
        "ix_registration_transitions_registration_id",
        "registration_transitions",
        ["registration_id"],
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("registration_id", sa.Uuid(), nullable=False),
        sa.Column("provider_reference", sa.String(length=64), nullable=False),
        sa.Column("provider_payment_id", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", _enum("payment_status_enum"), nullable=False),
        _ts("paid_at"),
        _ts("failed_at"),
        _ts("refunded_at"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.ForeignKeyConstraint(
            ["registration_id"],
            ["registrations.id"],
            name="fk_payments_registration_id_registrations",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_payments"),
        sa.UniqueConstraint("registration_id", name="uq_payments_registration_id"),
    )
    op.create_index(
        "ix_payments_provider_reference",
        "payments",
        ["provider_reference"],
        unique=True,
    )

    op.create_table(
        "promo_code_usages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("promo_code_id", sa.Uuid(), nullable=False),
        sa.Column("registration_id", sa.Uuid(), nullable=False),
        sa.Column("discount_amount", sa.Integer(), nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(
            ["promo_code_id"],
            ["promo_codes.id"],
            name="fk_promo_code_usages_promo_code_id_promo_codes",
        ),
        sa.ForeignKeyConstraint(
            ["registration_id"],
            ["registrations.id"],
            name="fk_promo_code_usages_registration_id_registrations",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_promo_code_usages"),
        sa.UniqueConstraint(
            "registration_id", name="uq_promo_code_usages_registration_id"
        ),
    )
    op.create_index(
        "ix_promo_code_usages_promo_code_id", "promo_code_usages", ["promo_code_id"]
    )

    op.create_table(
        "waitlist_entries",
        sa.Column("sequence", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("learner_id", sa.String(), nullable=False),
        sa.Column("cohort_id", sa.Uuid(), nullable=False),
        sa.Column("status", _enum("waitlist_status_enum"), nullable=False),
        _ts("enqueued_at"),
        _ts("offered_at"),
        _ts("offer_expires_at"),
        sa.Column("seat_hold_id", sa.Uuid(), nullable=True),
        sa.Column("converted_registration_id", sa.Uuid(), nullable=True),
        _ts("expired_at"),
        _ts("updated_at"),
        sa.ForeignKeyConstraint(
            ["cohort_id"], ["cohorts.id"], name="fk_waitlist_entries_cohort_id_cohorts"
        ),
        sa.ForeignKeyConstraint(
            ["seat_hold_id"],
            ["seat_holds.id"],
            name="fk_waitlist_entries_seat_hold_id_seat_holds",
        ),
        sa.PrimaryKeyConstraint("sequence", name="pk_waitlist_entries"),
    )
    op.create_index("ix_waitlist_entries_learner_id", "waitlist_entries", ["learner_id"])
    op.create_index(
        "ix_waitlist_entries_offer_expires_at", "waitlist_entries", ["offer_expires_at"]
    )
    op.create_index(
        "ix_waitlist_entries_queue",
        "waitlist_entries",
        ["cohort_id", "status", "sequence"],
    )
    op.create_index(
        "uq_waitlist_entries_active_learner_cohort",
        "waitlist_entries",
        ["learner_id", "cohort_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('waiting', 'offered')"),
    )

    op.create_table(
        "gateway_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("event_type", _enum("gateway_event_type_enum"), nullable=False),
        sa.Column("provider_reference", sa.String(length=64), nullable=False),
        sa.Column("provider_payment_id", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", _enum("gateway_event_status_enum"), nullable=False),
        sa.Column("anomaly", sa.String(length=64), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        _ts("next_attempt_at"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("received_at"),
        _ts("processed_at"),
        sa.PrimaryKeyConstraint("id", name="pk_gateway_events"),
        sa.UniqueConstraint(
            "idempotency_key", name="uq_gateway_events_idempotency_key"
        ),
    )
    op.create_index(
        "ix_gateway_events_provider_reference", "gateway_events", ["provider_reference"]
    )
    op.create_index(
        "ix_gateway_events_next_attempt_at", "gateway_events", ["next_attempt_at"]
    )


def downgrade() -> None:
    op.drop_table("gateway_events")
    op.drop_table("waitlist_entries")
    op.drop_table("promo_code_usages")
    op.drop_table("payments")
    op.drop_table("registration_transitions")
    op.drop_table("registrations")
    op.drop_table("promo_codes")
    op.drop_table("seat_holds")
    op.drop_table("cohorts")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
