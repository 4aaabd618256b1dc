"""Create custody, verification, directory and violation tables."""

from __future__ import annotations

from typing import Sequence

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261001_01"
down_revision: str | Sequence[str] | None = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "drug_batches",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("manufacturer", sa.String(length=255), nullable=False),
        sa.Column("manufacture_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("dosage", sa.String(length=255), nullable=True),
        sa.Column("side_effects", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Manufactured"),
        sa.Column("is_authentic", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("manufacturer_id", sa.String(length=64), nullable=True),
        sa.Column("distributor_id", sa.String(length=64), nullable=True),
        sa.Column("retailer_id", sa.String(length=64), nullable=True),
        sa.Column("consumer_id", sa.String(length=64), nullable=True),
        sa.Column("min_temp", sa.Float(), nullable=False),
        sa.Column("max_temp", sa.Float(), nullable=False),
        sa.Column("is_temperature_compliant", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("verification_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ledger_tx_hash", sa.String(length=80), nullable=True),
        sa.Column("ledger_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ledger_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("batch_id"),
    )
    op.create_index("ix_drug_batches_batch_id", "drug_batches", ["batch_id"])
    op.create_index("ix_drug_batches_expiry_date", "drug_batches", ["expiry_date"])
    op.create_index("ix_drug_batches_manufacturer_id", "drug_batches", ["manufacturer_id"])
    op.create_index("ix_drug_batches_distributor_id", "drug_batches", ["distributor_id"])
    op.create_index("ix_drug_batches_retailer_id", "drug_batches", ["retailer_id"])
    op.create_index("ix_drug_batches_consumer_id", "drug_batches", ["consumer_id"])
    op.create_index("ix_drug_batches_status_batch", "drug_batches", ["batch_id", "status"])
    op.create_index("ix_drug_batches_manufacturer_status", "drug_batches", ["manufacturer_id", "status"])

    op.create_table(
        "verification_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("verifier_address", sa.String(length=64), nullable=True),
        sa.Column("verification_result", sa.String(length=32), nullable=False),
        sa.Column("verification_method", sa.String(length=32), nullable=False, server_default="api"),
        sa.Column("response_time_ms", sa.Float(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_verification_events_batch_id", "verification_events", ["batch_id"])
    op.create_index("ix_verification_events_verifier_address", "verification_events", ["verifier_address"])
    op.create_index("ix_verification_events_created_at", "verification_events", ["created_at"])
    op.create_index("ix_verification_events_batch_created", "verification_events", ["batch_id", "created_at"])
    op.create_index(
        "ix_verification_events_result_created",
        "verification_events",
        ["verification_result", "created_at"],
    )

    op.create_table(
        "companies",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("address", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("postal_address", sa.JSON(), nullable=True),
        sa.Column("license_number", sa.String(length=128), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verification_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_by", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("address"),
        sa.UniqueConstraint("license_number"),
    )
    op.create_index("ix_companies_address", "companies", ["address"])
    op.create_index("ix_companies_role", "companies", ["role"])
    op.create_index("ix_companies_role_verified", "companies", ["role", "is_verified"])

    op.create_table(
        "temperature_violations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("reading", sa.Float(), nullable=False),
        sa.Column("min_temp", sa.Float(), nullable=False),
        sa.Column("max_temp", sa.Float(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reported_by", sa.String(length=64), nullable=True),
        sa.Column("ledger_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("ledger_tx_hash", sa.String(length=80), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_temperature_violations_batch_id", "temperature_violations", ["batch_id"])
    op.create_index("ix_temperature_violations_ledger_status", "temperature_violations", ["ledger_status"])


def downgrade() -> None:
    op.drop_index("ix_temperature_violations_ledger_status", table_name="temperature_violations")
    op.drop_index("ix_temperature_violations_batch_id", table_name="temperature_violations")
    op.drop_table("temperature_violations")

    op.drop_index("ix_companies_role_verified", table_name="companies")
    op.drop_index("ix_companies_role", table_name="companies")
    op.drop_index("ix_companies_address", table_name="companies")
    op.drop_table("companies")

    op.drop_index("ix_verification_events_result_created", table_name="verification_events")
    op.drop_index("ix_verification_events_batch_created", table_name="verification_events")
    op.drop_index("ix_verification_events_created_at", table_name="verification_events")
    op.drop_index("ix_verification_events_verifier_address", table_name="verification_events")
    op.drop_index("ix_verification_events_batch_id", table_name="verification_events")
    op.drop_table("verification_events")

    op.drop_index("ix_drug_batches_manufacturer_status", table_name="drug_batches")
    op.drop_index("ix_drug_batches_status_batch", table_name="drug_batches")
    op.drop_index("ix_drug_batches_consumer_id", table_name="drug_batches")
    op.drop_index("ix_drug_batches_retailer_id", table_name="drug_batches")
    op.drop_index("ix_drug_batches_distributor_id", table_name="drug_batches")
    op.drop_index("ix_drug_batches_manufacturer_id", table_name="drug_batches")
    op.drop_index("ix_drug_batches_expiry_date", table_name="drug_batches")
    op.drop_index("ix_drug_batches_batch_id", table_name="drug_batches")
    op.drop_table("drug_batches")
