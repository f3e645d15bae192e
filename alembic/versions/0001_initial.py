"""initial instant-win schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _campaign_fk(table: str) -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(
        ["campaign_id"],
        ["campaigns.id"],
        name=op.f(f"fk_{table}_campaign_id_campaigns"),
        ondelete="CASCADE",
    )


def upgrade() -> None:
    op.create_table(
        "campaigns",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("application_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("application_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("overall_win_probability", sa.Float(), nullable=True),
        sa.Column("participation_limit_per_user", sa.Integer(), nullable=False),
        sa.Column("participation_interval_hours", sa.Integer(), nullable=False),
        sa.Column("participation_interval_minutes", sa.Integer(), nullable=False),
        sa.Column("prevent_duplicate_prizes", sa.Boolean(), nullable=False),
        sa.Column("out_of_stock_behavior", sa.String(length=32), nullable=False),
        sa.Column("consolation_on_loss", sa.Boolean(), nullable=False),
        sa.Column("consolation_on_exhausted_stock", sa.Boolean(), nullable=False),
        sa.Column("require_ticket", sa.Boolean(), nullable=False),
        sa.Column("require_form_approval", sa.Boolean(), nullable=False),
        sa.Column("approval_form_fields", sa.JSON(), nullable=True),
        sa.Column("questionnaire_fields", sa.JSON(), nullable=True),
        sa.Column("event_mode_enabled", sa.Boolean(), nullable=False),
        sa.Column("event_chances_to_grant", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_campaigns")),
    )

    op.create_table(
        "prizes",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("campaign_id", ID_TYPE, nullable=False),
        sa.Column("prize_key", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("rank", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("image_url", sa.String(length=512), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("probability", sa.Float(), nullable=True),
        sa.Column("stock", sa.Integer(), nullable=False),
        sa.Column("unlimited_stock", sa.Boolean(), nullable=False),
        sa.Column("winners_count", sa.Integer(), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_consolation", sa.Boolean(), nullable=False),
        sa.Column("coupon_terms", sa.Text(), nullable=True),
        sa.Column("available_stores", sa.JSON(), nullable=True),
        sa.Column("coupon_usage_limit", sa.Integer(), nullable=True),
        sa.Column("prevent_reusing_at_same_store", sa.Boolean(), nullable=True),
        sa.Column("shared_url", sa.String(length=1024), nullable=True),
        sa.Column("shipping_fields", sa.JSON(), nullable=True),
        _campaign_fk("prizes"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_prizes")),
        sa.UniqueConstraint("campaign_id", "prize_key", name="uq_prize_campaign_key"),
    )
    op.create_index(
        "ix_prizes_campaign_position", "prizes", ["campaign_id", "position"], unique=False
    )

    op.create_table(
        "prize_urls",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("prize_id", ID_TYPE, nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("assigned_user_id", sa.String(length=128), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["prize_id"],
            ["prizes.id"],
            name=op.f("fk_prize_urls_prize_id_prizes"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_prize_urls")),
    )
    op.create_index(
        "ix_prize_urls_prize_assigned",
        "prize_urls",
        ["prize_id", "assigned_at"],
        unique=False,
    )

    op.create_table(
        "participation_records",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("campaign_id", ID_TYPE, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("won_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("prize_id", ID_TYPE, nullable=True),
        sa.Column("prize_key", sa.String(length=64), nullable=False),
        sa.Column("prize_snapshot", sa.JSON(), nullable=True),
        sa.Column("is_consolation_prize", sa.Boolean(), nullable=False),
        sa.Column("assigned_url", sa.String(length=1024), nullable=True),
        sa.Column("coupon_used_count", sa.Integer(), nullable=False),
        sa.Column("coupon_usage_history", sa.JSON(), nullable=False),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        sa.Column("questionnaire_answers", sa.JSON(), nullable=True),
        _campaign_fk("participation_records"),
        sa.ForeignKeyConstraint(
            ["prize_id"],
            ["prizes.id"],
            name=op.f("fk_participation_records_prize_id_prizes"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_participation_records")),
    )
    op.create_index(
        "ix_participation_campaign_user_won",
        "participation_records",
        ["campaign_id", "user_id", "won_at"],
        unique=False,
    )

    op.create_table(
        "chance_overrides",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("campaign_id", ID_TYPE, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("extra_chances", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        _campaign_fk("chance_overrides"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_chance_overrides")),
        sa.UniqueConstraint("campaign_id", "user_id", name="uq_chance_override_user"),
    )

    op.create_table(
        "claimed_grants",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("campaign_id", ID_TYPE, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("source_key", sa.String(length=191), nullable=False),
        sa.Column("source_type", sa.String(length=16), nullable=False),
        sa.Column("chances_granted", sa.Integer(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        _campaign_fk("claimed_grants"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_claimed_grants")),
        sa.UniqueConstraint(
            "campaign_id", "user_id", "source_key", name="uq_claimed_grant_source"
        ),
    )

    op.create_table(
        "participation_tickets",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("campaign_id", ID_TYPE, nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("chances_to_grant", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        _campaign_fk("participation_tickets"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_participation_tickets")),
        sa.UniqueConstraint("token", name=op.f("uq_participation_tickets_token")),
    )

    op.create_table(
        "event_tokens",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("campaign_id", ID_TYPE, nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("chances", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_by_user_id", sa.String(length=128), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        _campaign_fk("event_tokens"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_event_tokens")),
        sa.UniqueConstraint("token", name=op.f("uq_event_tokens_token")),
    )

    op.create_table(
        "participation_requests",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("campaign_id", ID_TYPE, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("form_data", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(length=255), nullable=True),
        sa.Column("chances_granted", sa.Integer(), nullable=True),
        _campaign_fk("participation_requests"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_participation_requests")),
    )
    op.create_index(
        "ix_participation_requests_campaign_user",
        "participation_requests",
        ["campaign_id", "user_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        "ix_participation_requests_campaign_user", table_name="participation_requests"
    )
    op.drop_table("participation_requests")
    op.drop_table("event_tokens")
    op.drop_table("participation_tickets")
    op.drop_table("claimed_grants")
    op.drop_table("chance_overrides")
    op.drop_index(
        "ix_participation_campaign_user_won", table_name="participation_records"
    )
    op.drop_table("participation_records")
    op.drop_index("ix_prize_urls_prize_assigned", table_name="prize_urls")
    op.drop_table("prize_urls")
    op.drop_index("ix_prizes_campaign_position", table_name="prizes")
    op.drop_table("prizes")
    op.drop_table("campaigns")
