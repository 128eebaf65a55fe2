"""create business registry and prompt execution tables

Revision ID: 4e7a2c91b0d3
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "4e7a2c91b0d3"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # =========================================================
    # 1. businesses
    # =========================================================
    op.create_table(
        "businesses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("website", sa.String(500), nullable=True),
        sa.Column("refresh_period_days", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("next_execution_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_businesses_next_execution_time", "businesses", ["next_execution_time"])

    # =========================================================
    # 2. topics + prompts
    # =========================================================
    op.create_table(
        "topics",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "business_id", sa.Integer(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_custom", sa.Boolean(), nullable=False, server_default="false"),
    )

    op.create_table(
        "prompts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "business_id", sa.Integer(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column(
            "topic_id", sa.Integer(), sa.ForeignKey("topics.id", ondelete="SET NULL"), nullable=True, index=True
        ),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("is_custom", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_priority", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # =========================================================
    # 3. competitors
    # =========================================================
    op.create_table(
        "competitors",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "business_id", sa.Integer(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("website", sa.String(500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("business_id", "name", name="uq_business_competitor"),
    )

    # =========================================================
    # 4. provider_configs (credential is Fernet-encrypted)
    # =========================================================
    op.create_table(
        "provider_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "business_id", sa.Integer(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("platform_id", sa.String(50), nullable=False),
        sa.Column("provider_family", sa.String(20), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("credential", sa.LargeBinary(), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("budget_limit", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # =========================================================
    # 5. prompt_executions (prompt_id has no FK: records outlive prompts)
    # =========================================================
    op.create_table(
        "prompt_executions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "business_id", sa.Integer(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("prompt_id", sa.Integer(), nullable=False, index=True),
        sa.Column("platform_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("model_version", sa.String(100), nullable=True),
        sa.Column("cost_usd", sa.Float(), nullable=True),
        sa.Column("refresh_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("brand_mentions", sa.Integer(), nullable=True),
        sa.Column("brand_rank", sa.Integer(), nullable=True),
        sa.Column("analysis_confidence", sa.Float(), nullable=True),
        sa.Column("business_visibility", sa.Integer(), nullable=True),
        sa.Column("share_of_voice", sa.Float(), nullable=True),
        sa.Column("competitors_mentioned", JSONB(none_as_null=True), nullable=True),
        sa.Column("mention_analysis", JSONB(none_as_null=True), nullable=True),
        sa.Column("competitor_share_of_voice", JSONB(none_as_null=True), nullable=True),
        sa.Column("competitor_visibilities", JSONB(none_as_null=True), nullable=True),
        sa.Column("sources", JSONB(none_as_null=True), nullable=True),
        sa.UniqueConstraint("prompt_id", "platform_id", "refresh_date", name="uq_prompt_execution_day"),
    )
    op.create_index("ix_prompt_executions_business_status", "prompt_executions", ["business_id", "status"])


def downgrade() -> None:
    op.drop_index("ix_prompt_executions_business_status", table_name="prompt_executions")
    op.drop_table("prompt_executions")
    op.drop_table("provider_configs")
    op.drop_table("competitors")
    op.drop_table("prompts")
    op.drop_table("topics")
    op.drop_index("ix_businesses_next_execution_time", table_name="businesses")
    op.drop_table("businesses")
