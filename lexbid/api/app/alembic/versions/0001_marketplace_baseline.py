"""Marketplace baseline schema.

Revision ID: 0001_marketplace_baseline
Revises:
Create Date: 2026-10-17

Creates profiles, cases, bids (with version snapshots), conversations,
engagement confirmations, risk-signal tables and operator configuration.
``cases.selected_bid_id`` is added after ``bids`` exists because the two
tables reference each other.
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_marketplace_baseline"
down_revision: str | None = None
branch_labels: tuple[str, ...] | None = None
depends_on: tuple[str, ...] | None = None


def _id() -> sa.Column:
    return sa.Column("id", sa.Uuid(), primary_key=True)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "client_profiles",
        _id(),
        sa.Column("user_id", sa.Uuid(), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        _ts("created_at", nullable=True),
    )
    op.create_index("ix_client_profiles_user_id", "client_profiles", ["user_id"])

    op.create_table(
        "attorney_profiles",
        _id(),
        sa.Column("user_id", sa.Uuid(), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        _ts("created_at", nullable=True),
    )
    op.create_index("ix_attorney_profiles_user_id", "attorney_profiles", ["user_id"])

    op.create_table(
        "attorney_specialties",
        _id(),
        sa.Column(
            "attorney_profile_id",
            sa.Uuid(),
            sa.ForeignKey("attorney_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.String(64), nullable=False),
        sa.UniqueConstraint(
            "attorney_profile_id", "category", name="uq_attorney_specialty"
        ),
    )

    op.create_table(
        "attorney_service_areas",
        _id(),
        sa.Column(
            "attorney_profile_id",
            sa.Uuid(),
            sa.ForeignKey("attorney_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("state_code", sa.String(2), nullable=False),
        sa.Column("zip_code", sa.String(10), nullable=True),
        _ts("created_at", nullable=True),
    )
    op.create_index(
        "idx_service_areas_attorney", "attorney_service_areas", ["attorney_profile_id"]
    )

    op.create_table(
        "cases",
        _id(),
        sa.Column(
            "client_profile_id",
            sa.Uuid(),
            sa.ForeignKey("client_profiles.id"),
            nullable=False,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("description_masked", sa.Text(), nullable=True),
        sa.Column("category", sa.String(64), nullable=False),
        sa.Column("state_code", sa.String(2), nullable=False),
        sa.Column("city", sa.String(120), nullable=True),
        sa.Column("zip_code", sa.String(10), nullable=False),
        sa.Column("urgency", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("fee_mode", sa.String(16), nullable=True),
        sa.Column("budget_min", sa.Float(), nullable=True),
        sa.Column("budget_max", sa.Float(), nullable=True),
        _ts("quote_deadline", nullable=True),
        sa.Column("selected_bid_id", sa.Uuid(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_cases_client_profile_id", "cases", ["client_profile_id"])
    op.create_index("idx_cases_status_created", "cases", ["status", "created_at"])
    op.create_index("idx_cases_category", "cases", ["category"])
    op.create_index("idx_cases_state", "cases", ["state_code"])

    op.create_table(
        "bids",
        _id(),
        sa.Column("case_id", sa.Uuid(), sa.ForeignKey("cases.id"), nullable=False),
        sa.Column(
            "attorney_profile_id",
            sa.Uuid(),
            sa.ForeignKey("attorney_profiles.id"),
            nullable=False,
        ),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("fee_quote_min", sa.Float(), nullable=True),
        sa.Column("fee_quote_max", sa.Float(), nullable=True),
        sa.Column("fee_mode", sa.String(16), nullable=False),
        sa.Column("service_scope", sa.Text(), nullable=True),
        sa.Column("estimated_days", sa.Integer(), nullable=True),
        sa.Column("includes_consultation", sa.Boolean(), nullable=False),
        _ts("contacted_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint(
            "case_id", "attorney_profile_id", name="uq_bid_case_attorney"
        ),
    )
    op.create_index(
        "ix_bids_attorney_profile_id", "bids", ["attorney_profile_id"]
    )
    op.create_index("idx_bids_case_status", "bids", ["case_id", "status"])

    with op.batch_alter_table("cases") as batch:
        batch.create_foreign_key(
            "fk_cases_selected_bid_id", "bids", ["selected_bid_id"], ["id"]
        )

    op.create_table(
        "bid_versions",
        _id(),
        sa.Column("bid_id", sa.Uuid(), sa.ForeignKey("bids.id"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("fee_quote_min", sa.Float(), nullable=True),
        sa.Column("fee_quote_max", sa.Float(), nullable=True),
        sa.Column("fee_mode", sa.String(16), nullable=False),
        sa.Column("service_scope", sa.Text(), nullable=True),
        sa.Column("estimated_days", sa.Integer(), nullable=True),
        sa.Column("includes_consultation", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("bid_id", "version", name="uq_bid_version"),
    )

    op.create_table(
        "case_status_logs",
        _id(),
        sa.Column("case_id", sa.Uuid(), sa.ForeignKey("cases.id"), nullable=False),
        sa.Column("from_status", sa.String(16), nullable=True),
        sa.Column("to_status", sa.String(16), nullable=False),
        sa.Column("operator_id", sa.Uuid(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_case_status_logs_case_id", "case_status_logs", ["case_id"])

    op.create_table(
        "conversations",
        _id(),
        sa.Column(
            "bid_id", sa.Uuid(), sa.ForeignKey("bids.id"), nullable=False, unique=True
        ),
        sa.Column("case_id", sa.Uuid(), sa.ForeignKey("cases.id"), nullable=False),
        sa.Column("client_profile_id", sa.Uuid(), nullable=False),
        sa.Column("attorney_profile_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_conversations_case_id", "conversations", ["case_id"])
    op.create_index(
        "ix_conversations_attorney_profile_id", "conversations", ["attorney_profile_id"]
    )

    op.create_table(
        "conversation_messages",
        _id(),
        sa.Column(
            "conversation_id",
            sa.Uuid(),
            sa.ForeignKey("conversations.id"),
            nullable=False,
        ),
        sa.Column("sender_role", sa.String(16), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        _ts("created_at"),
    )
    op.create_index(
        "ix_conversation_messages_conversation_id",
        "conversation_messages",
        ["conversation_id"],
    )

    op.create_table(
        "engagement_confirmations",
        _id(),
        sa.Column(
            "bid_id", sa.Uuid(), sa.ForeignKey("bids.id"), nullable=False, unique=True
        ),
        sa.Column("case_id", sa.Uuid(), sa.ForeignKey("cases.id"), nullable=False),
        sa.Column(
            "conversation_id",
            sa.Uuid(),
            sa.ForeignKey("conversations.id"),
            nullable=True,
        ),
        sa.Column("client_profile_id", sa.Uuid(), nullable=False),
        sa.Column("attorney_profile_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(24), nullable=False),
        sa.Column("fee_mode", sa.String(16), nullable=False),
        sa.Column("fee_amount_min", sa.Float(), nullable=True),
        sa.Column("fee_amount_max", sa.Float(), nullable=True),
        sa.Column("includes_consultation", sa.Boolean(), nullable=True),
        sa.Column("service_boundary", sa.String(16), nullable=True),
        sa.Column("service_scope_summary", sa.Text(), nullable=True),
        sa.Column("non_legal_advice_ack", sa.Boolean(), nullable=True),
        sa.Column("no_attorney_client_relationship_ack", sa.Boolean(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index(
        "ix_engagement_confirmations_case_id", "engagement_confirmations", ["case_id"]
    )
    op.create_index(
        "ix_engagement_confirmations_attorney_profile_id",
        "engagement_confirmations",
        ["attorney_profile_id"],
    )

    op.create_table(
        "content_rule_events",
        _id(),
        sa.Column("case_id", sa.Uuid(), sa.ForeignKey("cases.id"), nullable=True),
        sa.Column("rule_key", sa.String(64), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_content_rule_events_case_id", "content_rule_events", ["case_id"])

    op.create_table(
        "dispute_tickets",
        _id(),
        sa.Column("case_id", sa.Uuid(), sa.ForeignKey("cases.id"), nullable=True),
        sa.Column("status", sa.String(24), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_dispute_tickets_case_id", "dispute_tickets", ["case_id"])

    op.create_table(
        "conversation_reports",
        _id(),
        sa.Column(
            "conversation_id",
            sa.Uuid(),
            sa.ForeignKey("conversations.id"),
            nullable=False,
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("created_at"),
    )
    op.create_index(
        "ix_conversation_reports_conversation_id",
        "conversation_reports",
        ["conversation_id"],
    )

    weight_columns = []
    for name, default in (
        ("weight_unquoted", 140),
        ("weight_quoteable", 100),
        ("weight_soon_deadline", 70),
        ("weight_urgent", 80),
        ("weight_high", 50),
        ("weight_category_match", 60),
        ("weight_state_match", 40),
        ("weight_recency_max_boost", 30),
        ("weight_bid_crowding_penalty", 8),
        ("bid_crowding_penalty_cap", 48),
    ):
        for variant in ("a", "b"):
            weight_columns.append(
                sa.Column(
                    f"{name}_{variant}",
                    sa.Integer(),
                    nullable=True,
                    server_default=str(default),
                )
            )

    op.create_table(
        "ranking_configs",
        _id(),
        sa.Column("key", sa.String(64), nullable=False, unique=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("active_variant", sa.String(1), nullable=False, server_default="A"),
        sa.Column(
            "ab_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "ab_rollout_percent", sa.Integer(), nullable=False, server_default="50"
        ),
        *weight_columns,
        sa.Column("category_whitelist", sa.JSON(), nullable=True),
        sa.Column("category_blacklist", sa.JSON(), nullable=True),
        sa.Column("whitelist_boost", sa.Integer(), server_default="0"),
        sa.Column("non_whitelist_penalty", sa.Integer(), server_default="0"),
        sa.Column("blacklist_penalty", sa.Integer(), server_default="0"),
        sa.Column("attorney_exposure_soft_cap", sa.Integer(), server_default="0"),
        sa.Column(
            "attorney_exposure_penalty_per_extra", sa.Integer(), server_default="0"
        ),
        sa.Column("high_risk_penalty", sa.Integer(), server_default="0"),
        sa.Column("high_risk_rule_hit_threshold", sa.Integer(), server_default="0"),
        sa.Column("high_risk_report_threshold", sa.Integer(), server_default="0"),
        sa.Column("high_risk_dispute_threshold", sa.Integer(), server_default="0"),
        sa.Column("max_per_category_in_top_n", sa.Integer(), server_default="0"),
        sa.Column("category_exposure_window", sa.Integer(), server_default="10"),
        sa.Column("updated_by", sa.Uuid(), nullable=True),
        _ts("updated_at"),
    )

    op.create_table(
        "ops_priority_settings",
        _id(),
        sa.Column("key", sa.String(64), nullable=False, unique=True),
        sa.Column("high_value_base_weight", sa.Integer(), server_default="30"),
        sa.Column("high_value_reason_weight", sa.Integer(), server_default="5"),
        sa.Column(
            "first_bid_overdue_published_weight", sa.Integer(), server_default="35"
        ),
        sa.Column("first_message_overdue_weight", sa.Integer(), server_default="25"),
        sa.Column("quoted_not_selected_weight", sa.Integer(), server_default="15"),
        sa.Column(
            "selected_no_conversation_weight", sa.Integer(), server_default="20"
        ),
        sa.Column("urgent_weight", sa.Integer(), server_default="10"),
        _ts("updated_at"),
    )

    op.create_table(
        "admin_action_logs",
        _id(),
        sa.Column("admin_user_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        _ts("created_at"),
    )


def downgrade() -> None:
    op.drop_table("admin_action_logs")
    op.drop_table("ops_priority_settings")
    op.drop_table("ranking_configs")
    op.drop_table("conversation_reports")
    op.drop_table("dispute_tickets")
    op.drop_table("content_rule_events")
    op.drop_table("engagement_confirmations")
    op.drop_table("conversation_messages")
    op.drop_table("conversations")
    op.drop_table("case_status_logs")
    op.drop_table("bid_versions")
    with op.batch_alter_table("cases") as batch:
        batch.drop_constraint("fk_cases_selected_bid_id", type_="foreignkey")
    op.drop_table("bids")
    op.drop_table("cases")
    op.drop_table("attorney_service_areas")
    op.drop_table("attorney_specialties")
    op.drop_table("attorney_profiles")
    op.drop_table("client_profiles")
