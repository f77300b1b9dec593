"""subscription core schema

Revision ID: 0001_subscription_core
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa

revision = "0001_subscription_core"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # users (credit subset and plan view)
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("username", sa.Text, nullable=True),
        sa.Column("email", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("total_credits", sa.Integer, nullable=False, server_default="4"),
        sa.Column("daily_credits", sa.Integer, nullable=False, server_default="4"),
        sa.Column("image_generation_credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("prompt_generation_credits", sa.Integer, nullable=False, server_default="4"),
        sa.Column("used_image_credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("used_prompt_credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_credit_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_subscribed", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("subscription_status", sa.Text, nullable=False, server_default="none"),
        sa.Column("plan_name", sa.Text, nullable=False, server_default="Free"),
        sa.Column("plan_type", sa.Text, nullable=False, server_default="free"),
        sa.Column("current_subscription_id", sa.Uuid, nullable=True),
        sa.Column("subscription_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_downgraded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("watermark_enabled", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("has_active_trial", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("reward_daily_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reward_total_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_reward_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status in ('active','blocked','deleted')", name="ck_user_status"),
        sa.CheckConstraint(
            "subscription_status in ('none','active','grace_period','cancelled')",
            name="ck_user_subscription_status",
        ),
    )
    op.create_index("ix_users_plan_type_reset", "users", ["plan_type", "last_credit_reset"])

    # subscription_plans
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("type", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("total_credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("image_generation_credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("prompt_generation_credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("features", sa.JSON, nullable=False, server_default=sa.text("'[]'")),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("google_product_id", sa.Text, nullable=True),
        sa.Column("apple_product_id", sa.Text, nullable=True),
        sa.Column("billing_period", sa.Text, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "type IN ('free','trial','basic','standard','premium')",
            name="ck_subscription_plans_type",
        ),
        sa.UniqueConstraint("google_product_id", name="uq_subscription_plans_google_product"),
        sa.UniqueConstraint("apple_product_id", name="uq_subscription_plans_apple_product"),
    )
    op.create_index("ix_subscription_plans_type_active", "subscription_plans", ["type", "is_active"])

    # user_subscriptions
    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.Uuid, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.Uuid, sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_trial", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("trial_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("payment_method", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("renewal_reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("plan_snapshot", sa.JSON, nullable=False, server_default=sa.text("'{}'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "status IN ('active','grace_period','cancelled')",
            name="ck_user_subscriptions_status",
        ),
    )
    op.create_index("ix_user_subscriptions_user_status", "user_subscriptions", ["user_id", "status"])
    op.create_index("ix_user_subscriptions_end_date", "user_subscriptions", ["end_date"])

    # payment_records
    op.create_table(
        "payment_records",
        sa.Column("id", sa.Uuid, primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.Uuid, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.Uuid, sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("payment_method", sa.Text, nullable=False),
        sa.Column("transaction_id", sa.Text, nullable=False),
        sa.Column("original_transaction_id", sa.Text, nullable=True),
        sa.Column("product_id", sa.Text, nullable=True),
        sa.Column("platform", sa.Text, nullable=False),
        sa.Column("receipt_data", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="completed"),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("plan_snapshot", sa.JSON, nullable=False, server_default=sa.text("'{}'")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_type", sa.Text, nullable=True),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checked", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("platform IN ('ios','android','stripe')", name="ck_payment_records_platform"),
        sa.CheckConstraint(
            "status IN ('completed','cancelled','grace_period')",
            name="ck_payment_records_status",
        ),
        sa.UniqueConstraint("transaction_id", "plan_id", name="uq_payment_records_transaction_plan"),
    )
    op.execute(
        "CREATE INDEX ix_payment_records_user_platform_created "
        "ON payment_records (user_id, platform, created_at DESC)"
    )
    op.create_index("ix_payment_records_original_transaction", "payment_records", ["original_transaction_id"])


def downgrade():
    op.drop_table("payment_records")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("users")
