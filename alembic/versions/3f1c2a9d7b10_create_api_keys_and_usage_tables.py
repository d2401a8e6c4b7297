from alembic import op
import sqlalchemy as sa

revision = "3f1c2a9d7b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "api_keys",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("key_hash", sa.String(255), nullable=False),
        sa.Column("key_prefix", sa.String(32), nullable=False),
        sa.Column("label", sa.String(100), nullable=False),
        sa.Column("state", sa.String(16), nullable=False),
        sa.Column("rate_limit", sa.Integer(), nullable=True),
        sa.Column("rate_window", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_from", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("key_hash", name="api_keys_key_hash_key"),
        sa.CheckConstraint("rate_limit IS NULL OR rate_limit > 0", name="ck_api_keys_rate_limit_positive"),
        sa.CheckConstraint("rate_window IS NULL OR rate_window > 0", name="ck_api_keys_rate_window_positive"),
        sa.CheckConstraint("total_requests >= total_errors", name="ck_api_keys_counters"),
    )
    # sweeper scans active keys by expiry
    op.create_index("ix_api_keys_state_expires_at", "api_keys", ["state", "expires_at"])

    op.create_table(
        "usage_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "api_key_id",
            sa.Uuid(),
            sa.ForeignKey("api_keys.id", name="usage_logs_api_key_id_fkey", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("endpoint", sa.String(512), nullable=False),
        sa.Column("method", sa.String(16), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("latency_ms", sa.Integer(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
    )
    op.create_index("ix_usage_logs_api_key_id_ts", "usage_logs", ["api_key_id", "ts"])
    op.create_index("ix_usage_logs_ts", "usage_logs", ["ts"])

    op.create_table(
        "endpoint_usage",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "api_key_id",
            sa.Uuid(),
            sa.ForeignKey("api_keys.id", name="endpoint_usage_api_key_id_fkey", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("endpoint", sa.String(512), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_latency_ms", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("api_key_id", "endpoint", name="uq_endpoint_usage_key_endpoint"),
    )


def downgrade():
    op.drop_table("endpoint_usage")
    op.drop_index("ix_usage_logs_ts", table_name="usage_logs")
    op.drop_index("ix_usage_logs_api_key_id_ts", table_name="usage_logs")
    op.drop_table("usage_logs")
    op.drop_index("ix_api_keys_state_expires_at", table_name="api_keys")
    op.drop_table("api_keys")
