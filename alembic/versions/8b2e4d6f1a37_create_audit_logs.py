from alembic import op
import sqlalchemy as sa

revision = "8b2e4d6f1a37"
down_revision = "3f1c2a9d7b10"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("api_key_id", sa.Uuid(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
    )
    op.create_index("ix_audit_logs_api_key_id_ts", "audit_logs", ["api_key_id", "ts"])
    op.create_index("ix_audit_logs_ts", "audit_logs", ["ts"])


def downgrade():
    op.drop_index("ix_audit_logs_ts", table_name="audit_logs")
    op.drop_index("ix_audit_logs_api_key_id_ts", table_name="audit_logs")
    op.drop_table("audit_logs")
