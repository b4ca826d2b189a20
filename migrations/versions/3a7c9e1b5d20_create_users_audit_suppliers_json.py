"""create users, audit_events and suppliers_json

Revision ID: 3a7c9e1b5d20
Revises:
Create Date: 2026-09-28 10:12:44.180233

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3a7c9e1b5d20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Create base tables. Idempotent: databases that already have a table keep it."""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("role", sa.String(32), nullable=False, server_default="user"),
            sa.Column("name", sa.String(255), nullable=False, server_default=""),
            sa.Column("allowed_countries", JSON_TYPE, nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_by", sa.String(64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.String(64), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
        )
        op.create_index("idx_audit_events_created_at", "audit_events", ["created_at"])
        op.create_index("idx_audit_events_action", "audit_events", ["action"])
    else:
        cols = {c["name"] for c in inspector.get_columns("audit_events")}
        if "client_ip" not in cols:
            op.add_column("audit_events", sa.Column("client_ip", sa.String(64), nullable=True))

    if "suppliers_json" not in existing_tables:
        op.create_table(
            "suppliers_json",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("country", sa.String(10), nullable=True),
            sa.Column("data", JSON_TYPE, nullable=False),
            sa.Column("created_by_user_id", sa.String(64), nullable=True),
            sa.Column("created_by_user_name", sa.String(255), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_suppliers_json_country", "suppliers_json", ["country"])
        op.create_index("idx_suppliers_json_created_by", "suppliers_json", ["created_by_user_id"])


def downgrade() -> None:
    op.drop_index("idx_suppliers_json_created_by", table_name="suppliers_json")
    op.drop_index("idx_suppliers_json_country", table_name="suppliers_json")
    op.drop_table("suppliers_json")
    op.drop_index("idx_audit_events_action", table_name="audit_events")
    op.drop_index("idx_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("users")
