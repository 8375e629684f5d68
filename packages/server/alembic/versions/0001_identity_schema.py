"""Identity schema: credentials, profiles, memberships, role grants.

Revision ID: 0001_identity_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_identity_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # credentials (owned by the authentication subsystem)
    op.create_table(
        "credentials",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_credentials_email", "credentials", ["email"], unique=True)
    op.execute("CREATE INDEX ix_credentials_email_lower ON credentials (lower(email))")

    # profiles (1:1 with credentials)
    op.create_table(
        "profiles",
        sa.Column("id", sa.Text(), sa.ForeignKey("credentials.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=False, server_default=""),
        sa.Column("role", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"])

    # memberships (legacy rows may have no identity yet)
    op.create_table(
        "memberships",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "identity_id",
            sa.Text(),
            sa.ForeignKey("credentials.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=False, server_default="Member"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    # At most one membership per identity; NULLs (legacy rows) are not constrained
    op.create_index("ix_memberships_identity_id", "memberships", ["identity_id"], unique=True)
    op.create_index("ix_memberships_email", "memberships", ["email"])
    op.execute("CREATE INDEX ix_memberships_email_lower ON memberships (lower(email))")

    # role_grants (append-only; survives credential deletion)
    op.create_table(
        "role_grants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("identity_id", sa.Text(), nullable=False),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("granted_by", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.Text(), nullable=True),
        sa.CheckConstraint("role IN ('Admin', 'SuperAdmin')", name="ck_role_grants_role"),
    )
    op.create_index("ix_role_grants_identity_id", "role_grants", ["identity_id"])

    # Grants are never deleted, only revoked
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_role_grant_delete()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'role_grants rows cannot be deleted; revoke instead';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER role_grants_append_only
        BEFORE DELETE ON role_grants
        FOR EACH ROW EXECUTE FUNCTION prevent_role_grant_delete();
    """)


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS role_grants_append_only ON role_grants")
    op.execute("DROP FUNCTION IF EXISTS prevent_role_grant_delete()")

    op.drop_table("role_grants")
    op.drop_table("memberships")
    op.drop_table("profiles")
    op.drop_table("credentials")
