"""profiles table and change NOTIFY trigger

Learn: Every committed INSERT/UPDATE/DELETE on profiles fires pg_notify on
the 'profile_changes' channel with the row's id and email (the OLD row for
deletes). The store LISTENs on that channel to build its change feed.

Revision ID: 3f1c2a9d7e10
Revises:
Create Date: 2026-10-19 09:12:44.120551
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7e10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'profiles',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    # ─── Change notify trigger ───────────────────────────
    op.execute("""
        CREATE OR REPLACE FUNCTION notify_profile_change()
        RETURNS TRIGGER AS $$
        DECLARE
            row_data profiles;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                row_data := OLD;
            ELSE
                row_data := NEW;
            END IF;
            PERFORM pg_notify('profile_changes', json_build_object(
                'op', TG_OP,
                'id', row_data.id,
                'email', row_data.email
            )::text);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER profiles_change_notify
            AFTER INSERT OR UPDATE OR DELETE ON profiles
            FOR EACH ROW
            EXECUTE FUNCTION notify_profile_change();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS profiles_change_notify ON profiles;")
    op.execute("DROP FUNCTION IF EXISTS notify_profile_change;")
    op.drop_table('profiles')
