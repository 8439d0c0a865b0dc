"""enforce append-only payment link timeline

Revision ID: 0002_timeline_immutability
Revises: 0001_merchant_api
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_timeline_immutability"
down_revision = "0001_merchant_api"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_timeline_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only; % is not allowed', TG_TABLE_NAME, TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payment_link_timeline_immutable
        BEFORE UPDATE OR DELETE ON payment_link_timeline
        FOR EACH ROW
        EXECUTE FUNCTION prevent_timeline_mutation();
        """
    )
    # Links are retained for audit and listing; never physically deleted.
    op.execute(
        """
        CREATE TRIGGER trg_payment_links_no_delete
        BEFORE DELETE ON payment_links
        FOR EACH ROW
        EXECUTE FUNCTION prevent_timeline_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_payment_links_no_delete ON payment_links;")
    op.execute("DROP TRIGGER IF EXISTS trg_payment_link_timeline_immutable ON payment_link_timeline;")
    op.execute("DROP FUNCTION IF EXISTS prevent_timeline_mutation();")
