"""Initial schema

Creates every table from the current model metadata. Later revisions should
be autogenerated against this baseline.

Revision ID: 0001_initial
Revises: None
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    from qadesk.extensions import db
    import qadesk.models  # noqa: F401
    db.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    from qadesk.extensions import db
    import qadesk.models  # noqa: F401
    db.metadata.drop_all(bind=op.get_bind(), checkfirst=True)
