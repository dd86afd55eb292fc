"""Create cards and per-learner scheduling states."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261016_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "cards",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("deck_id", sa.String(length=64), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("answer", sa.Text(), nullable=False),
        sa.Column("prompt_image", sa.Text(), nullable=True),
        sa.Column("answer_image", sa.Text(), nullable=True),
        sa.Column("kind", sa.String(length=16), server_default=sa.text("'simple'"), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("position", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_cards_deck_id_position", "cards", ("deck_id", "position"))

    op.create_table(
        "scheduling_states",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("card_id", sa.String(length=64), nullable=False),
        sa.Column("learner_id", sa.String(length=64), nullable=False),
        sa.Column("stability", sa.Float(), nullable=False),
        sa.Column("difficulty", sa.Float(), nullable=False),
        sa.Column("elapsed_days", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("scheduled_days", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("reps", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("lapses", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("phase", sa.String(length=16), nullable=False),
        sa.Column("step", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("due", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_review", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "sync_status",
            sa.String(length=16),
            server_default=sa.text("'optimistic'"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            server_onupdate=sa.func.now(),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ("card_id",),
            ("cards.id",),
            name="fk_scheduling_states_card_id",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("card_id", "learner_id", name="uq_scheduling_states_card_learner"),
    )
    op.create_index(
        "ix_scheduling_states_learner_id_due",
        "scheduling_states",
        ("learner_id", "due"),
    )


def downgrade() -> None:
    op.drop_index("ix_scheduling_states_learner_id_due", table_name="scheduling_states")
    op.drop_table("scheduling_states")
    op.drop_index("ix_cards_deck_id_position", table_name="cards")
    op.drop_table("cards")
