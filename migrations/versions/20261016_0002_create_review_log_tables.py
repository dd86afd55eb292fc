"""Create the review log, the sync outbox and study session records."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261016_0002"
down_revision: Union[str, None] = "20261016_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "review_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("card_id", sa.String(length=64), nullable=False),
        sa.Column("learner_id", sa.String(length=64), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("phase", sa.String(length=16), nullable=False),
        sa.Column("elapsed_days", sa.Float(), nullable=False),
        sa.Column("scheduled_days", sa.Float(), nullable=False),
        sa.Column("review_time_ms", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ("card_id",),
            ("cards.id",),
            name="fk_review_events_card_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_review_events_learner_id_reviewed_at",
        "review_events",
        ("learner_id", "reviewed_at"),
    )

    op.create_table(
        "pending_reviews",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("card_id", sa.String(length=64), nullable=False),
        sa.Column("learner_id", sa.String(length=64), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("review_time_ms", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(
            ("card_id",),
            ("cards.id",),
            name="fk_pending_reviews_card_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_pending_reviews_learner_id", "pending_reviews", ("learner_id",))

    op.create_table(
        "study_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("learner_id", sa.String(length=64), nullable=False),
        sa.Column("deck_id", sa.String(length=64), nullable=False),
        sa.Column("card_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("cards_studied", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("cards_correct", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("duration_ms", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_study_sessions_learner_id_ended_at",
        "study_sessions",
        ("learner_id", "ended_at"),
    )


def downgrade() -> None:
    op.drop_index("ix_study_sessions_learner_id_ended_at", table_name="study_sessions")
    op.drop_table("study_sessions")
    op.drop_index("ix_pending_reviews_learner_id", table_name="pending_reviews")
    op.drop_table("pending_reviews")
    op.drop_index("ix_review_events_learner_id_reviewed_at", table_name="review_events")
    op.drop_table("review_events")
