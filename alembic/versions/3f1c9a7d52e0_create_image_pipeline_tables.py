"""create_image_pipeline_tables

Revision ID: 3f1c9a7d52e0
Revises:
Create Date: 2025-10-20 09:12:41.118302

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1c9a7d52e0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SLOT_STATUSES = ("PENDING", "QUEUED", "PROCESSING", "COMPLETED", "FAILED", "RETRY")
SLOT_TYPES = (
    "MAIN",
    "SMALL",
    "NORMAL",
    "LARGE",
    "THUMBNAIL",
    "FULL",
    "ART_CROP",
    "BORDER_CROP",
    "BACK",
)
JOB_STATUSES = ("WAITING", "ACTIVE", "COMPLETED", "FAILED")


def upgrade() -> None:
    """Create prints, card_images, image_processing_jobs and system_state."""
    # Enum types are shared between tables, so they are created once up front
    slot_status = postgresql.ENUM(*SLOT_STATUSES, name="slotstatus", create_type=False)
    slot_type = postgresql.ENUM(*SLOT_TYPES, name="slottype", create_type=False)
    job_status = postgresql.ENUM(*JOB_STATUSES, name="jobstatus", create_type=False)
    bind = op.get_bind()
    for enum_type in (slot_status, slot_type, job_status):
        sa.Enum(*enum_type.enums, name=enum_type.name).create(bind, checkfirst=True)

    op.create_table(
        "prints",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("image_small", sa.String(length=500), nullable=True),
        sa.Column("image_normal", sa.String(length=500), nullable=True),
        sa.Column("image_large", sa.String(length=500), nullable=True),
        sa.Column("image_art_crop", sa.String(length=500), nullable=True),
        sa.Column("image_border_crop", sa.String(length=500), nullable=True),
        sa.Column("perceptual_hash", sa.String(length=255), nullable=True),
        sa.Column("image_processing_status", slot_status, nullable=False),
        sa.Column("image_processed_at", sa.DateTime(), nullable=True),
        sa.Column("image_processing_error", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_prints_image_processing_status", "prints", ["image_processing_status"], unique=False
    )

    op.create_table(
        "card_images",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("print_id", sa.String(length=64), nullable=False),
        sa.Column("slot_type", slot_type, nullable=False),
        sa.Column("status", slot_status, nullable=False),
        sa.Column("source_url", sa.String(length=2048), nullable=False),
        sa.Column("storage_urls", sa.JSON(), nullable=True),
        sa.Column("perceptual_hash", sa.String(length=255), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["print_id"], ["prints.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("print_id", "slot_type", name="uq_card_images_print_slot"),
    )
    op.create_index("ix_card_images_print_id", "card_images", ["print_id"], unique=False)
    op.create_index("ix_card_images_status", "card_images", ["status"], unique=False)

    op.create_table(
        "image_processing_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("print_id", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("available_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_image_processing_jobs_print_id", "image_processing_jobs", ["print_id"], unique=False
    )
    op.create_index(
        "ix_image_processing_jobs_status", "image_processing_jobs", ["status"], unique=False
    )
    op.create_index(
        "ix_image_processing_jobs_available_at",
        "image_processing_jobs",
        ["available_at"],
        unique=False,
    )
    # Claim query: waiting rows by priority, then age
    op.create_index(
        "idx_image_jobs_claim",
        "image_processing_jobs",
        ["status", "priority", "available_at"],
        unique=False,
    )

    op.create_table(
        "system_state",
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("state_value", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    """Drop image pipeline tables and enum types."""
    op.drop_table("system_state")
    op.drop_index("idx_image_jobs_claim", table_name="image_processing_jobs")
    op.drop_index("ix_image_processing_jobs_available_at", table_name="image_processing_jobs")
    op.drop_index("ix_image_processing_jobs_status", table_name="image_processing_jobs")
    op.drop_index("ix_image_processing_jobs_print_id", table_name="image_processing_jobs")
    op.drop_table("image_processing_jobs")
    op.drop_index("ix_card_images_status", table_name="card_images")
    op.drop_index("ix_card_images_print_id", table_name="card_images")
    op.drop_table("card_images")
    op.drop_index("ix_prints_image_processing_status", table_name="prints")
    op.drop_table("prints")

    bind = op.get_bind()
    for name in ("jobstatus", "slottype", "slotstatus"):
        sa.Enum(name=name).drop(bind, checkfirst=True)
