"""create_providers_and_generation_requests

Revision ID: 3f1c2a9d7e41
Revises:
Create Date: 2026-10-17 09:12:40.118203

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1c2a9d7e41"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

generation_type = sa.Enum("IMAGE", "VIDEO", "AUDIO", name="generationtype")
generation_status = sa.Enum(
    "PENDING", "PROCESSING", "SUCCESS", "FAILED", "CANCELLED", name="generationstatus"
)


def upgrade() -> None:
    """Create providers and generation_requests tables."""
    op.create_table(
        "providers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("model_identifier", sa.String(length=255), nullable=False),
        sa.Column("adapter_name", sa.String(length=100), nullable=False),
        sa.Column("generation_type", generation_type, nullable=False),
        sa.Column("api_endpoint", sa.String(length=500), nullable=False),
        sa.Column("auth_key", sa.String(length=500), nullable=True),
        sa.Column("model_version", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("upload_to_s3", sa.Boolean(), nullable=False),
        sa.Column("s3_path_prefix", sa.String(length=255), nullable=True),
        sa.Column("call_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_providers_model_identifier"), "providers", ["model_identifier"], unique=True
    )
    op.create_index(op.f("ix_providers_is_active"), "providers", ["is_active"], unique=False)

    op.create_table(
        "generation_requests",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.Uuid(), nullable=False),
        sa.Column("model_identifier", sa.String(length=255), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("input_images", sa.JSON(), nullable=False),
        sa.Column("number_of_outputs", sa.Integer(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("status", generation_status, nullable=False),
        sa.Column("results", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(length=50), nullable=True),
        sa.Column("provider_task_id", sa.String(length=255), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("request_payload", sa.JSON(), nullable=True),
        sa.Column("response_payload", sa.JSON(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("client_key_hash", sa.String(length=64), nullable=True),
        sa.Column("client_key_prefix", sa.String(length=16), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("provider_id", "model_identifier", "status", "provider_task_id"):
        op.create_index(
            op.f(f"ix_generation_requests_{column}"),
            "generation_requests",
            [column],
            unique=False,
        )
    op.create_index(
        op.f("ix_generation_requests_client_key_hash"),
        "generation_requests",
        ["client_key_hash"],
        unique=False,
    )

    # Worker claim query: oldest PENDING first, deleted rows excluded
    op.create_index(
        "ix_generation_requests_pending_created_at",
        "generation_requests",
        ["created_at"],
        unique=False,
        postgresql_where=sa.text("status = 'PENDING' AND deleted_at IS NULL"),
    )


def downgrade() -> None:
    """Drop generation_requests and providers tables."""
    op.drop_index("ix_generation_requests_pending_created_at", table_name="generation_requests")
    for column in (
        "client_key_hash",
        "provider_task_id",
        "status",
        "model_identifier",
        "provider_id",
    ):
        op.drop_index(op.f(f"ix_generation_requests_{column}"), table_name="generation_requests")
    op.drop_table("generation_requests")

    op.drop_index(op.f("ix_providers_is_active"), table_name="providers")
    op.drop_index(op.f("ix_providers_model_identifier"), table_name="providers")
    op.drop_table("providers")

    generation_status.drop(op.get_bind(), checkfirst=True)
    generation_type.drop(op.get_bind(), checkfirst=True)
