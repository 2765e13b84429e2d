"""refund_intents_and_sequence_rows

Revision ID: 9b2e7d4c1a58
Revises: 4f1a2c9d7e3b
Create Date: 2026-10-18 11:42:37.904115

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '9b2e7d4c1a58'
down_revision: Union[str, None] = '4f1a2c9d7e3b'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Возвраты шлюза, не записанные в платёж, они же очередь сверки возвратов
    op.create_table(
        'refund_intents',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('gateway_refund_id', sa.String(), nullable=False),
        sa.Column('gateway_payment_id', sa.String(), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('gateway_status', sa.String(), nullable=False),
        sa.Column('reason', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_refund_id')
    )
    op.create_index(op.f('ix_refund_intents_gateway_payment_id'), 'refund_intents', ['gateway_payment_id'], unique=False)
    op.create_index(op.f('ix_refund_intents_status'), 'refund_intents', ['status'], unique=False)

    # Строки счётчиков создаём заранее: ленивое создание первой строки
    # в двух параллельных транзакциях упирается в первичный ключ
    for name in ('order', 'payment'):
        op.execute(
            sa.text(
                "INSERT INTO number_sequences (name, last_value) "
                "SELECT :name, 0 WHERE NOT EXISTS "
                "(SELECT 1 FROM number_sequences WHERE name = :name)"
            ).bindparams(name=name)
        )


def downgrade() -> None:
    op.drop_index(op.f('ix_refund_intents_status'), table_name='refund_intents')
    op.drop_index(op.f('ix_refund_intents_gateway_payment_id'), table_name='refund_intents')
    op.drop_table('refund_intents')
