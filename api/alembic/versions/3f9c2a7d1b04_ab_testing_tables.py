"""A/B testing tables: experiments, assignments, outcomes and analyzer state

Revision ID: 3f9c2a7d1b04
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f9c2a7d1b04'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

channel = postgresql.ENUM('email', 'sms', 'whatsapp', name='ab_channel', create_type=False)
experiment_status = postgresql.ENUM(
    'draft', 'running', 'paused', 'completed', name='ab_experiment_status', create_type=False
)
success_metric = postgresql.ENUM(
    'delivery_rate', 'open_rate', 'click_rate', 'response_rate', name='ab_success_metric', create_type=False
)
statistical_method = postgresql.ENUM(
    'frequentist', 'bayesian', 'sequential', 'bandit', name='ab_statistical_method', create_type=False
)
bandit_algorithm = postgresql.ENUM('thompson', 'ucb', 'epsilon_greedy', name='ab_bandit_algorithm', create_type=False)
sequential_decision = postgresql.ENUM(
    'continue', 'stop_winner', 'stop_futile', name='ab_sequential_decision', create_type=False
)

ENUMS = (channel, experiment_status, success_metric, statistical_method, bandit_algorithm, sequential_decision)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table('ab_power_analysis',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=True),
        sa.Column('baseline_rate', sa.Float(), nullable=False),
        sa.Column('minimum_detectable_effect', sa.Float(), nullable=False),
        sa.Column('desired_power', sa.Float(), nullable=False, server_default='0.8'),
        sa.Column('significance_level', sa.Float(), nullable=False, server_default='0.05'),
        sa.Column('variant_count', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('required_sample_size', sa.Integer(), nullable=False),
        sa.Column('total_sample_size', sa.Integer(), nullable=False),
        sa.Column('daily_volume', sa.Integer(), nullable=True),
        sa.Column('estimated_duration_days', sa.Integer(), nullable=True),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_ab_power_analysis_tenant_id'), 'ab_power_analysis', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_ab_power_analysis_experiment_id'), 'ab_power_analysis', ['experiment_id'], unique=False)

    op.create_table('ab_experiments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('form_id', sa.UUID(), nullable=True),
        sa.Column('channel', channel, nullable=False),
        sa.Column('status', experiment_status, nullable=False, server_default='draft'),
        sa.Column('traffic_allocation', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('success_metric', success_metric, nullable=False, server_default='response_rate'),
        sa.Column('minimum_sample_size', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('confidence_level', sa.Float(), nullable=False, server_default='95.0'),
        sa.Column('statistical_method', statistical_method, nullable=False, server_default='frequentist'),
        sa.Column('early_stopping_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('bandit_algorithm', bandit_algorithm, nullable=True),
        sa.Column('planned_sample_size', sa.Integer(), nullable=True),
        sa.Column('total_checks', sa.Integer(), nullable=True),
        sa.Column('expected_conversion_rate', sa.Float(), nullable=True),
        sa.Column('prior_confidence', sa.Float(), nullable=True),
        sa.Column('power_analysis_id', sa.UUID(), nullable=True),
        sa.Column('winning_variant_id', sa.UUID(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['power_analysis_id'], ['ab_power_analysis.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_ab_experiments_tenant_id'), 'ab_experiments', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_ab_experiments_status'), 'ab_experiments', ['status'], unique=False)

    op.create_table('ab_variants',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('variant_name', sa.String(length=100), nullable=False),
        sa.Column('subject', sa.String(length=500), nullable=True),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('media_attachments', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('distribution_id', sa.UUID(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['experiment_id'], ['ab_experiments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('experiment_id', 'variant_name', name='uq_ab_variant_experiment_name'),
    )
    op.create_index(op.f('ix_ab_variants_experiment_id'), 'ab_variants', ['experiment_id'], unique=False)

    op.create_table('ab_assignments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('variant_id', sa.UUID(), nullable=False),
        sa.Column('recipient_id', sa.String(length=255), nullable=False),
        sa.Column('recipient_name', sa.String(length=255), nullable=True),
        sa.Column('message_id', sa.UUID(), nullable=True),
        _timestamp('assigned_at'),
        sa.ForeignKeyConstraint(['experiment_id'], ['ab_experiments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['variant_id'], ['ab_variants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('experiment_id', 'recipient_id', name='uq_ab_assignment_experiment_recipient'),
    )
    op.create_index(op.f('ix_ab_assignments_experiment_id'), 'ab_assignments', ['experiment_id'], unique=False)
    op.create_index(op.f('ix_ab_assignments_variant_id'), 'ab_assignments', ['variant_id'], unique=False)

    op.create_table('ab_outcomes',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('variant_id', sa.UUID(), nullable=False),
        sa.Column('recipient_id', sa.String(length=255), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        _timestamp('recorded_at'),
        sa.ForeignKeyConstraint(['experiment_id'], ['ab_experiments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['variant_id'], ['ab_variants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('experiment_id', 'recipient_id', name='uq_ab_outcome_experiment_recipient'),
    )
    op.create_index(op.f('ix_ab_outcomes_experiment_id'), 'ab_outcomes', ['experiment_id'], unique=False)
    op.create_index(op.f('ix_ab_outcomes_variant_id'), 'ab_outcomes', ['variant_id'], unique=False)

    op.create_table('ab_bayesian_stats',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('variant_id', sa.UUID(), nullable=False),
        sa.Column('alpha_prior', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('beta_prior', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('alpha_posterior', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('beta_posterior', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('probability_best', sa.Float(), nullable=True),
        sa.Column('credible_interval_lower', sa.Float(), nullable=True),
        sa.Column('credible_interval_upper', sa.Float(), nullable=True),
        sa.Column('expected_loss', sa.Float(), nullable=True),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['experiment_id'], ['ab_experiments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['variant_id'], ['ab_variants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('experiment_id', 'variant_id', name='uq_ab_bayesian_stats_variant'),
    )
    op.create_index(op.f('ix_ab_bayesian_stats_experiment_id'), 'ab_bayesian_stats', ['experiment_id'], unique=False)

    op.create_table('ab_sequential_analysis',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('check_number', sa.Integer(), nullable=False),
        sa.Column('total_checks', sa.Integer(), nullable=False),
        sa.Column('total_assignments', sa.Integer(), nullable=False),
        sa.Column('information_fraction', sa.Float(), nullable=False),
        sa.Column('alpha_spent', sa.Float(), nullable=False),
        sa.Column('z_statistic', sa.Float(), nullable=True),
        sa.Column('boundary_upper', sa.Float(), nullable=False),
        sa.Column('boundary_lower', sa.Float(), nullable=False),
        sa.Column('decision', sequential_decision, nullable=False),
        sa.Column('decision_reason', sa.Text(), nullable=True),
        _timestamp('checked_at'),
        sa.ForeignKeyConstraint(['experiment_id'], ['ab_experiments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('experiment_id', 'check_number', name='uq_ab_sequential_check_number'),
    )
    op.create_index(
        op.f('ix_ab_sequential_analysis_experiment_id'), 'ab_sequential_analysis', ['experiment_id'], unique=False
    )

    op.create_table('ab_bandit_state',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('variant_id', sa.UUID(), nullable=False),
        sa.Column('algorithm', bandit_algorithm, nullable=False),
        sa.Column('success_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('mean_reward', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('upper_confidence_bound', sa.Float(), nullable=True),
        sa.Column('current_allocation', sa.Float(), nullable=False),
        sa.Column('initial_allocation', sa.Float(), nullable=False),
        sa.Column('pulls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cumulative_reward', sa.Float(), nullable=False, server_default='0.0'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['experiment_id'], ['ab_experiments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['variant_id'], ['ab_variants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('experiment_id', 'variant_id', name='uq_ab_bandit_state_variant'),
    )
    op.create_index(op.f('ix_ab_bandit_state_experiment_id'), 'ab_bandit_state', ['experiment_id'], unique=False)

    op.create_table('ab_bandit_regret',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('total_pulls', sa.Integer(), nullable=False),
        sa.Column('cumulative_regret', sa.Float(), nullable=False),
        sa.Column('optimal_variant_id', sa.UUID(), nullable=True),
        _timestamp('timestamp'),
        sa.ForeignKeyConstraint(['experiment_id'], ['ab_experiments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_ab_bandit_regret_experiment_id'), 'ab_bandit_regret', ['experiment_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_ab_bandit_regret_experiment_id'), table_name='ab_bandit_regret')
    op.drop_table('ab_bandit_regret')
    op.drop_index(op.f('ix_ab_bandit_state_experiment_id'), table_name='ab_bandit_state')
    op.drop_table('ab_bandit_state')
    op.drop_index(op.f('ix_ab_sequential_analysis_experiment_id'), table_name='ab_sequential_analysis')
    op.drop_table('ab_sequential_analysis')
    op.drop_index(op.f('ix_ab_bayesian_stats_experiment_id'), table_name='ab_bayesian_stats')
    op.drop_table('ab_bayesian_stats')
    op.drop_index(op.f('ix_ab_outcomes_variant_id'), table_name='ab_outcomes')
    op.drop_index(op.f('ix_ab_outcomes_experiment_id'), table_name='ab_outcomes')
    op.drop_table('ab_outcomes')
    op.drop_index(op.f('ix_ab_assignments_variant_id'), table_name='ab_assignments')
    op.drop_index(op.f('ix_ab_assignments_experiment_id'), table_name='ab_assignments')
    op.drop_table('ab_assignments')
    op.drop_index(op.f('ix_ab_variants_experiment_id'), table_name='ab_variants')
    op.drop_table('ab_variants')
    op.drop_index(op.f('ix_ab_experiments_status'), table_name='ab_experiments')
    op.drop_index(op.f('ix_ab_experiments_tenant_id'), table_name='ab_experiments')
    op.drop_table('ab_experiments')
    op.drop_index(op.f('ix_ab_power_analysis_experiment_id'), table_name='ab_power_analysis')
    op.drop_index(op.f('ix_ab_power_analysis_tenant_id'), table_name='ab_power_analysis')
    op.drop_table('ab_power_analysis')

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
