from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'sanctuary_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('topic', sa.String(256), nullable=False),
        sa.Column('description', sa.String(2048)),
        sa.Column('emoji', sa.String(16)),
        sa.Column('category', sa.String(64), index=True),
        sa.Column('tags', sa.JSON),
        sa.Column('language', sa.String(16)),
        sa.Column('access_type', sa.String(16), index=True),
        sa.Column('invitation_code', sa.String(32), index=True),
        sa.Column('status', sa.String(16), index=True, nullable=False),
        sa.Column('scheduled_at', sa.DateTime, index=True),
        sa.Column('schedule_version', sa.Integer, nullable=False, server_default='0'),
        sa.Column('duration_minutes', sa.Integer),
        sa.Column('max_participants', sa.Integer),
        sa.Column('host_id', sa.String(64), index=True, nullable=False),
        sa.Column('host_alias', sa.String(128), nullable=False),
        sa.Column('voice_modulation_enabled', sa.Boolean),
        sa.Column('moderation_enabled', sa.Boolean),
        sa.Column('recording_enabled', sa.Boolean),
        sa.Column('audio_only', sa.Boolean),
        sa.Column('emergency_contact_enabled', sa.Boolean),
        sa.Column('media_channel', sa.String(128), nullable=False),
        sa.Column('monitoring_status', sa.String(16), server_default='ok'),
        sa.Column('actual_start_time', sa.DateTime),
        sa.Column('actual_end_time', sa.DateTime),
        sa.Column('end_reason', sa.String(64)),
        sa.Column('expires_at', sa.DateTime, index=True),
        sa.Column('created_at', sa.DateTime, index=True),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ix_session_status_scheduled', 'sanctuary_sessions', ['status', 'scheduled_at'])
    op.create_table(
        'breakout_rooms',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('sanctuary_sessions.id'), index=True),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('topic', sa.String(256)),
        sa.Column('description', sa.String(1024)),
        sa.Column('facilitator_id', sa.String(64), nullable=False),
        sa.Column('max_participants', sa.Integer, nullable=False),
        sa.Column('status', sa.String(16), index=True),
        sa.Column('duration_minutes', sa.Integer),
        sa.Column('auto_close', sa.Boolean),
        sa.Column('auto_close_after_minutes', sa.Integer),
        sa.Column('media_channel', sa.String(160), nullable=False),
        sa.Column('created_seq', sa.Integer, nullable=False),
        sa.Column('created_by', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime, index=True),
        sa.Column('ended_at', sa.DateTime),
    )
    op.create_index('ix_room_session_seq', 'breakout_rooms', ['session_id', 'created_seq'])
    op.create_table(
        'participants',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('sanctuary_sessions.id'), index=True),
        sa.Column('participant_id', sa.String(64), index=True, nullable=False),
        sa.Column('alias', sa.String(128), nullable=False),
        sa.Column('role', sa.String(16)),
        sa.Column('is_muted', sa.Boolean),
        sa.Column('hand_raised', sa.Boolean),
        sa.Column('hand_raised_at', sa.DateTime),
        sa.Column('connection_status', sa.String(16)),
        sa.Column('audio_level', sa.Integer),
        sa.Column('acknowledged_at', sa.DateTime),
        sa.Column('joined_at', sa.DateTime, index=True),
        sa.Column('left_at', sa.DateTime, index=True),
        sa.Column('removal_reason', sa.String(32)),
        sa.Column('kicked', sa.Boolean),
        sa.Column('warnings', sa.Integer),
        sa.Column('room_id', sa.String(36), sa.ForeignKey('breakout_rooms.id'), index=True),
        sa.Column('room_joined_at', sa.DateTime),
        sa.Column('join_token', sa.String(512)),
    )
    op.create_index('ux_participant_session', 'participants', ['session_id', 'participant_id'], unique=True)
    op.create_table(
        'alerts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('sanctuary_sessions.id'), index=True),
        sa.Column('participant_id', sa.String(64), index=True, nullable=False),
        sa.Column('category', sa.String(32), index=True),
        sa.Column('severity', sa.String(16), index=True),
        sa.Column('confidence', sa.Float),
        sa.Column('triggers', sa.JSON),
        sa.Column('status', sa.String(16), index=True),
        sa.Column('action_required', sa.Boolean),
        sa.Column('completed_steps', sa.JSON),
        sa.Column('source', sa.String(32)),
        sa.Column('message', sa.String(1024)),
        sa.Column('emergency_notified_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, index=True),
        sa.Column('updated_at', sa.DateTime),
        sa.Column('resolved_at', sa.DateTime),
    )
    op.create_index('ix_alert_session_status', 'alerts', ['session_id', 'status'])
    op.create_table(
        'alert_actions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('alert_id', sa.String(36), sa.ForeignKey('alerts.id'), index=True),
        sa.Column('seq', sa.Integer, nullable=False),
        sa.Column('actor', sa.String(64), nullable=False),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('from_status', sa.String(16)),
        sa.Column('to_status', sa.String(16)),
        sa.Column('note', sa.String(512)),
        sa.Column('created_at', sa.DateTime, index=True),
    )
    op.create_index('ux_alert_action_seq', 'alert_actions', ['alert_id', 'seq'], unique=True)
    op.create_table(
        'transition_audit',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('session_id', sa.String(36), index=True),
        sa.Column('actor', sa.String(64), index=True),
        sa.Column('operation', sa.String(32), index=True),
        sa.Column('from_status', sa.String(16)),
        sa.Column('to_status', sa.String(16)),
        sa.Column('outcome', sa.String(32), index=True),
        sa.Column('detail', sa.String(512)),
        sa.Column('created_at', sa.DateTime, index=True),
    )
    op.create_table(
        'reactions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('sanctuary_sessions.id'), index=True),
        sa.Column('participant_id', sa.String(64), index=True),
        sa.Column('emoji', sa.String(16), nullable=False),
        sa.Column('target_participant_id', sa.String(64)),
        sa.Column('created_at', sa.DateTime),
        sa.Column('expires_at', sa.DateTime, index=True),
    )
    op.create_table(
        'idempotency_records',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('operation_type', sa.String(64), nullable=False, index=True),
        sa.Column('idempotency_key', sa.String(128), nullable=False, index=True),
        sa.Column('request_hash', sa.String(64), nullable=False),
        sa.Column('result_data', sa.Text),
        sa.Column('status', sa.String(16), nullable=False, server_default='completed'),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('expires_at', sa.DateTime, nullable=False, index=True),
        sa.UniqueConstraint('operation_type', 'idempotency_key', name='ux_idempotency_op_key'),
    )


def downgrade():
    op.drop_table('idempotency_records')
    op.drop_table('reactions')
    op.drop_table('transition_audit')
    op.drop_table('alert_actions')
    op.drop_table('alerts')
    op.drop_table('participants')
    op.drop_table('breakout_rooms')
    op.drop_table('sanctuary_sessions')
