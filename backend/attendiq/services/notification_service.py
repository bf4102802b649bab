"""Fire-and-forget "reverify slot opened" notices."""
import json
from datetime import datetime
from enum import Enum
from typing import Dict, List

import redis
from flask import current_app

from attendiq.services.token_service import TokenService

class NotificationReason(Enum):
    INITIAL_SELECTION = 'INITIAL_SELECTION'
    MANUAL_RETRY = 'MANUAL_RETRY'
    LECTURER_TARGET = 'LECTURER_TARGET'

OUTBOX_EXTENSION = 'attendiq.outbox'

class NotificationService:
    """Enqueue notices for the external dispatcher.

    Events go onto a Redis list when ``REDIS_URL`` is configured. Test apps
    without Redis collect them in an in-process outbox; elsewhere they are
    logged and dropped. Delivery problems never fail the caller.
    """

    @staticmethod
    def outbox() -> List[Dict]:
        return current_app.extensions.setdefault(OUTBOX_EXTENSION, [])

    @staticmethod
    def _client():
        client = current_app.extensions.get('attendiq.redis')
        if client is None:
            client = redis.Redis.from_url(current_app.config['REDIS_URL'])
            current_app.extensions['attendiq.redis'] = client
        return client

    @staticmethod
    def build_reverify_event(
        student_id: int,
        session_id: int,
        sequence: int,
        slot_starts_at: datetime,
        slot_ends_at: datetime,
        attempt_count: int,
        retry_count: int,
        reason: NotificationReason
    ) -> Dict:
        return {
            'type': 'REVERIFY_SLOT_OPENED',
            'student_id': student_id,
            'session_id': session_id,
            'sequence': sequence,
            'sequence_id': TokenService.format_sequence_id(sequence),
            'slot_starts_at': slot_starts_at.isoformat(),
            'slot_ends_at': slot_ends_at.isoformat(),
            'attempt_count': attempt_count,
            'retry_count': retry_count,
            'reason': reason.value,
            'url': f'/student/attend?session={session_id}'
        }

    @staticmethod
    def enqueue(event: Dict) -> bool:
        if not current_app.config.get('REDIS_URL'):
            if current_app.testing:
                NotificationService.outbox().append(event)
                return True
            current_app.logger.warning(
                'REDIS_URL not set, dropping %s for student %s',
                event.get('type'), event.get('student_id')
            )
            return False

        try:
            NotificationService._client().rpush(
                current_app.config['NOTIFICATION_QUEUE_KEY'], json.dumps(event)
            )
            return True
        except redis.RedisError as e:
            current_app.logger.warning(
                'Failed to enqueue %s for student %s: %s',
                event.get('type'), event.get('student_id'), e
            )
            return False

    @staticmethod
    def notify_reverify_slots(assignments: List, reason: NotificationReason) -> int:
        """Enqueue one notice per ``SlotAssignment``; returns how many were queued."""
        queued = 0
        for assignment in assignments:
            event = NotificationService.build_reverify_event(
                student_id=assignment.student_id,
                session_id=assignment.session_id,
                sequence=assignment.slot.sequence,
                slot_starts_at=assignment.slot.starts_at,
                slot_ends_at=assignment.slot.ends_at,
                attempt_count=assignment.attempt_count,
                retry_count=assignment.retry_count,
                reason=reason
            )
            if NotificationService.enqueue(event):
                queued += 1
        return queued
