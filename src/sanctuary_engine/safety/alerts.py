"""Safety Alert Pipeline.

Signals (classifier verdicts, participant reports, crisis requests) become alerts that
moderators act on. Alert status only moves along the DAG in ``ALERT_TRANSITIONS``:
active -> {acknowledged, escalated, resolved}, acknowledged -> {escalated, resolved},
escalated -> resolved. Resolved is terminal and alerts are never deleted.

Every alert event goes out with safety priority, which subscriber buffers never drop.
A critical alert under auto-escalation is created directly as ``escalated`` so nobody
ever observes it ``active``.
"""
from __future__ import annotations
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Optional, Sequence
from prometheus_client import Counter
from sqlalchemy import select
from sanctuary_engine import store
from sanctuary_engine.clock import Clock, utcnow
from sanctuary_engine.errors import Conflict, PolicyViolation, Unavailable, ValidationError
from sanctuary_engine.infrastructure.circuit_breaker import CircuitBreaker
from sanctuary_engine.infrastructure.idempotency import IdempotentOperation, IdempotencyError
from sanctuary_engine.infrastructure.retry import RetryConfig, RetryExhaustedError, call_with_retry
from sanctuary_engine.models.states import (
    ALERT_TRANSITIONS, AlertStatus, Severity, parse_severity,
)
from sanctuary_engine.models.tables import Alert, AlertAction, SanctuarySession
from sanctuary_engine.realtime.fanout import SAFETY, publish_all
from sanctuary_engine.safety.classifier import ClassifierResult, ContentClassifier
from sanctuary_engine.safety.emergency import EmergencyNotifier
from sanctuary_engine.store import SYSTEM_ACTOR, SessionStore

logger = logging.getLogger(__name__)

ALERTS_CREATED = Counter('safety_alerts_created_total', 'Alerts raised', ['category', 'severity'])
ALERT_ACTIONS = Counter('safety_alert_actions_total', 'Moderator actions on alerts', ['action', 'result'])
ESCALATIONS = Counter('safety_escalations_total', 'Alert escalations', ['trigger'])
EMERGENCY_NOTIFICATIONS = Counter('safety_emergency_notifications_total', 'Emergency notifications', ['result'])
MONITORING_DEGRADED = Counter('safety_monitoring_degraded_total', 'Sessions put into degraded monitoring')
SIGNALS_IGNORED = Counter('safety_signals_ignored_total', 'Classifier signals not turned into alerts', ['reason'])

ACTIONS = ("acknowledge", "escalate", "resolve")
DEFAULT_REQUIRED_STEPS = ("ensure_safety", "private_channel", "contact_professional")
OPTIONAL_STEPS = ("document_incident",)
ACTION_REQUIRED_SEVERITIES = {Severity.HIGH.value, Severity.CRITICAL.value}


class AlertPipeline:
    def __init__(self, session_store: SessionStore, locks, broker, classifier: ContentClassifier,
                 notifier: EmergencyNotifier, *, clock: Clock = utcnow, auto_escalation: bool = True,
                 min_confidence: float = 0.0, required_steps: Sequence[str] = DEFAULT_REQUIRED_STEPS,
                 retry_config: Optional[RetryConfig] = None,
                 notifier_retry_config: Optional[RetryConfig] = None,
                 classifier_breaker: Optional[CircuitBreaker] = None,
                 notifier_breaker: Optional[CircuitBreaker] = None,
                 idempotency_ttl_hours: int = 24, sleep=time.sleep):
        self.store = session_store
        self.locks = locks
        self.broker = broker
        self.classifier = classifier
        self.notifier = notifier
        self.clock = clock
        self.auto_escalation = auto_escalation
        self.min_confidence = min_confidence
        self.required_steps = tuple(required_steps)
        self.retry_config = retry_config or RetryConfig()
        self.notifier_retry_config = notifier_retry_config or self.retry_config
        self.classifier_breaker = classifier_breaker or CircuitBreaker(classifier.name)
        self.notifier_breaker = notifier_breaker or CircuitBreaker(notifier.name)
        self.sleep = sleep
        self._emergency_op = IdempotentOperation("emergency_notification", ttl_hours=idempotency_ttl_hours,
                                                 session_factory=lambda: session_store.session_factory(),
                                                 retry_failed=True)

    # -- helpers -------------------------------------------------------------

    @property
    def known_steps(self) -> tuple[str, ...]:
        return self.required_steps + tuple(s for s in OPTIONAL_STEPS if s not in self.required_steps)

    def _log(self, s, alert: Alert, actor: str, action: str, from_status: str | None,
             to_status: str | None, note: str | None = None) -> None:
        seq = len(store.alert_actions(s, alert.id)) + 1
        s.add(AlertAction(alert_id=alert.id, seq=seq, actor=actor, action=action, from_status=from_status,
                          to_status=to_status, note=note, created_at=self.clock()))
        s.flush()

    def _session_of_alert(self, alert_id: str) -> str:
        with self.store.transaction() as s:
            return store.get_alert(s, alert_id).session_id

    # -- creation ------------------------------------------------------------

    def _create_alert(self, session_id: str, participant_id: str, severity: str, confidence: float,
                      triggers: list[str], category: str, source: str,
                      message: str | None = None) -> dict[str, Any]:
        try:
            level = parse_severity(severity)
        except ValueError:
            raise ValidationError(f"unknown severity {severity!r}")
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError("confidence must be within [0, 1]")
        escalate = level == Severity.CRITICAL and self.auto_escalation
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                store.get_session(s, session_id)
                now = self.clock()
                alert = Alert(
                    id=str(uuid.uuid4()), session_id=session_id, participant_id=participant_id,
                    category=category, severity=level.value, confidence=confidence, triggers=list(triggers),
                    status=AlertStatus.ACTIVE.value, action_required=level.value in ACTION_REQUIRED_SEVERITIES,
                    completed_steps=[], source=source, message=message, created_at=now, updated_at=now,
                )
                s.add(alert)
                s.flush()
                self._log(s, alert, SYSTEM_ACTOR, "created", None, AlertStatus.ACTIVE.value)
                if escalate:
                    # Same transaction: the alert is never visible as active.
                    alert.status = AlertStatus.ESCALATED.value
                    self._log(s, alert, SYSTEM_ACTOR, "auto_escalated", AlertStatus.ACTIVE.value,
                              AlertStatus.ESCALATED.value)
                view = store.alert_view(alert, store.alert_actions(s, alert.id))
            publish_all(self.broker, session_id, [("alert.created", {"alert": view}, SAFETY)])
        ALERTS_CREATED.labels(category=category, severity=level.value).inc()
        logger.info(f"Alert {view['id']} ({category}/{level.value}) raised in {session_id}")
        if escalate:
            ESCALATIONS.labels(trigger="auto").inc()
            if self._notify_emergency(view["id"], session_id, participant_id, level.value):
                view = self.get_alert(view["id"])
        return view

    def ingest_signal(self, session_id: str, participant_id: str, result: ClassifierResult,
                      category: str = "content", source: str = "classifier",
                      message: str | None = None) -> Optional[dict[str, Any]]:
        """Turn a classifier verdict into an alert. Returns ``None`` for unflagged signals and
        for automated signals in sessions created with moderation turned off."""
        if not result.is_flagged:
            SIGNALS_IGNORED.labels(reason="not_flagged").inc()
            return None
        if source == "classifier":
            with self.store.transaction() as s:
                moderated = store.get_session(s, session_id).moderation_enabled
            if not moderated:
                SIGNALS_IGNORED.labels(reason="moderation_disabled").inc()
                return None
        if result.confidence < self.min_confidence:
            SIGNALS_IGNORED.labels(reason="low_confidence").inc()
            logger.info(f"Ignoring flagged signal below confidence threshold in {session_id}: {result.confidence}")
            return None
        return self._create_alert(session_id, participant_id, result.severity, result.confidence,
                                  result.triggers, category, source, message)

    def report_content(self, session_id: str, reporter_id: str, subject_id: str,
                       content_sample: str) -> dict[str, Any]:
        """Classify reported content. Classifier failure is never treated as "safe": after
        the retry budget the session's monitoring is marked degraded and ``Unavailable``
        is raised."""
        if not (content_sample or "").strip():
            raise ValidationError("content sample must not be empty")
        with self.store.transaction() as s:
            sess = store.get_session(s, session_id)
            store.require_active_participant(s, session_id, reporter_id)
            if not sess.moderation_enabled:
                raise PolicyViolation("content moderation is disabled for this session", session_id=session_id)
            if store.get_participant(s, session_id, subject_id) is None:
                raise ValidationError(f"participant {subject_id} never joined session {session_id}")
        try:
            result = call_with_retry(
                lambda: self.classifier.classify(session_id, subject_id, content_sample),
                name=self.classifier.name, config=self.retry_config, breaker=self.classifier_breaker,
                sleep=self.sleep,
            )
        except RetryExhaustedError as e:
            self._set_monitoring(session_id, "degraded", str(e.last_error))
            raise Unavailable("content classifier unavailable; safety monitoring degraded",
                              session_id=session_id)
        self._set_monitoring(session_id, "ok")
        alert = self.ingest_signal(session_id, subject_id, result, category="report", source="report")
        return {
            "flagged": result.is_flagged,
            "severity": result.severity,
            "confidence": result.confidence,
            "alert": alert,
        }

    def raise_emergency(self, session_id: str, participant_id: str, emergency_type: str,
                        message: str | None = None, severity: str = "high") -> dict[str, Any]:
        """Participant-initiated crisis request."""
        if not (emergency_type or "").strip():
            raise ValidationError("emergency type must not be empty")
        with self.store.transaction() as s:
            store.get_session(s, session_id)
            store.require_active_participant(s, session_id, participant_id)
        return self._create_alert(session_id, participant_id, severity, 1.0, [emergency_type],
                                  "crisis", "participant", message)

    def _set_monitoring(self, session_id: str, status: str, detail: str | None = None) -> None:
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                if sess.monitoring_status == status:
                    return
                sess.monitoring_status = status
            event = "monitoring.degraded" if status == "degraded" else "monitoring.restored"
            publish_all(self.broker, session_id, [(event, {"session_id": session_id, "detail": detail}, SAFETY)])
        if status == "degraded":
            MONITORING_DEGRADED.inc()
            logger.error(f"Safety monitoring degraded for session {session_id}: {detail}")
        else:
            logger.info(f"Safety monitoring restored for session {session_id}")

    # -- emergency notification ----------------------------------------------

    def _notify_emergency(self, alert_id: str, session_id: str, participant_id: str, severity: str) -> bool:
        """At most one successful notification per alert, keyed by the alert id.

        Each attempt retries with backoff through the notifier breaker. An exhausted attempt
        leaves the key reclaimable, so a later escalation or ``resend_pending_notifications``
        tries again until the contact has been reached.
        """
        with self.store.transaction() as s:
            contact_enabled = store.get_session(s, session_id).emergency_contact_enabled
        if not contact_enabled:
            EMERGENCY_NOTIFICATIONS.labels(result="disabled").inc()
            logger.warning(f"Emergency contact disabled for session {session_id}; alert {alert_id} not notified")
            self._record_system_action(alert_id, session_id, "emergency_notification_skipped",
                                       "emergency contact disabled for this session")
            return False

        def send(alert_id: str) -> dict[str, Any]:
            call_with_retry(
                lambda: self.notifier.notify(session_id, participant_id, severity, alert_id),
                name=self.notifier.name, config=self.notifier_retry_config, breaker=self.notifier_breaker,
                sleep=self.sleep,
            )
            return {"alert_id": alert_id, "notified_at": self.clock().isoformat()}

        try:
            outcome = self._emergency_op.execute(alert_id, send, alert_id=alert_id)
        except RetryExhaustedError as e:
            EMERGENCY_NOTIFICATIONS.labels(result="failed").inc()
            logger.error(f"Emergency notification for alert {alert_id} failed: {e}")
            self._record_system_action(alert_id, session_id, "emergency_notification_failed",
                                       str(e.last_error)[:512])
            self._set_monitoring(session_id, "degraded",
                                 f"emergency notification for alert {alert_id} failed after {e.attempts} attempts")
            return False
        except IdempotencyError as e:
            EMERGENCY_NOTIFICATIONS.labels(result="suppressed").inc()
            logger.info(f"Emergency notification for alert {alert_id} not repeated: {e}")
            return False
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                alert = store.get_alert(s, alert_id)
                if alert.emergency_notified_at is not None:
                    return False
                alert.emergency_notified_at = datetime.fromisoformat(outcome["notified_at"])
                self._log(s, alert, SYSTEM_ACTOR, "emergency_notified", alert.status, alert.status)
                view = store.alert_view(alert)
            publish_all(self.broker, session_id, [("alert.updated", {"alert": view}, SAFETY)])
        EMERGENCY_NOTIFICATIONS.labels(result="sent").inc()
        with self.store.transaction() as s:
            still_pending = s.scalars(select(Alert.id).where(
                Alert.session_id == session_id, Alert.status == AlertStatus.ESCALATED.value,
                Alert.emergency_notified_at.is_(None))).first()
        if still_pending is None:
            self._set_monitoring(session_id, "ok")
        return True

    def resend_pending_notifications(self) -> list[str]:
        """Retry escalated alerts whose emergency contact was never reached."""
        with self.store.transaction() as s:
            pending = s.execute(
                select(Alert.id, Alert.session_id, Alert.participant_id, Alert.severity)
                .join(SanctuarySession, SanctuarySession.id == Alert.session_id)
                .where(Alert.status == AlertStatus.ESCALATED.value,
                       Alert.emergency_notified_at.is_(None),
                       SanctuarySession.emergency_contact_enabled.is_(True))
                .order_by(Alert.created_at, Alert.id)
            ).all()
        sent = []
        for alert_id, session_id, participant_id, severity in pending:
            if self._notify_emergency(alert_id, session_id, participant_id, severity):
                sent.append(alert_id)
        if pending:
            logger.info(f"Emergency resend: {len(sent)}/{len(pending)} pending alerts notified")
        return sent

    def _record_system_action(self, alert_id: str, session_id: str, action: str, note: str) -> None:
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                alert = store.get_alert(s, alert_id)
                self._log(s, alert, SYSTEM_ACTOR, action, alert.status, alert.status, note)
                view = store.alert_view(alert)
            publish_all(self.broker, session_id, [("alert.updated", {"alert": view, "action": action}, SAFETY)])

    # -- moderator actions ---------------------------------------------------

    def act(self, alert_id: str, actor: str, action: str, note: str | None = None) -> dict[str, Any]:
        """Apply ``acknowledge``, ``escalate`` or ``resolve``.

        Escalating raises severity one level and leaves the alert ``escalated``. An escalated
        alert keeps climbing on further escalations until it is critical; from there escalate
        changes nothing and only retries an emergency notification that never went out.
        """
        if action not in ACTIONS:
            raise ValidationError(f"unknown alert action {action!r}")
        session_id = self._session_of_alert(alert_id)
        changed = True
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                store.require_privileged(s, sess, actor)
                alert = store.get_alert(s, alert_id)
                current = alert.status
                target = {
                    "acknowledge": AlertStatus.ACKNOWLEDGED.value,
                    "escalate": AlertStatus.ESCALATED.value,
                    "resolve": AlertStatus.RESOLVED.value,
                }[action]
                reescalation = action == "escalate" and current == AlertStatus.ESCALATED.value
                if reescalation and alert.severity == Severity.CRITICAL.value:
                    changed = False
                elif not reescalation and target not in ALERT_TRANSITIONS[current]:
                    ALERT_ACTIONS.labels(action=action, result="conflict").inc()
                    raise Conflict(f"cannot {action} an alert that is {current}", alert_id=alert_id)
                if changed and action == "resolve" and alert.action_required:
                    missing = [st for st in self.required_steps if st not in (alert.completed_steps or [])]
                    if missing:
                        ALERT_ACTIONS.labels(action=action, result="policy").inc()
                        raise PolicyViolation(f"required steps not completed: {', '.join(missing)}",
                                              alert_id=alert_id, missing=missing)
                if changed:
                    now = self.clock()
                    if action == "escalate":
                        previous = alert.severity
                        alert.severity = Severity(previous).raised().value
                        alert.action_required = alert.action_required or alert.severity in ACTION_REQUIRED_SEVERITIES
                        note = note or f"severity {previous} -> {alert.severity}"
                    if action == "resolve":
                        alert.resolved_at = now
                    alert.status = target
                    alert.updated_at = now
                    self._log(s, alert, actor, action, current, target, note)
                view = store.alert_view(alert, store.alert_actions(s, alert_id))
            if changed:
                publish_all(self.broker, session_id, [("alert.updated", {"alert": view}, SAFETY)])
        ALERT_ACTIONS.labels(action=action, result="ok" if changed else "noop").inc()
        if action == "escalate":
            if changed:
                ESCALATIONS.labels(trigger="moderator").inc()
            if view["emergency_notified_at"] is None and self._notify_emergency(
                    alert_id, session_id, view["participant_id"], view["severity"]):
                view = self.get_alert(alert_id)
        return view

    def complete_step(self, alert_id: str, actor: str, step: str) -> dict[str, Any]:
        """Record a crisis-response checklist step."""
        if step not in self.known_steps:
            raise ValidationError(f"unknown step {step!r}; expected one of {', '.join(self.known_steps)}")
        session_id = self._session_of_alert(alert_id)
        with self.locks.hold(session_id):
            with self.store.transaction() as s:
                sess = store.get_session(s, session_id)
                store.require_privileged(s, sess, actor)
                alert = store.get_alert(s, alert_id)
                if alert.status == AlertStatus.RESOLVED.value:
                    raise Conflict("alert is already resolved", alert_id=alert_id)
                if step in (alert.completed_steps or []):
                    return store.alert_view(alert, store.alert_actions(s, alert_id))
                alert.completed_steps = list(alert.completed_steps or []) + [step]
                alert.updated_at = self.clock()
                self._log(s, alert, actor, f"step:{step}", alert.status, alert.status)
                view = store.alert_view(alert, store.alert_actions(s, alert_id))
            publish_all(self.broker, session_id, [("alert.updated", {"alert": view}, SAFETY)])
        return view

    # -- reads ---------------------------------------------------------------

    def get_alert(self, alert_id: str, actor: str | None = None) -> dict[str, Any]:
        with self.store.transaction() as s:
            alert = store.get_alert(s, alert_id)
            if actor is not None:
                store.require_privileged(s, store.get_session(s, alert.session_id), actor)
            return store.alert_view(alert, store.alert_actions(s, alert_id))

    def list_alerts(self, session_id: str, actor: str, include_resolved: bool = False) -> list[dict[str, Any]]:
        with self.store.transaction() as s:
            sess = store.get_session(s, session_id)
            store.require_privileged(s, sess, actor)
            if include_resolved:
                rows = s.query(Alert).filter(Alert.session_id == session_id).order_by(Alert.created_at, Alert.id).all()
            else:
                rows = store.open_alerts(s, session_id)
            return [store.alert_view(a) for a in rows]
