"""
Payment Audit Logging Service
Records every money movement in the database audit trail and in structured JSON logs
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime
from flask import has_request_context, request, session
from typing import Optional, Dict, Any
import requests
from sqlalchemy import event

FORWARD_QUEUE_KEY = 'audit_forward_queue'


class PaymentAuditLogger:
    """
    Financial audit trail with rotating JSON logs and optional webhook forwarding.

    Audit rows are added to the caller's database session and are committed
    together with the financial change they describe. A rolled back flow
    leaves no audit row behind; the JSON log still keeps the attempt.
    Forwarding waits for the commit, so no row lock is held during the HTTP call
    and rolled back events are never forwarded.
    """

    def __init__(self, app=None, db=None, AuditLog=None):
        self.app = app
        self.db = db
        self.AuditLog = AuditLog
        self.logger = None
        self.forward_url = None

        if app:
            self.init_app(app, db, AuditLog)

    def init_app(self, app, db, AuditLog):
        """Initialize audit logger with Flask app"""
        self.app = app
        self.db = db
        self.AuditLog = AuditLog

        self._setup_structured_logging()
        self.forward_url = app.config.get('AUDIT_WEBHOOK_URL') or None

        event.listen(db.session, 'after_commit', self._forward_committed)
        event.listen(db.session, 'after_soft_rollback', self._discard_pending)

        app.extensions['payment_audit'] = self

    def _setup_structured_logging(self):
        """Configure structured logging with JSON format and file rotation"""
        log_dir = self.app.config.get('LOG_DIR') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'logs'
        )
        os.makedirs(log_dir, exist_ok=True)

        self.logger = logging.getLogger('payments.audit')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        # init_app may run more than once per process (tests, reloader)
        if self.logger.handlers:
            return

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}'
        )

        # 50MB per file, keep 10 backups
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'payments.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(json_formatter)
        self.logger.addHandler(file_handler)

        critical_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'payments_critical.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        critical_handler.setLevel(logging.ERROR)
        critical_handler.setFormatter(json_formatter)
        self.logger.addHandler(critical_handler)

        if self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        """Extract context from current request, if any"""
        context = {
            'ip_address': None,
            'request_method': None,
            'request_path': None,
            'user_id': None
        }

        if has_request_context():
            ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
            if ip_address and ',' in ip_address:
                ip_address = ip_address.split(',')[0].strip()
            context['ip_address'] = ip_address
            context['request_method'] = request.method
            context['request_path'] = request.path
            context['user_id'] = session.get('user_id')

        return context

    def log_event(
        self,
        event_category: str,
        event_type: str,
        action: str,
        severity: str = 'medium',
        status: str = 'success',
        message: str = '',
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict] = None,
        user_id: Optional[int] = None
    ):
        """
        Log an audit event to the session and to structured logs

        Args:
            event_category: Category (financial, reconciliation, admin, system)
            event_type: Specific event type (topup_confirmed, escrow_released, ...)
            action: Human-readable action description
            severity: Event severity (low, medium, high, critical)
            status: Event status (success, failure, blocked)
            message: Additional message
            resource_type: Type of resource affected (transaction, project, order, ...)
            resource_id: ID of affected resource
            details: Additional context as dictionary
            user_id: Override user ID (webhooks have no session user)
        """
        context = self._get_request_context()
        if user_id:
            context['user_id'] = user_id

        audit_log = self.AuditLog(
            event_category=event_category,
            event_type=event_type,
            severity=severity,
            user_id=context['user_id'],
            ip_address=context['ip_address'],
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            status=status,
            message=message,
            details=json.dumps(details) if details else None,
            request_method=context['request_method'],
            request_path=context['request_path']
        )
        self.db.session.add(audit_log)

        log_data = {
            'event_category': event_category,
            'event_type': event_type,
            'severity': severity,
            'user_id': context['user_id'],
            'ip_address': context['ip_address'],
            'action': action,
            'resource_type': resource_type,
            'resource_id': resource_id,
            'status': status,
            'message': message,
            'details': details
        }

        log_level = {
            'low': logging.INFO,
            'medium': logging.WARNING,
            'high': logging.ERROR,
            'critical': logging.CRITICAL
        }.get(severity, logging.INFO)

        self.logger.log(log_level, json.dumps(log_data, default=str))

        if self.forward_url and severity in ('high', 'critical'):
            self.db.session.info.setdefault(FORWARD_QUEUE_KEY, []).append(log_data)

        return audit_log

    def _forward_committed(self, db_session):
        for log_data in db_session.info.pop(FORWARD_QUEUE_KEY, []):
            self._forward(log_data)

    def _discard_pending(self, db_session, previous_transaction):
        db_session.info.pop(FORWARD_QUEUE_KEY, None)

    def _forward(self, log_data: Dict[str, Any]):
        """Forward high-severity events to an external collector"""
        try:
            requests.post(
                self.forward_url,
                json={**log_data, 'forwarded_at': datetime.utcnow().isoformat()},
                timeout=5,
                headers={'Content-Type': 'application/json'}
            )
        except requests.exceptions.RequestException as e:
            self.app.logger.warning(f"Audit forwarding failed: {e}")

    # Convenience methods for common payment events

    def log_financial(self, event_type: str, action: str, amount: float, resource_type: str, resource_id, **kwargs):
        """Log a money movement"""
        details = {'amount': amount}
        details.update(kwargs.pop('details', None) or {})
        return self.log_event(
            event_category='financial',
            event_type=event_type,
            action=action,
            severity=kwargs.pop('severity', 'low'),
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            **kwargs
        )

    def log_admin_action(self, action: str, resource_type: str, resource_id, details: Dict = None, **kwargs):
        """Log admin moderation"""
        return self.log_event(
            event_category='admin',
            event_type='admin_operation',
            action=action,
            severity='high',
            status='success',
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            **kwargs
        )

    def log_reconciliation(self, event_type: str, action: str, gateway_transaction_id: str, severity: str = 'medium', **kwargs):
        """Log webhook reconciliation outcome"""
        return self.log_event(
            event_category='reconciliation',
            event_type=event_type,
            action=action,
            severity=severity,
            resource_type='transaction',
            resource_id=gateway_transaction_id,
            **kwargs
        )
