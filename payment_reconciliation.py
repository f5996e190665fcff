"""
UniJobs Payment Reconciliation Service
Applies PhaJay webhook deliveries to wallets, escrows, projects and orders

Each delivery runs one money-movement flow selected by the transaction's tag2:

- topup: add purchased credits to the payer's wallet
- project_payout: release the project escrow and pay the accepted freelancer
- order_payout: release the order escrow and pay the seller

Every flow is applied inside a single database transaction together with an
idempotency marker keyed by (gateway transaction ID, gateway status), so a
re-delivered webhook is acknowledged without moving money twice. Deliveries
that fail unexpectedly are rolled back and parked in the reconciliation queue,
which scheduled_jobs replays with exponential backoff.
"""

import json
import logging
from datetime import datetime, timedelta
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)

PAYMENT_COMPLETED = 'PAYMENT_COMPLETED'

FLOW_TOPUP = 'topup'
FLOW_PROJECT_PAYOUT = 'project_payout'
FLOW_ORDER_PAYOUT = 'order_payout'


class ReconciliationError(Exception):
    """A delivery that cannot be applied as-is; marks the transaction failed"""

    def __init__(self, error_reason, message=None, status_code=400):
        super().__init__(message or error_reason)
        self.error_reason = error_reason
        self.status_code = status_code


class TransactionNotFound(ReconciliationError):
    def __init__(self, gateway_transaction_id):
        super().__init__('transaction_not_found',
                         f"Transaction not found: {gateway_transaction_id}",
                         status_code=404)


def parse_amount(value, error_reason='invalid_amount'):
    """Coerce gateway amounts ("50000", 50000, 50000.0) to a rounded float"""
    try:
        amount = round(float(value), 2)
    except (TypeError, ValueError):
        raise ReconciliationError(error_reason, f"Invalid amount: {value!r}")
    if amount != amount or amount < 0:
        raise ReconciliationError(error_reason, f"Invalid amount: {value!r}")
    return amount


def parse_id(value):
    """Tags arrive as strings; profile, project and order IDs are integers"""
    if value is None or value == '':
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class PaymentReconciler:
    """
    Applies webhook payloads to the database.

    reconcile() does the work inside the current session and raises on any
    problem; handle_webhook() and retry_task() own the commit/rollback.
    """

    def __init__(self, db, Profile, Project, Order, Escrow, Transaction, LedgerEntry,
                 WebhookEvent, ReconciliationTask, notifications, audit,
                 base_delay=30, max_delay=3600, max_attempts=6):
        """
        Args:
            db: SQLAlchemy database instance
            Profile, Project, Order, Escrow, Transaction, LedgerEntry,
            WebhookEvent, ReconciliationTask: model classes
            notifications: NotificationService instance
            audit: PaymentAuditLogger instance
            base_delay: First retry delay in seconds
            max_delay: Upper bound for a single retry delay in seconds
            max_attempts: Failed retries before a task is marked dead
        """
        self.db = db
        self.Profile = Profile
        self.Project = Project
        self.Order = Order
        self.Escrow = Escrow
        self.Transaction = Transaction
        self.LedgerEntry = LedgerEntry
        self.WebhookEvent = WebhookEvent
        self.ReconciliationTask = ReconciliationTask
        self.notifications = notifications
        self.audit = audit
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_webhook(self, data):
        """
        Process one webhook delivery.

        Returns:
            tuple: (response body dict, HTTP status code)
        """
        gateway_transaction_id = data.get('transactionId')
        if not gateway_transaction_id:
            logger.error("Webhook missing transactionId")
            return {'error': True, 'reason': 'missing_transactionId'}, 400

        try:
            result = self.reconcile(data)
            self.db.session.commit()
            return result, 200
        except IntegrityError as e:
            self.db.session.rollback()
            if self._event_recorded(gateway_transaction_id, data.get('status')):
                # A concurrent delivery committed the same idempotency key first
                logger.info(f"Concurrent duplicate webhook for {gateway_transaction_id}")
                return {'ok': True, 'duplicate': True}, 200
            logger.error(f"Webhook integrity error for {gateway_transaction_id}: {e}")
            task = self.enqueue(gateway_transaction_id, data, str(e))
            return {'ok': True, 'queued': True, 'task_id': task.id}, 202
        except ReconciliationError as e:
            self.db.session.rollback()
            self.mark_failed(gateway_transaction_id, e, data)
            return {'error': True, 'reason': e.error_reason}, e.status_code
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Webhook processing failed for {gateway_transaction_id}: {e}", exc_info=True)
            task = self.enqueue(gateway_transaction_id, data, str(e))
            return {'ok': True, 'queued': True, 'task_id': task.id}, 202

    def retry_task(self, task):
        """
        Replay a queued delivery.

        Returns:
            str: resulting task status (done, pending, dead)
        """
        task_id = task.id
        gateway_transaction_id = task.gateway_transaction_id
        payload = json.loads(task.payload)

        try:
            result = self.reconcile(payload)
            task.status = 'done'
            task.attempts += 1
            task.last_error = None
            task.completed_at = datetime.utcnow()
            self.db.session.commit()
            logger.info(f"Reconciliation task {task_id} completed: {result}")
            return task.status
        except IntegrityError as e:
            self.db.session.rollback()
            if self._event_recorded(gateway_transaction_id, payload.get('status')):
                task = self.db.session.get(self.ReconciliationTask, task_id)
                task.status = 'done'
                task.attempts += 1
                task.completed_at = datetime.utcnow()
                self.db.session.commit()
                return task.status
            return self._schedule_retry(task_id, gateway_transaction_id, e)
        except ReconciliationError as e:
            self.db.session.rollback()
            self.mark_failed(gateway_transaction_id, e, payload)
            task = self.db.session.get(self.ReconciliationTask, task_id)
            task.status = 'dead'
            task.attempts += 1
            task.last_error = e.error_reason
            self.audit.log_reconciliation(
                'reconciliation_dead',
                f"Queued delivery rejected: {e.error_reason}",
                gateway_transaction_id,
                severity='critical',
                status='failure'
            )
            self.db.session.commit()
            return task.status
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Reconciliation task {task_id} failed: {e}", exc_info=True)
            return self._schedule_retry(task_id, gateway_transaction_id, e)

    def _schedule_retry(self, task_id, gateway_transaction_id, error):
        task = self.db.session.get(self.ReconciliationTask, task_id)
        task.attempts += 1
        task.last_error = str(error)
        if task.attempts >= self.max_attempts:
            task.status = 'dead'
            self.audit.log_reconciliation(
                'reconciliation_dead',
                f"Gave up after {task.attempts} attempts",
                gateway_transaction_id,
                severity='critical',
                status='failure',
                message=str(error)
            )
        else:
            task.status = 'pending'
            task.next_attempt_at = datetime.utcnow() + timedelta(seconds=self.backoff_delay(task.attempts))
        self.db.session.commit()
        return task.status

    def _event_recorded(self, gateway_transaction_id, status):
        return self.WebhookEvent.query.filter_by(
            gateway_transaction_id=gateway_transaction_id,
            status=status
        ).first() is not None

    def backoff_delay(self, attempts):
        """Seconds to wait before the next attempt after `attempts` tries"""
        return min(self.base_delay * (2 ** attempts), self.max_delay)

    def enqueue(self, gateway_transaction_id, data, error):
        """Park a delivery for retry; one pending task per gateway transaction"""
        task = self.ReconciliationTask.query.filter_by(
            gateway_transaction_id=gateway_transaction_id,
            status='pending'
        ).first()

        if task:
            task.payload = json.dumps(data)
            task.last_error = error
        else:
            task = self.ReconciliationTask(
                gateway_transaction_id=gateway_transaction_id,
                payload=json.dumps(data),
                status='pending',
                attempts=0,
                next_attempt_at=datetime.utcnow() + timedelta(seconds=self.base_delay),
                last_error=error
            )
            self.db.session.add(task)

        self.audit.log_reconciliation(
            'reconciliation_queued',
            'Webhook delivery queued for retry',
            gateway_transaction_id,
            severity='high',
            status='failure',
            message=error
        )
        self.db.session.commit()
        return task

    def mark_failed(self, gateway_transaction_id, error, data=None):
        """Record a rejected delivery on the transaction it targets"""
        logger.error(f"Webhook for {gateway_transaction_id} rejected: {error.error_reason}")

        tx = self.Transaction.query.filter_by(gateway_reference=gateway_transaction_id).first()
        if tx and tx.status != 'confirmed':
            tx.status = 'failed'
            tx.error_reason = error.error_reason
            if data and data.get('txnAmount') is not None:
                try:
                    tx.amount_paid = parse_amount(data.get('txnAmount'))
                except ReconciliationError:
                    pass
            tx.updated_at = datetime.utcnow()

        self.audit.log_reconciliation(
            'webhook_rejected',
            f"Webhook rejected: {error.error_reason}",
            gateway_transaction_id,
            severity='high',
            status='failure',
            message=str(error),
            user_id=tx.user_id if tx else None
        )
        self.db.session.commit()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, data):
        """
        Apply a webhook payload to the current session (no commit).

        Returns:
            dict: response body
        Raises:
            ReconciliationError: the delivery cannot be applied
        """
        gateway_transaction_id = data.get('transactionId')
        status = data.get('status')

        tx = self.Transaction.query.filter_by(
            gateway_reference=gateway_transaction_id
        ).with_for_update().first()
        if not tx:
            raise TransactionNotFound(gateway_transaction_id)

        if self._already_processed(tx, status):
            logger.info(f"Transaction {gateway_transaction_id} already processed, skipping duplicate webhook")
            return {'ok': True, 'duplicate': True}

        tag1 = data.get('tag1') if data.get('tag1') is not None else tx.tag1
        tag2 = data.get('tag2') if data.get('tag2') is not None else tx.tag2
        tag3 = data.get('tag3') if data.get('tag3') is not None else tx.tag3

        credits = 0
        if tag2 == FLOW_TOPUP:
            credits = self._topup_credits(tag3, tx)

        # Pre-completion update runs for every status
        tx.status = status or tx.status or 'unknown'
        tx.amount_paid = parse_amount(data['txnAmount']) if data.get('txnAmount') is not None else tx.amount
        tx.user_id = parse_id(tag1) or tx.user_id
        tx.credits = credits
        tx.type = tag2 or tx.type
        tx.tag1 = tag1
        tx.tag2 = tag2
        tx.tag3 = tag3
        tx.updated_at = datetime.utcnow()

        if status != PAYMENT_COMPLETED:
            return {'ok': True}

        if tag2 == FLOW_TOPUP:
            self._apply_topup(tx, credits)
        elif tag2 == FLOW_PROJECT_PAYOUT:
            self._apply_project_payout(tx, tag3)
        elif tag2 == FLOW_ORDER_PAYOUT:
            self._apply_order_payout(tx, tag3)
        else:
            logger.warning(f"Completed payment {gateway_transaction_id} has unknown flow tag {tag2!r}")
            return {'ok': True}

        self.db.session.add(self.WebhookEvent(
            gateway_transaction_id=gateway_transaction_id,
            status=status,
            flow=tag2,
            outcome=tx.status
        ))
        return {'ok': True, 'flow': tag2, 'status': tx.status}

    def _already_processed(self, tx, status):
        if tx.status == 'confirmed':
            return True
        return self._event_recorded(tx.gateway_reference, status)

    def _topup_credits(self, tag3, tx):
        raw = tag3 if tag3 is not None else tx.credits
        if raw is None:
            return 0
        try:
            return int(float(raw))
        except (TypeError, ValueError):
            raise ReconciliationError('invalid_credits', f"Invalid credit count: {raw!r}")

    def _lock_profile(self, profile_id):
        if not profile_id:
            return None
        return self.Profile.query.filter_by(id=profile_id).with_for_update().first()

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def _apply_topup(self, tx, credits):
        if credits <= 0:
            raise ReconciliationError('invalid_credits', 'Top-up without credits')

        profile = self._lock_profile(tx.user_id)
        if not profile:
            raise ReconciliationError('profile_not_found', f"Profile {tx.user_id} not found", status_code=404)

        previous_credit = profile.credit or 0
        profile.credit = previous_credit + credits
        profile.updated_at = datetime.utcnow()

        tx.previous_balance = previous_credit
        tx.new_balance = profile.credit
        tx.status = 'confirmed'
        tx.confirmed_at = datetime.utcnow()

        self.notifications.topup_completed(profile.id, credits, tx.amount_paid)
        self.audit.log_financial(
            'topup_confirmed',
            f"Top-up of {credits} credits confirmed",
            tx.amount_paid,
            'transaction',
            tx.gateway_reference,
            user_id=profile.id,
            details={'credits': credits, 'previous_credit': previous_credit, 'new_credit': profile.credit}
        )
        logger.info(f"Top-up {tx.gateway_reference}: +{credits} credits for profile {profile.id}")

    def _apply_project_payout(self, tx, tag3):
        project_id = parse_id(tag3)
        if not project_id:
            raise ReconciliationError('missing_projectId', 'Missing projectId (tag3)')

        project = self.Project.query.filter_by(id=project_id).with_for_update().first()
        if not project:
            raise ReconciliationError('project_not_found', f"Project {project_id} not found", status_code=404)
        if project.status == 'completed':
            raise ReconciliationError('project_already_paid', f"Project {project_id} is already completed",
                                      status_code=409)
        if not project.accepted_freelancer_id:
            raise ReconciliationError('missing_freelancer', f"Project {project_id} has no accepted freelancer",
                                      status_code=409)

        amount = tx.amount_paid
        freelancer_id = project.accepted_freelancer_id
        client_id = project.client_id

        self._complete_payout(
            tx,
            amount=amount,
            freelancer_id=freelancer_id,
            client_id=client_id,
            counter='projects_completed',
            escrow_filter={'project_id': project.id},
            ledger_refs={'project_id': project.id},
            payout_type='payout_received',
            description=f"Received payout for project {project.title}"
        )

        project.status = 'completed'
        project.paid_amount = amount
        project.completed_at = datetime.utcnow()
        project.updated_at = datetime.utcnow()

        self.notifications.payout_received(freelancer_id, amount, project.title,
                                           project_id=project.id, client_id=client_id)
        self.notifications.payment_completed(client_id, amount, project.title,
                                             project_id=project.id, freelancer_id=freelancer_id)

    def _apply_order_payout(self, tx, tag3):
        order_id = parse_id(tag3)
        if not order_id:
            raise ReconciliationError('missing_orderId', 'Missing orderId (tag3)')

        order = self.Order.query.filter_by(id=order_id).with_for_update().first()
        if not order:
            raise ReconciliationError('order_not_found', f"Order {order_id} not found", status_code=404)
        if order.status == 'completed':
            raise ReconciliationError('order_already_paid', f"Order {order_id} is already completed",
                                      status_code=409)

        amount = tx.amount_paid
        freelancer_id = order.seller_id
        client_id = order.buyer_id
        title = order.catalog_title or order.package_name

        self._complete_payout(
            tx,
            amount=amount,
            freelancer_id=freelancer_id,
            client_id=client_id,
            counter='orders_completed',
            escrow_filter={'order_id': order.id},
            ledger_refs={'order_id': order.id},
            payout_type='order_payout_received',
            description=f"Received payout for order {title}"
        )

        order.status = 'completed'
        order.paid_amount = amount
        order.completed_at = datetime.utcnow()
        order.updated_at = datetime.utcnow()

        self.notifications.payout_received(freelancer_id, amount, title,
                                           order_id=order.id, client_id=client_id)
        self.notifications.payment_completed(client_id, amount, title,
                                             order_id=order.id, freelancer_id=freelancer_id)

    def _complete_payout(self, tx, amount, freelancer_id, client_id, counter,
                         escrow_filter, ledger_refs, payout_type, description):
        """Escrow release, earnings, ledger and payout record shared by both payout flows"""
        now = datetime.utcnow()

        escrow = self.Escrow.query.filter_by(status='held', **escrow_filter).with_for_update().first()
        if escrow:
            escrow.status = 'released'
            escrow.freelancer_id = freelancer_id
            escrow.released_at = now
        else:
            logger.warning(f"No held escrow for {escrow_filter}")

        freelancer = self._lock_profile(freelancer_id)
        if freelancer:
            freelancer.total_earned = (freelancer.total_earned or 0) + amount
            setattr(freelancer, counter, (getattr(freelancer, counter) or 0) + 1)
            freelancer.updated_at = now

        client = self._lock_profile(client_id)
        if client:
            client.total_spent = (client.total_spent or 0) + amount
            setattr(client, counter, (getattr(client, counter) or 0) + 1)
            client.updated_at = now

        self.db.session.add(self.LedgerEntry(
            user_id=freelancer_id, type='escrow_release', amount=amount, direction='in', **ledger_refs
        ))
        self.db.session.add(self.LedgerEntry(
            user_id=client_id, type='escrow_payment', amount=amount, direction='out', **ledger_refs
        ))

        target_id = ledger_refs.get('project_id') or ledger_refs.get('order_id')
        self.db.session.add(self.Transaction(
            transaction_id=tx.gateway_reference,
            user_id=freelancer_id,
            type=payout_type,
            direction='in',
            payment_method='escrow_release',
            amount=amount,
            amount_paid=amount,
            status='confirmed',
            description=description,
            tag1=str(freelancer_id),
            tag2=payout_type,
            tag3=str(target_id),
            confirmed_at=now,
            **ledger_refs
        ))

        tx.status = 'confirmed'
        tx.confirmed_at = now

        self.audit.log_financial(
            'escrow_released',
            description,
            amount,
            'transaction',
            tx.gateway_reference,
            user_id=freelancer_id,
            details={
                'client_id': client_id,
                'escrow_id': escrow.id if escrow else None,
                **ledger_refs
            }
        )
