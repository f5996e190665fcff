#!/usr/bin/env python3
"""Tests for PhaJay webhook reconciliation: top-ups, project and order payouts"""
import hashlib
import hmac
import json

from sqlalchemy.exc import IntegrityError

import app as app_module
from app import (db, Transaction, Escrow, LedgerEntry, Notification, PaymentLog,
                 WebhookEvent, ReconciliationTask, AuditLog)


def post_webhook(client, payload, **kwargs):
    return client.post('/api/payment/webhook', json=payload, **kwargs)


def completed(gateway_id, amount, tag2=None, tag3=None, tag1=None):
    payload = {'transactionId': gateway_id, 'txnAmount': amount, 'status': 'PAYMENT_COMPLETED'}
    if tag1 is not None:
        payload['tag1'] = tag1
    if tag2 is not None:
        payload['tag2'] = tag2
    if tag3 is not None:
        payload['tag3'] = tag3
    return payload


def test_topup_adds_credits(client, make_profile, make_gateway_tx):
    """A completed top-up credits the wallet and confirms the transaction"""
    user = make_profile(credit=5.0)
    tx = make_gateway_tx('GW-TOPUP-1', user, 'topup', tag3='50', credits=50)

    response = post_webhook(client, completed('GW-TOPUP-1', 50000, 'topup', '50', str(user.id)))

    assert response.status_code == 200
    assert response.get_json()['ok'] is True
    assert user.credit == 55.0
    assert tx.status == 'confirmed'
    assert tx.confirmed_at is not None
    assert tx.amount_paid == 50000.0
    assert tx.credits == 50

    notification = Notification.query.filter_by(user_id=user.id, notification_type='topup_completed').one()
    assert '50 credits' in notification.message
    assert WebhookEvent.query.filter_by(gateway_transaction_id='GW-TOPUP-1').count() == 1
    assert AuditLog.query.filter_by(event_type='topup_confirmed').count() == 1
    assert PaymentLog.query.count() == 1


def test_duplicate_delivery_does_not_double_credit(client, make_profile, make_gateway_tx):
    user = make_profile()
    make_gateway_tx('GW-TOPUP-2', user, 'topup', tag3='100', credits=100)
    payload = completed('GW-TOPUP-2', 100000, 'topup', '100', str(user.id))

    first = post_webhook(client, payload)
    second = post_webhook(client, payload)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.get_json() == {'ok': True, 'duplicate': True}
    assert user.credit == 100.0
    assert Notification.query.filter_by(user_id=user.id).count() == 1
    # Both deliveries are still logged
    assert PaymentLog.query.count() == 2


def test_tags_fall_back_to_stored_values(client, make_profile, make_gateway_tx):
    user = make_profile()
    make_gateway_tx('GW-TOPUP-3', user, 'topup', tag3='20', credits=20)

    response = post_webhook(client, {'transactionId': 'GW-TOPUP-3', 'status': 'PAYMENT_COMPLETED'})

    assert response.status_code == 200
    assert user.credit == 20.0


def test_non_completed_status_only_updates_transaction(client, make_profile, make_gateway_tx):
    user = make_profile()
    tx = make_gateway_tx('GW-PENDING', user, 'topup', tag3='10', credits=10)

    response = post_webhook(client, {'transactionId': 'GW-PENDING', 'status': 'PENDING', 'txnAmount': '10000'})

    assert response.status_code == 200
    assert response.get_json() == {'ok': True}
    assert tx.status == 'PENDING'
    assert tx.amount_paid == 10000.0
    assert user.credit == 0.0


def test_missing_transaction_id(client):
    response = post_webhook(client, {'status': 'PAYMENT_COMPLETED'})

    assert response.status_code == 400
    assert response.get_json()['error'] is True


def test_unknown_transaction(client):
    response = post_webhook(client, completed('GW-NOPE', 1000, 'topup', '1'))

    assert response.status_code == 404
    assert response.get_json()['error'] is True
    assert PaymentLog.query.count() == 1


def test_invalid_json_body(client):
    response = client.post('/api/payment/webhook', data='not json', content_type='application/json')

    assert response.status_code == 400
    log = PaymentLog.query.one()
    assert log.raw_body == 'not json'
    assert log.payload is None


def test_unknown_flow_tag_is_acknowledged(client, make_profile, make_gateway_tx):
    user = make_profile()
    tx = make_gateway_tx('GW-SUB', user, 'subscription', amount=99000)

    response = post_webhook(client, completed('GW-SUB', 99000))

    assert response.status_code == 200
    assert response.get_json() == {'ok': True}
    assert tx.status == 'PAYMENT_COMPLETED'
    assert tx.confirmed_at is None


def test_project_payout(client, make_gateway_tx, awaiting_project):
    client_profile, freelancer, project = awaiting_project
    make_gateway_tx('GW-PROJ-1', client_profile, 'project_payout', tag3=str(project.id), amount=1000.0)

    response = post_webhook(client, completed('GW-PROJ-1', 1000, 'project_payout', str(project.id)))

    assert response.status_code == 200
    assert project.status == 'completed'
    assert project.paid_amount == 1000.0
    assert project.completed_at is not None

    escrow = Escrow.query.filter_by(project_id=project.id).one()
    assert escrow.status == 'released'
    assert escrow.freelancer_id == freelancer.id
    assert escrow.released_at is not None

    assert freelancer.total_earned == 1000.0
    assert freelancer.projects_completed == 1
    assert client_profile.total_spent == 1000.0
    assert client_profile.projects_completed == 1

    ledger = {e.type: e for e in LedgerEntry.query.filter_by(project_id=project.id).all()}
    assert ledger['escrow_release'].user_id == freelancer.id
    assert ledger['escrow_release'].direction == 'in'
    assert ledger['escrow_payment'].user_id == client_profile.id
    assert ledger['escrow_payment'].direction == 'out'

    payout = Transaction.query.filter_by(type='payout_received').one()
    assert payout.user_id == freelancer.id
    assert payout.transaction_id == 'GW-PROJ-1'
    assert payout.gateway_reference is None
    assert payout.status == 'confirmed'
    assert payout.description == 'Received payout for project Landing page'
    assert (payout.tag1, payout.tag2, payout.tag3) == (str(freelancer.id), 'payout_received', str(project.id))

    original = Transaction.query.filter_by(gateway_reference='GW-PROJ-1').one()
    assert original.status == 'confirmed'

    assert Notification.query.filter_by(user_id=freelancer.id, notification_type='payout_received').count() == 1
    assert Notification.query.filter_by(user_id=client_profile.id, notification_type='payment_completed').count() == 1


def test_project_payout_redelivery_pays_once(client, make_gateway_tx, awaiting_project):
    client_profile, freelancer, project = awaiting_project
    make_gateway_tx('GW-PROJ-2', client_profile, 'project_payout', tag3=str(project.id), amount=1000.0)
    payload = completed('GW-PROJ-2', 1000, 'project_payout', str(project.id))

    post_webhook(client, payload)
    response = post_webhook(client, payload)

    assert response.get_json()['duplicate'] is True
    assert freelancer.total_earned == 1000.0
    assert Transaction.query.filter_by(type='payout_received').count() == 1
    assert LedgerEntry.query.count() == 2


def test_project_payout_missing_project_id(client, make_profile, make_gateway_tx):
    user = make_profile()
    tx = make_gateway_tx('GW-PROJ-3', user, 'project_payout', tag3=None)

    response = post_webhook(client, completed('GW-PROJ-3', 1000))

    assert response.status_code == 400
    assert response.get_json()['error'] is True
    assert tx.status == 'failed'
    assert tx.error_reason == 'missing_projectId'


def test_project_payout_unknown_project(client, make_profile, make_gateway_tx):
    user = make_profile()
    tx = make_gateway_tx('GW-PROJ-4', user, 'project_payout', tag3='999')

    response = post_webhook(client, completed('GW-PROJ-4', 1000))

    assert response.status_code == 404
    assert tx.status == 'failed'
    assert tx.error_reason == 'project_not_found'
    assert LedgerEntry.query.count() == 0


def test_order_payout(client, make_gateway_tx, awaiting_order):
    buyer, seller, order = awaiting_order
    make_gateway_tx('GW-ORDER-1', buyer, 'order_payout', tag3=str(order.id), amount=300.0)

    response = post_webhook(client, completed('GW-ORDER-1', '300', 'order_payout', str(order.id)))

    assert response.status_code == 200
    assert order.status == 'completed'
    assert order.paid_amount == 300.0
    assert seller.total_earned == 300.0
    assert seller.orders_completed == 1
    assert buyer.total_spent == 300.0
    assert buyer.orders_completed == 1

    payout = Transaction.query.filter_by(type='order_payout_received').one()
    assert payout.user_id == seller.id
    assert payout.order_id == order.id
    assert payout.description == 'Received payout for order Social media kit'
    assert LedgerEntry.query.filter_by(order_id=order.id).count() == 2


def test_order_payout_unknown_order(client, make_profile, make_gateway_tx):
    user = make_profile()
    tx = make_gateway_tx('GW-ORDER-2', user, 'order_payout', tag3='4242')

    response = post_webhook(client, completed('GW-ORDER-2', 300))

    assert response.status_code == 404
    assert tx.error_reason == 'order_not_found'


def test_order_payout_missing_order_id(client, make_profile, make_gateway_tx):
    user = make_profile()
    tx = make_gateway_tx('GW-ORDER-3', user, 'order_payout')

    response = post_webhook(client, completed('GW-ORDER-3', 300))

    assert response.status_code == 400
    assert tx.error_reason == 'missing_orderId'


def test_signature_required_when_secret_configured(client, monkeypatch, make_profile, make_gateway_tx):
    monkeypatch.setenv('PHAJAY_WEBHOOK_SECRET', 'hook-secret')
    user = make_profile()
    make_gateway_tx('GW-SIGNED', user, 'topup', tag3='5', credits=5)
    body = json.dumps(completed('GW-SIGNED', 5000)).encode('utf-8')

    unsigned = client.post('/api/payment/webhook', data=body, content_type='application/json')
    assert unsigned.status_code == 401
    assert PaymentLog.query.one().signature_valid is False
    assert user.credit == 0.0

    signature = hmac.new(b'hook-secret', body, hashlib.sha256).hexdigest()
    signed = client.post('/api/payment/webhook', data=body, content_type='application/json',
                         headers={'X-PhaJay-Signature': signature})
    assert signed.status_code == 200
    assert user.credit == 5.0


def test_unexpected_error_rolls_back_and_queues(client, monkeypatch, make_profile, make_gateway_tx):
    user = make_profile()
    tx = make_gateway_tx('GW-BOOM', user, 'topup', tag3='30', credits=30)

    def boom(tx, credits):
        raise RuntimeError('database went away')

    monkeypatch.setattr(app_module.reconciler, '_apply_topup', boom)

    response = post_webhook(client, completed('GW-BOOM', 30000))

    assert response.status_code == 202
    body = response.get_json()
    assert body['ok'] is True
    assert body['queued'] is True

    # Pre-completion update was rolled back with the rest of the flow
    assert tx.status == 'pending'
    assert tx.amount_paid is None
    assert user.credit == 0.0

    task = ReconciliationTask.query.one()
    assert task.gateway_transaction_id == 'GW-BOOM'
    assert task.status == 'pending'
    assert task.attempts == 0
    assert 'database went away' in task.last_error
    assert json.loads(task.payload)['transactionId'] == 'GW-BOOM'


def test_payout_for_completed_project_is_rejected(client, make_gateway_tx, awaiting_project):
    client_profile, freelancer, project = awaiting_project
    project.status = 'completed'
    db.session.commit()
    tx = make_gateway_tx('GW-PROJ-5', client_profile, 'project_payout', tag3=str(project.id))

    response = post_webhook(client, completed('GW-PROJ-5', 1000))

    assert response.status_code == 409
    assert tx.error_reason == 'project_already_paid'
    assert freelancer.total_earned == 0.0


def test_topup_for_missing_profile_is_rejected(client, make_profile, make_gateway_tx):
    user = make_profile()
    tx = make_gateway_tx('GW-NOBODY', user, 'topup', tag3='15', credits=15)

    response = post_webhook(client, completed('GW-NOBODY', 15000, 'topup', '15', '9999'))

    assert response.status_code == 404
    assert response.get_json() == {'error': True, 'reason': 'profile_not_found'}
    assert tx.status == 'failed'
    assert tx.error_reason == 'profile_not_found'
    assert user.credit == 0.0
    assert WebhookEvent.query.count() == 0


def test_project_payout_without_freelancer_is_rejected(client, make_gateway_tx, awaiting_project):
    client_profile, freelancer, project = awaiting_project
    project.accepted_freelancer_id = None
    db.session.commit()
    tx = make_gateway_tx('GW-PROJ-6', client_profile, 'project_payout', tag3=str(project.id))

    response = post_webhook(client, completed('GW-PROJ-6', 1000))

    assert response.status_code == 409
    assert response.get_json()['reason'] == 'missing_freelancer'
    assert tx.status == 'failed'
    assert tx.error_reason == 'missing_freelancer'
    assert project.status == 'payout_project'
    assert Escrow.query.filter_by(project_id=project.id).one().status == 'held'
    assert client_profile.total_spent == 0.0
    assert LedgerEntry.query.count() == 0
    assert WebhookEvent.query.count() == 0


def test_payout_for_completed_order_is_rejected(client, make_gateway_tx, awaiting_order):
    buyer, seller, order = awaiting_order
    order.status = 'completed'
    db.session.commit()
    tx = make_gateway_tx('GW-ORDER-4', buyer, 'order_payout', tag3=str(order.id), amount=300.0)

    response = post_webhook(client, completed('GW-ORDER-4', 300))

    assert response.status_code == 409
    assert response.get_json()['reason'] == 'order_already_paid'
    assert tx.status == 'failed'
    assert tx.error_reason == 'order_already_paid'
    assert seller.total_earned == 0.0
    assert Transaction.query.filter_by(type='order_payout_received').count() == 0
    assert WebhookEvent.query.count() == 0


def test_concurrent_duplicate_is_acknowledged(client, monkeypatch, make_profile, make_gateway_tx):
    """Another delivery committed the same marker between our check and our commit"""
    user = make_profile()
    tx = make_gateway_tx('GW-RACE', user, 'topup', tag3='25', credits=25)
    db.session.add(WebhookEvent(gateway_transaction_id='GW-RACE', status='PAYMENT_COMPLETED',
                                flow='topup', outcome='confirmed'))
    db.session.commit()
    monkeypatch.setattr(app_module.reconciler, '_already_processed', lambda tx, status: False)

    response = post_webhook(client, completed('GW-RACE', 25000))

    assert response.status_code == 200
    assert response.get_json() == {'ok': True, 'duplicate': True}
    # Our half of the race was rolled back
    assert user.credit == 0.0
    assert tx.status == 'pending'
    assert WebhookEvent.query.count() == 1
    assert ReconciliationTask.query.count() == 0


def test_integrity_error_without_marker_is_queued(client, monkeypatch, make_profile, make_gateway_tx):
    user = make_profile()
    tx = make_gateway_tx('GW-FK', user, 'topup', tag3='25', credits=25)

    def broken(data):
        raise IntegrityError('INSERT INTO transactions_internal', {}, Exception('FOREIGN KEY constraint failed'))

    monkeypatch.setattr(app_module.reconciler, 'reconcile', broken)

    response = post_webhook(client, completed('GW-FK', 25000))

    assert response.status_code == 202
    body = response.get_json()
    assert body['queued'] is True
    assert tx.status == 'pending'
    assert user.credit == 0.0
    assert WebhookEvent.query.count() == 0
    task = ReconciliationTask.query.one()
    assert task.id == body['task_id']
    assert 'FOREIGN KEY' in task.last_error
