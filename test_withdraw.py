#!/usr/bin/env python3
"""Tests for withdrawal requests and admin transaction moderation"""
from app import db, Transaction, Notification, AuditLog


def request_withdraw(client, amount, source, **extra):
    payload = {'accountName': 'Somchai P.', 'accountNumber': '0101-2233-4455', 'amount': amount, 'source': source}
    payload.update(extra)
    return client.post('/api/requestWithdraw', json=payload)


def test_withdraw_from_credit(client, login, make_profile):
    user = login(make_profile(credit=500.0, total_earned=200.0))

    response = request_withdraw(client, 100, 'credit')

    assert response.status_code == 200
    assert user.credit == 400.0
    assert user.total_earned == 200.0

    tx = Transaction.query.filter_by(type='withdraw_request').one()
    assert tx.status == 'pending'
    assert tx.direction == 'out'
    assert tx.payment_method == 'manual_bank_transfer'
    assert tx.currency == 'LAK'
    assert tx.description == 'Withdraw 100 LAK from credit'
    assert tx.transaction_id.startswith('TXN-')
    assert (tx.previous_credit, tx.new_credit) == (500.0, 400.0)
    assert (tx.previous_total, tx.new_total) == (200.0, 200.0)


def test_withdraw_from_total_earned(client, login, make_profile):
    user = login(make_profile(credit=10.0, total_earned=300.0))

    response = request_withdraw(client, 250, 'totalEarned')

    assert response.status_code == 200
    assert user.credit == 10.0
    assert user.total_earned == 50.0


def test_withdraw_all_takes_credit_first(client, login, make_profile):
    user = login(make_profile(credit=30.0, total_earned=100.0))

    response = request_withdraw(client, 80, 'all')

    assert response.status_code == 200
    assert user.credit == 0.0
    assert user.total_earned == 50.0


def test_withdraw_insufficient_funds(client, login, make_profile):
    user = login(make_profile(credit=30.0, total_earned=40.0))

    assert request_withdraw(client, 31, 'credit').get_json()['error'] == 'Insufficient credit'
    assert request_withdraw(client, 41, 'totalEarned').get_json()['error'] == 'Insufficient total earnings'
    assert request_withdraw(client, 71, 'all').get_json()['error'] == 'Insufficient balance'
    assert user.credit == 30.0
    assert Transaction.query.count() == 0


def test_withdraw_invalid_amount_and_source(client, login, make_profile):
    login(make_profile(credit=100.0))

    response = request_withdraw(client, 0, 'credit')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid user or amount'

    assert request_withdraw(client, 10, 'savings').status_code == 400


def test_admin_reject_restores_split_withdrawal(client, login, make_profile):
    user = login(make_profile(credit=30.0, total_earned=100.0))
    request_withdraw(client, 80, 'all')
    tx = Transaction.query.filter_by(type='withdraw_request').one()

    admin = login(make_profile(full_name='Admin', is_admin=True))
    response = client.post(f'/api/admin/transactions/{tx.id}/reject')

    assert response.status_code == 200
    assert tx.status == 'rejected'
    assert tx.rejected_by == admin.id
    assert user.credit == 30.0
    assert user.total_earned == 100.0

    refund = Transaction.query.filter_by(type='refund').one()
    assert refund.status == 'confirmed'
    assert refund.direction == 'in'
    assert refund.amount == 80.0
    assert Notification.query.filter_by(user_id=user.id, notification_type='transaction_rejected').count() == 1


def test_admin_reject_legacy_withdrawal_uses_source(client, login, make_profile):
    user = make_profile(credit=0.0, total_earned=0.0)
    tx = Transaction(user_id=user.id, type='withdraw_request', status='pending', amount=60.0, source='totalEarned')
    db.session.add(tx)
    db.session.commit()

    login(make_profile(full_name='Admin', is_admin=True))
    client.post(f'/api/admin/transactions/{tx.id}/reject')

    assert user.total_earned == 60.0
    assert user.credit == 0.0


def test_admin_approve_withdrawal_keeps_balances(client, login, make_profile):
    user = login(make_profile(credit=100.0))
    request_withdraw(client, 40, 'credit')
    tx = Transaction.query.filter_by(type='withdraw_request').one()

    admin = login(make_profile(full_name='Admin', is_admin=True))
    response = client.post(f'/api/admin/transactions/{tx.id}/approve')

    assert response.status_code == 200
    assert tx.status == 'confirmed'
    assert tx.approved_by == admin.id
    assert tx.confirmed_at is not None
    assert user.credit == 60.0
    assert AuditLog.query.filter_by(event_category='admin').count() == 1

    again = client.post(f'/api/admin/transactions/{tx.id}/approve')
    assert again.status_code == 409


def test_admin_approve_subscription_and_manual_topup(client, login, make_profile):
    user = make_profile(credit=5.0)
    subscription = Transaction(user_id=user.id, type='subscription', status='pending', amount=99000.0, plan='pro')
    topup = Transaction(user_id=user.id, type='topup', status='pending', amount=25.0)
    db.session.add_all([subscription, topup])
    db.session.commit()

    login(make_profile(full_name='Admin', is_admin=True))
    client.post(f'/api/admin/transactions/{subscription.id}/approve')
    client.post(f'/api/admin/transactions/{topup.id}/approve')

    assert user.plan == 'pro'
    assert user.plan_status == 'active'
    assert user.plan_started_at is not None
    assert user.credit == 30.0
    assert Notification.query.filter_by(user_id=user.id, notification_type='transaction_approved').count() == 2


def test_admin_transactions_list_filters(client, login, make_profile):
    user = login(make_profile(credit=100.0))
    request_withdraw(client, 10, 'credit')
    db.session.add(Transaction(user_id=user.id, type='topup', status='confirmed', amount=5.0))
    db.session.commit()

    login(make_profile(full_name='Admin', is_admin=True))
    response = client.get('/api/admin/transactions?status=pending&type=withdraw_request')

    assert response.status_code == 200
    body = response.get_json()
    assert body['total'] == 1
    assert body['transactions'][0]['type'] == 'withdraw_request'


def test_admin_endpoints_require_admin(client, login, make_profile):
    login(make_profile())

    assert client.get('/api/admin/transactions').status_code == 403
    assert client.post('/api/admin/transactions/1/approve').status_code == 403
