#!/usr/bin/env python3
"""Tests for audit forwarding to the external collector"""
import pytest

import audit_logger
from app import db, payment_audit, Transaction, AuditLog


@pytest.fixture
def forwarded(monkeypatch):
    """Capture events sent to the collector"""
    sent = []

    def fake_post(url, json=None, timeout=None, headers=None):
        sent.append({'url': url, 'event': json})

    monkeypatch.setattr(payment_audit, 'forward_url', 'https://audit.example.test/hook')
    monkeypatch.setattr(audit_logger.requests, 'post', fake_post)
    return sent


def test_high_severity_event_is_forwarded_after_commit(app, forwarded):
    payment_audit.log_event('admin', 'admin_operation', 'Approved withdrawal', severity='high')
    assert forwarded == []

    db.session.commit()

    assert len(forwarded) == 1
    assert forwarded[0]['url'] == 'https://audit.example.test/hook'
    assert forwarded[0]['event']['action'] == 'Approved withdrawal'
    assert 'forwarded_at' in forwarded[0]['event']


def test_rolled_back_event_is_not_forwarded(app, forwarded):
    payment_audit.log_event('admin', 'admin_operation', 'Approved withdrawal', severity='critical')
    db.session.rollback()
    db.session.commit()

    assert forwarded == []
    assert AuditLog.query.count() == 0


def test_low_severity_event_is_not_forwarded(app, forwarded):
    payment_audit.log_financial('escrow_held', 'Escrow held', 100.0, 'project', 1)
    db.session.commit()

    assert forwarded == []
    assert AuditLog.query.count() == 1


def test_admin_approval_is_forwarded_after_commit(client, login, make_profile, forwarded):
    user = make_profile(credit=10.0)
    tx = Transaction(user_id=user.id, type='topup', status='pending', amount=25.0)
    db.session.add(tx)
    db.session.commit()
    login(make_profile(full_name='Admin', is_admin=True))

    response = client.post(f'/api/admin/transactions/{tx.id}/approve')

    assert response.status_code == 200
    assert [f['event']['event_category'] for f in forwarded] == ['admin']
    assert user.credit == 35.0
