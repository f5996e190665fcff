"""Shared pytest fixtures: in-memory database, test client and model factories"""
import os
import tempfile

import pytest

# Must be set before app is imported
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['RATELIMIT_ENABLED'] = 'false'
os.environ['ENABLE_SCHEDULER'] = 'false'
os.environ['SESSION_SECRET'] = 'test-secret'
os.environ['PHAJAY_SECRET_KEY'] = 'test-merchant-key'
os.environ['LOG_DIR'] = tempfile.mkdtemp(prefix='unijobs-logs-')
os.environ.pop('PHAJAY_WEBHOOK_SECRET', None)
os.environ.pop('AUDIT_WEBHOOK_URL', None)

from app import app as flask_app, db, seed_categories, Profile, Category, Project, Order, Escrow, Transaction


@pytest.fixture
def app(monkeypatch):
    monkeypatch.delenv('PHAJAY_WEBHOOK_SECRET', raising=False)
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        seed_categories()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    """Put a profile into the test client's session"""
    def _login(profile):
        with client.session_transaction() as sess:
            sess['user_id'] = profile.id
        return profile
    return _login


@pytest.fixture
def make_profile(app):
    def _make(**kwargs):
        kwargs.setdefault('full_name', 'Test User')
        kwargs.setdefault('credit', 0.0)
        kwargs.setdefault('total_earned', 0.0)
        kwargs.setdefault('total_spent', 0.0)
        profile = Profile(**kwargs)
        db.session.add(profile)
        db.session.commit()
        return profile
    return _make


@pytest.fixture
def category(app):
    def _get(slug):
        return Category.query.filter_by(slug=slug).first()
    return _get


@pytest.fixture
def make_gateway_tx(app):
    """A pending QR-backed transaction as /api/payment/create would store it"""
    def _make(gateway_id, user, tag2, tag3=None, amount=50000.0, credits=0, **kwargs):
        tx = Transaction(
            gateway_reference=gateway_id,
            transaction_id=gateway_id,
            user_id=user.id,
            type=tag2,
            status='pending',
            amount=amount,
            credits=credits,
            payment_method='phajay-qr',
            description=f'{tag2} payment',
            tag1=str(user.id),
            tag2=tag2,
            tag3=tag3,
            **kwargs
        )
        db.session.add(tx)
        db.session.commit()
        return tx
    return _make


@pytest.fixture
def awaiting_project(app, make_profile, category):
    """Client, freelancer and a project waiting for its payout, with budget held in escrow"""
    client_profile = make_profile(full_name='Client', role='client', credit=0.0)
    freelancer = make_profile(full_name='Freelancer', role='freelancer')
    project = Project(
        client_id=client_profile.id,
        category_id=category('design').id,
        title='Landing page',
        budget=1000.0,
        posting_fee=20.0,
        status='payout_project',
        accepted_freelancer_id=freelancer.id
    )
    db.session.add(project)
    db.session.flush()
    db.session.add(Escrow(project_id=project.id, client_id=client_profile.id, amount=1000.0, status='held'))
    db.session.commit()
    return client_profile, freelancer, project


@pytest.fixture
def awaiting_order(app, make_profile, category):
    buyer = make_profile(full_name='Buyer', role='client')
    seller = make_profile(full_name='Seller', role='freelancer')
    order = Order(
        buyer_id=buyer.id,
        seller_id=seller.id,
        category_id=category('marketing').id,
        catalog_title='Social media kit',
        package_name='Basic',
        package_price=300.0,
        order_fee=10.0,
        status='awaiting_payment'
    )
    db.session.add(order)
    db.session.commit()
    return buyer, seller, order
