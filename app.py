from flask import Flask, request, jsonify, session
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timedelta
from functools import wraps
from email_validator import validate_email, EmailNotValidError
from dotenv import load_dotenv
import os
import secrets
import json
import random
import string
import time

from phajay import get_phajay_client, generate_order_no
from audit_logger import PaymentAuditLogger
from notification_service import NotificationService
from payment_reconciliation import PaymentReconciler, parse_id

load_dotenv()

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # In production, always set SESSION_SECRET or SECRET_KEY environment variable
    app.secret_key = secrets.token_hex(32)
    print("⚠️  WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///unijobs.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=24)

# Payments
app.config['RATELIMIT_ENABLED'] = os.environ.get('RATELIMIT_ENABLED', 'true').lower() != 'false'
app.config['RECONCILIATION_BASE_DELAY'] = int(os.environ.get('RECONCILIATION_BASE_DELAY', 30))
app.config['RECONCILIATION_MAX_DELAY'] = int(os.environ.get('RECONCILIATION_MAX_DELAY', 3600))
app.config['RECONCILIATION_MAX_ATTEMPTS'] = int(os.environ.get('RECONCILIATION_MAX_ATTEMPTS', 6))
app.config['RECONCILIATION_INTERVAL_SECONDS'] = int(os.environ.get('RECONCILIATION_INTERVAL_SECONDS', 60))
app.config['ENABLE_SCHEDULER'] = os.environ.get('ENABLE_SCHEDULER', 'true').lower() == 'true'
app.config['LOG_DIR'] = os.environ.get('LOG_DIR')
app.config['AUDIT_WEBHOOK_URL'] = os.environ.get('AUDIT_WEBHOOK_URL')

db = SQLAlchemy(app)

# Secure CORS configuration - restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

CURRENCY = 'LAK'

# Rate limiting storage (in-memory, consider Redis for production)
api_rate_limits = {}

# General API rate limiting
def api_rate_limit(requests_per_minute=60):
    """Rate limit decorator for general API endpoints"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            if not app.config.get('RATELIMIT_ENABLED', True):
                return f(*args, **kwargs)

            identifier = f"{request.remote_addr}:{f.__name__}"
            current_time = datetime.utcnow()

            if identifier not in api_rate_limits:
                api_rate_limits[identifier] = {'requests': [], 'blocked_until': None}

            rate_data = api_rate_limits[identifier]

            # Check if blocked
            if rate_data['blocked_until'] and current_time < rate_data['blocked_until']:
                remaining = int((rate_data['blocked_until'] - current_time).total_seconds())
                return jsonify({'error': f'Rate limit exceeded. Try again in {remaining} seconds'}), 429

            # Remove old requests (older than 1 minute)
            one_minute_ago = current_time - timedelta(minutes=1)
            rate_data['requests'] = [t for t in rate_data['requests'] if t > one_minute_ago]

            if len(rate_data['requests']) >= requests_per_minute:
                rate_data['blocked_until'] = current_time + timedelta(seconds=60)
                return jsonify({'error': 'Rate limit exceeded. Please wait a moment.'}), 429

            rate_data['requests'].append(current_time)

            return f(*args, **kwargs)
        return wrapped
    return decorator

# Cleanup old rate limit entries periodically
_last_cleanup = datetime.utcnow()

def cleanup_rate_limits():
    """Remove stale rate limit entries older than 1 hour"""
    global _last_cleanup
    current_time = datetime.utcnow()
    cutoff = current_time - timedelta(hours=1)

    stale_api = [k for k, v in api_rate_limits.items()
                 if not v['requests'] or max(v['requests']) < cutoff]
    for k in stale_api:
        del api_rate_limits[k]

    _last_cleanup = current_time

@app.before_request
def before_request_handler():
    """Run periodic cleanup on rate limit storage"""
    current_time = datetime.utcnow()
    # Run cleanup every 5 minutes
    if (current_time - _last_cleanup).total_seconds() > 300:
        cleanup_rate_limits()

# Security headers middleware
@app.after_request
def set_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    return response

def sanitize_input(text, max_length=1000):
    """Trim text input to a maximum length"""
    if not text:
        return text
    text = text.strip()
    if len(text) > max_length:
        text = text[:max_length]
    return text

def parse_amount(value):
    """Parse a positive money amount from request JSON, or None"""
    try:
        amount = round(float(value), 2)
    except (TypeError, ValueError):
        return None
    if amount != amount or amount <= 0:
        return None
    return amount

def generate_reference(prefix='TXN'):
    """Display reference such as TXN-1718000000000-AB12CD"""
    suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"

# Login required decorator for API routes
def login_required(f):
    """Decorator to require user authentication for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401
        return f(*args, **kwargs)
    return decorated_function

# Admin authentication decorator
def admin_required(f):
    """Decorator to require admin authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401

        user = db.session.get(Profile, session['user_id'])
        if not user or not user.is_admin:
            return jsonify({'error': 'Forbidden - Admin access required'}), 403

        return f(*args, **kwargs)
    return decorated_function

def current_user_is_admin():
    user = db.session.get(Profile, session.get('user_id'))
    return bool(user and user.is_admin)

def lock_profile(profile_id):
    """Load a profile row with SELECT ... FOR UPDATE before touching balances"""
    if not profile_id:
        return None
    return Profile.query.filter_by(id=profile_id).with_for_update().first()

def iso(value):
    return value.isoformat() if value else None

# Database Models
class Profile(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(120))
    email = db.Column(db.String(120), unique=True)
    role = db.Column(db.String(20), default='freelancer')  # client, freelancer
    is_admin = db.Column(db.Boolean, default=False)
    # Wallet balance in credits (1 credit = 1 LAK)
    credit = db.Column(db.Float, default=0.0)
    total_earned = db.Column(db.Float, default=0.0)
    total_spent = db.Column(db.Float, default=0.0)
    projects_completed = db.Column(db.Integer, default=0)
    orders_completed = db.Column(db.Integer, default=0)
    plan = db.Column(db.String(30))
    plan_status = db.Column(db.String(20))
    plan_started_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'full_name': self.full_name,
            'email': self.email,
            'role': self.role,
            'is_admin': self.is_admin,
            'credit': self.credit,
            'total_earned': self.total_earned,
            'total_spent': self.total_spent,
            'projects_completed': self.projects_completed,
            'orders_completed': self.orders_completed,
            'plan': self.plan,
            'plan_status': self.plan_status,
            'plan_started_at': iso(self.plan_started_at)
        }

class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(50), unique=True, nullable=False)
    name_en = db.Column(db.String(100), nullable=False)
    name_lo = db.Column(db.String(100))
    # Credits charged per proposal on projects in this category, and per catalog order
    posting_fee = db.Column(db.Float, default=0.0)
    is_active = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {
            'id': self.id,
            'slug': self.slug,
            'name_en': self.name_en,
            'name_lo': self.name_lo,
            'posting_fee': self.posting_fee
        }

class Project(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'))
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    budget = db.Column(db.Float, nullable=False)
    posting_fee = db.Column(db.Float, default=0.0)
    status = db.Column(db.String(30), default='open')  # open, in_progress, in_review, payout_project, completed, cancelled
    accepted_freelancer_id = db.Column(db.Integer, db.ForeignKey('profile.id'))
    accepted_proposal_id = db.Column(db.Integer)
    proposals_count = db.Column(db.Integer, default=0)
    # Gateway ID of the current payout QR
    transaction_id = db.Column(db.String(100))
    paid_amount = db.Column(db.Float)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'client_id': self.client_id,
            'category_id': self.category_id,
            'title': self.title,
            'description': self.description,
            'budget': self.budget,
            'posting_fee': self.posting_fee,
            'status': self.status,
            'accepted_freelancer_id': self.accepted_freelancer_id,
            'accepted_proposal_id': self.accepted_proposal_id,
            'proposals_count': self.proposals_count,
            'transaction_id': self.transaction_id,
            'paid_amount': self.paid_amount,
            'created_at': iso(self.created_at),
            'completed_at': iso(self.completed_at)
        }

class Proposal(db.Model):
    __table_args__ = (
        db.UniqueConstraint('project_id', 'freelancer_id', name='unique_proposal_per_project'),
    )
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    cover_letter = db.Column(db.Text, nullable=False)
    proposed_budget = db.Column(db.Float, nullable=False)
    estimated_duration = db.Column(db.String(50), nullable=False)
    fee_paid = db.Column(db.Float, default=0.0)
    status = db.Column(db.String(20), default='pending')  # pending, accepted, rejected
    processed_by = db.Column(db.Integer)
    processed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'freelancer_id': self.freelancer_id,
            'cover_letter': self.cover_letter,
            'proposed_budget': self.proposed_budget,
            'estimated_duration': self.estimated_duration,
            'fee_paid': self.fee_paid,
            'status': self.status,
            'processed_at': iso(self.processed_at),
            'created_at': iso(self.created_at)
        }

class Order(db.Model):
    __tablename__ = 'orders'
    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    seller_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'))
    catalog_title = db.Column(db.String(200))
    package_name = db.Column(db.String(100))
    package_price = db.Column(db.Float, default=0.0)
    order_fee = db.Column(db.Float, default=0.0)
    status = db.Column(db.String(30), default='pending')  # pending, accepted, in_progress, delivered, awaiting_payment, completed, cancelled, refunded
    transaction_id = db.Column(db.String(100))
    paid_amount = db.Column(db.Float)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'buyer_id': self.buyer_id,
            'seller_id': self.seller_id,
            'category_id': self.category_id,
            'catalog_title': self.catalog_title,
            'package_name': self.package_name,
            'package_price': self.package_price,
            'order_fee': self.order_fee,
            'status': self.status,
            'transaction_id': self.transaction_id,
            'paid_amount': self.paid_amount,
            'created_at': iso(self.created_at),
            'completed_at': iso(self.completed_at)
        }

class Escrow(db.Model):
    """Funds held from a client's credit until the work is paid out or cancelled"""
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'))
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'))
    client_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('profile.id'))
    amount = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), default='held')  # held, released, refunded
    held_at = db.Column(db.DateTime, default=datetime.utcnow)
    released_at = db.Column(db.DateTime)
    refunded_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'order_id': self.order_id,
            'client_id': self.client_id,
            'freelancer_id': self.freelancer_id,
            'amount': self.amount,
            'status': self.status,
            'held_at': iso(self.held_at),
            'released_at': iso(self.released_at),
            'refunded_at': iso(self.refunded_at)
        }

class Transaction(db.Model):
    """User-visible money movement. QR-backed rows carry the gateway ID in gateway_reference."""
    __tablename__ = 'transactions'
    id = db.Column(db.Integer, primary_key=True)
    gateway_reference = db.Column(db.String(100), unique=True)
    transaction_id = db.Column(db.String(100), index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('profile.id'), index=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'))
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'))
    type = db.Column(db.String(40), nullable=False)
    direction = db.Column(db.String(5))  # in, out
    status = db.Column(db.String(30), default='pending')
    amount = db.Column(db.Float, default=0.0)
    amount_paid = db.Column(db.Float)
    credits = db.Column(db.Integer, default=0)
    currency = db.Column(db.String(5), default=CURRENCY)
    payment_method = db.Column(db.String(50))
    description = db.Column(db.String(500))
    tag1 = db.Column(db.String(100))
    tag2 = db.Column(db.String(100))
    tag3 = db.Column(db.String(100))
    order_no = db.Column(db.String(100))
    qr_code = db.Column(db.Text)
    link = db.Column(db.String(500))
    plan = db.Column(db.String(30))
    previous_balance = db.Column(db.Float)
    new_balance = db.Column(db.Float)
    # Withdrawal details
    account_name = db.Column(db.String(120))
    account_number = db.Column(db.String(50))
    source = db.Column(db.String(20))  # credit, totalEarned, all
    previous_credit = db.Column(db.Float)
    new_credit = db.Column(db.Float)
    previous_total = db.Column(db.Float)
    new_total = db.Column(db.Float)
    error_reason = db.Column(db.String(100))
    approved_by = db.Column(db.Integer)
    rejected_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)
    confirmed_at = db.Column(db.DateTime)
    expired_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'gateway_reference': self.gateway_reference,
            'transaction_id': self.transaction_id,
            'user_id': self.user_id,
            'project_id': self.project_id,
            'order_id': self.order_id,
            'type': self.type,
            'direction': self.direction,
            'status': self.status,
            'amount': self.amount,
            'amount_paid': self.amount_paid,
            'credits': self.credits,
            'currency': self.currency,
            'payment_method': self.payment_method,
            'description': self.description,
            'tags': [self.tag1, self.tag2, self.tag3],
            'order_no': self.order_no,
            'link': self.link,
            'source': self.source,
            'previous_balance': self.previous_balance,
            'new_balance': self.new_balance,
            'error_reason': self.error_reason,
            'created_at': iso(self.created_at),
            'confirmed_at': iso(self.confirmed_at),
            'expired_at': iso(self.expired_at)
        }

class LedgerEntry(db.Model):
    """Internal double-entry record of escrow movements"""
    __tablename__ = 'transactions_internal'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('profile.id'))
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'))
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'))
    type = db.Column(db.String(30), nullable=False)  # escrow_release, escrow_payment
    amount = db.Column(db.Float, nullable=False)
    direction = db.Column(db.String(5), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

class Notification(db.Model):
    """Model for user notifications"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    link = db.Column(db.String(500))
    project_id = db.Column(db.Integer)
    order_id = db.Column(db.Integer)
    related_user_id = db.Column(db.Integer)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    read_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'project_id': self.project_id,
            'order_id': self.order_id,
            'is_read': self.is_read,
            'created_at': iso(self.created_at)
        }

class PaymentLog(db.Model):
    """Every webhook body as received, before any processing"""
    id = db.Column(db.Integer, primary_key=True)
    raw_body = db.Column(db.Text)
    payload = db.Column(db.Text)
    signature_valid = db.Column(db.Boolean, default=True)
    received_at = db.Column(db.DateTime, default=datetime.utcnow)

class WebhookEvent(db.Model):
    __table_args__ = (
        db.UniqueConstraint('gateway_transaction_id', 'status', name='unique_webhook_delivery'),
    )
    id = db.Column(db.Integer, primary_key=True)
    gateway_transaction_id = db.Column(db.String(100), nullable=False)
    status = db.Column(db.String(50), nullable=False)
    flow = db.Column(db.String(30))
    outcome = db.Column(db.String(30))
    processed_at = db.Column(db.DateTime, default=datetime.utcnow)

class ReconciliationTask(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    gateway_transaction_id = db.Column(db.String(100), nullable=False, index=True)
    payload = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), default='pending')  # pending, done, dead
    attempts = db.Column(db.Integer, default=0)
    next_attempt_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'gateway_transaction_id': self.gateway_transaction_id,
            'status': self.status,
            'attempts': self.attempts,
            'next_attempt_at': iso(self.next_attempt_at),
            'last_error': self.last_error,
            'created_at': iso(self.created_at),
            'completed_at': iso(self.completed_at)
        }

class AuditLog(db.Model):
    """Financial audit trail"""
    id = db.Column(db.Integer, primary_key=True)
    event_category = db.Column(db.String(30), nullable=False)  # financial, reconciliation, admin
    event_type = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(10), default='low')
    user_id = db.Column(db.Integer)
    ip_address = db.Column(db.String(45))
    action = db.Column(db.String(200), nullable=False)
    resource_type = db.Column(db.String(30))
    resource_id = db.Column(db.String(100))
    status = db.Column(db.String(20), default='success')
    message = db.Column(db.Text)
    details = db.Column(db.Text)
    request_method = db.Column(db.String(10))
    request_path = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

# Services
notification_service = NotificationService(db, Notification)
payment_audit = PaymentAuditLogger(app, db, AuditLog)
reconciler = PaymentReconciler(
    db, Profile, Project, Order, Escrow, Transaction, LedgerEntry,
    WebhookEvent, ReconciliationTask, notification_service, payment_audit,
    base_delay=app.config['RECONCILIATION_BASE_DELAY'],
    max_delay=app.config['RECONCILIATION_MAX_DELAY'],
    max_attempts=app.config['RECONCILIATION_MAX_ATTEMPTS']
)

PAYOUT_FLOWS = ('project_payout', 'order_payout')

# ============ PROFILE & CATEGORIES ============

@app.route('/api/profile', methods=['GET'])
@login_required
def get_profile():
    user = db.session.get(Profile, session['user_id'])
    if not user:
        return jsonify({'error': 'Profile not found'}), 404
    return jsonify(user.to_dict()), 200

@app.route('/api/profile', methods=['PUT'])
@login_required
def update_profile():
    try:
        user = db.session.get(Profile, session['user_id'])
        if not user:
            return jsonify({'error': 'Profile not found'}), 404

        data = request.json or {}

        if 'full_name' in data:
            user.full_name = sanitize_input(data.get('full_name'), max_length=120)

        if data.get('email'):
            try:
                valid = validate_email(data['email'], check_deliverability=False)
                email = valid.normalized
            except EmailNotValidError as e:
                return jsonify({'error': str(e)}), 400

            existing = Profile.query.filter(Profile.email == email, Profile.id != user.id).first()
            if existing:
                return jsonify({'error': 'Email already in use'}), 400
            user.email = email

        if data.get('role') in ('client', 'freelancer'):
            user.role = data['role']

        user.updated_at = datetime.utcnow()
        db.session.commit()
        return jsonify({'message': 'Profile updated', 'profile': user.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update profile error: {str(e)}")
        return jsonify({'error': 'Failed to update profile'}), 500

@app.route('/api/categories', methods=['GET'])
def get_categories():
    categories = Category.query.filter_by(is_active=True).order_by(Category.id).all()
    return jsonify([c.to_dict() for c in categories]), 200

# ============ PAYMENTS (PhaJay QR) ============

PAYABLE_PROJECT_STATUSES = ('in_review', 'payout_project')
PAYABLE_ORDER_STATUSES = ('delivered', 'awaiting_payment')

def payout_target_error(flow, target):
    """Return (message, status) when the caller may not pay this project or order now"""
    is_admin = current_user_is_admin()
    if flow == 'project_payout':
        if target.client_id != session['user_id'] and not is_admin:
            return 'Only the project owner can pay for this project', 403
        if target.status not in PAYABLE_PROJECT_STATUSES:
            return f'Project is {target.status} and cannot be paid', 409
        if not target.accepted_freelancer_id:
            return 'Project has no accepted freelancer', 409
    elif flow == 'order_payout':
        if target.buyer_id != session['user_id'] and not is_admin:
            return 'Only the buyer can pay for this order', 403
        if target.status not in PAYABLE_ORDER_STATUSES:
            return f'Order is {target.status} and cannot be paid', 409
    return None

@app.route('/api/payment/create', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=5)
def create_payment():
    """Request a BCEL One QR and record the pending transaction"""
    try:
        data = request.json or {}
        amount = data.get('amount')
        description = data.get('description')
        tag1 = data.get('tag1')
        tag2 = data.get('tag2')
        tag3 = data.get('tag3')

        if amount in (None, '') or not description or tag1 in (None, '') or not tag2:
            return jsonify({'error': 'Missing required fields'}), 400

        amount = parse_amount(amount)
        if not amount:
            return jsonify({'error': 'Invalid amount'}), 400

        tag1 = str(tag1)
        tag3 = str(tag3) if tag3 not in (None, '') else None
        user_id = parse_id(tag1)

        if user_id != session['user_id'] and not current_user_is_admin():
            return jsonify({'error': 'You can only create payments for your own account'}), 403

        credits = 0
        if tag2 == 'topup':
            try:
                credits = int(float(tag3)) if tag3 else 0
            except ValueError:
                credits = 0
            if credits <= 0:
                return jsonify({'error': 'Invalid credits'}), 400

        project = None
        order = None
        if tag2 == 'project_payout':
            project = Project.query.get(parse_id(tag3)) if parse_id(tag3) else None
            if not project:
                return jsonify({'error': 'Project not found'}), 404
        elif tag2 == 'order_payout':
            order = Order.query.get(parse_id(tag3)) if parse_id(tag3) else None
            if not order:
                return jsonify({'error': 'Order not found'}), 404

        target_error = payout_target_error(tag2, project or order) if (project or order) else None
        if target_error:
            return jsonify({'error': target_error[0]}), target_error[1]

        client = get_phajay_client()
        result = client.generate_qr(amount, description, tag1, tag2, tag3)

        if not result.get('success'):
            app.logger.error(f"PhaJay QR generation failed: {result.get('error')}")
            return jsonify({'error': result.get('error') or 'Failed to generate QR'}), 502

        order_no = generate_order_no()
        tx = Transaction(
            gateway_reference=result['transaction_id'],
            transaction_id=result['transaction_id'],
            user_id=user_id,
            project_id=project.id if project else None,
            order_id=order.id if order else None,
            type=tag2,
            direction='in' if tag2 in ('topup', 'subscription') else 'out',
            status='pending',
            amount=amount,
            credits=credits,
            payment_method='phajay-qr',
            description=sanitize_input(description, max_length=500),
            tag1=tag1,
            tag2=tag2,
            tag3=tag3,
            plan=data.get('plan') if tag2 == 'subscription' else None,
            order_no=order_no,
            qr_code=result['qr_code'],
            link=result.get('link')
        )
        db.session.add(tx)

        if project:
            project.transaction_id = result['transaction_id']
            project.status = 'payout_project'
            project.updated_at = datetime.utcnow()
        if order:
            order.transaction_id = result['transaction_id']
            order.status = 'awaiting_payment'
            order.updated_at = datetime.utcnow()

        payment_audit.log_financial(
            'payment_created',
            f"QR payment created for {tag2}",
            amount,
            'transaction',
            result['transaction_id'],
            details={'flow': tag2, 'tag3': tag3, 'order_no': order_no}
        )
        db.session.commit()

        return jsonify({
            'success': True,
            'qrCode': result['qr_code'],
            'link': result.get('link'),
            'transactionId': result['transaction_id'],
            'orderNo': order_no
        }), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create payment error: {str(e)}")
        return jsonify({'error': 'Failed to create payment'}), 500

@app.route('/api/payment/regenerate', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=5)
def regenerate_payment():
    """Replace an unpaid QR with a fresh one for the same payment"""
    try:
        gateway_id = request.args.get('tx')
        if not gateway_id:
            return jsonify({'error': 'Missing transaction ID'}), 400

        old_tx = Transaction.query.filter_by(gateway_reference=gateway_id).with_for_update().first()
        if not old_tx:
            return jsonify({'error': 'Transaction not found'}), 404

        if old_tx.user_id != session['user_id'] and not current_user_is_admin():
            return jsonify({'error': 'Forbidden'}), 403

        if old_tx.status == 'confirmed':
            return jsonify({'error': 'Transaction already confirmed'}), 409

        target = None
        target_id = parse_id(old_tx.tag3)
        if old_tx.type == 'project_payout' and target_id:
            target = Project.query.get(target_id)
        elif old_tx.type == 'order_payout' and target_id:
            target = Order.query.get(target_id)
        if target:
            target_error = payout_target_error(old_tx.type, target)
            if target_error:
                return jsonify({'error': target_error[0]}), target_error[1]

        tag1 = old_tx.tag1 or (str(old_tx.user_id) if old_tx.user_id else None)

        client = get_phajay_client()
        result = client.generate_qr(old_tx.amount, old_tx.description, tag1, old_tx.type, old_tx.tag3)

        if not result.get('success'):
            app.logger.error(f"PhaJay QR regeneration failed: {result.get('error')}")
            return jsonify({'error': result.get('error') or 'Failed to generate QR'}), 502

        new_id = result['transaction_id']
        order_no = generate_order_no()
        new_tx = Transaction(
            gateway_reference=new_id,
            transaction_id=new_id,
            user_id=old_tx.user_id,
            project_id=old_tx.project_id,
            order_id=old_tx.order_id,
            type=old_tx.type,
            direction=old_tx.direction,
            status='pending',
            amount=old_tx.amount,
            credits=old_tx.credits,
            payment_method='phajay-qr',
            description=old_tx.description,
            tag1=tag1,
            tag2=old_tx.type,
            tag3=old_tx.tag3,
            plan=old_tx.plan,
            order_no=order_no,
            qr_code=result['qr_code'],
            link=result.get('link')
        )
        db.session.add(new_tx)

        old_tx.status = 'expired'
        old_tx.expired_at = datetime.utcnow()
        old_tx.updated_at = datetime.utcnow()

        if target:
            target.transaction_id = new_id
            target.updated_at = datetime.utcnow()

        db.session.commit()

        return jsonify({
            'success': True,
            'qrCode': result['qr_code'],
            'link': result.get('link'),
            'transactionId': new_id,
            'orderNo': order_no,
            'expiredTransactionId': gateway_id
        }), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Regenerate payment error: {str(e)}")
        return jsonify({'error': 'Failed to regenerate payment'}), 500

@app.route('/api/payment/webhook', methods=['POST'])
def phajay_webhook():
    """Handle PhaJay payment callbacks"""
    raw_body = request.get_data()
    signature = request.headers.get('X-PhaJay-Signature')

    client = get_phajay_client()
    signature_valid = True
    if client.config.webhook_secret:
        signature_valid = bool(signature) and client.verify_webhook_signature(raw_body, signature)

    try:
        data = json.loads(raw_body)
        if not isinstance(data, dict):
            data = None
    except ValueError:
        data = None

    # Keep the raw delivery even when everything after this fails
    try:
        db.session.add(PaymentLog(
            raw_body=raw_body.decode('utf-8', errors='replace'),
            payload=json.dumps(data) if data is not None else None,
            signature_valid=signature_valid
        ))
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Payment log write failed: {str(e)}")

    if not signature_valid:
        app.logger.warning("Invalid PhaJay webhook signature")
        return jsonify({'error': True, 'reason': 'invalid_signature'}), 401

    if data is None:
        return jsonify({'error': True, 'reason': 'invalid_json'}), 400

    body, status_code = reconciler.handle_webhook(data)
    return jsonify(body), status_code

# ============ WITHDRAWALS ============

@app.route('/api/requestWithdraw', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=5)
def request_withdraw():
    """Move money out of the wallet into a pending bank transfer"""
    try:
        data = request.json or {}
        amount = parse_amount(data.get('amount'))
        source = data.get('source') or 'credit'
        account_name = sanitize_input(data.get('accountName'), max_length=120)
        account_number = sanitize_input(data.get('accountNumber'), max_length=50)

        if not amount:
            return jsonify({'error': 'Invalid user or amount'}), 400

        if not account_name or not account_number:
            return jsonify({'error': 'Missing bank account details'}), 400

        if source not in ('credit', 'totalEarned', 'all'):
            return jsonify({'error': 'Invalid withdraw source'}), 400

        profile = lock_profile(session['user_id'])
        if not profile:
            return jsonify({'error': 'Profile not found'}), 404

        previous_credit = profile.credit or 0
        previous_total = profile.total_earned or 0
        new_credit = previous_credit
        new_total = previous_total

        if source == 'credit':
            if previous_credit < amount:
                return jsonify({'error': 'Insufficient credit'}), 400
            new_credit = previous_credit - amount
        elif source == 'totalEarned':
            if previous_total < amount:
                return jsonify({'error': 'Insufficient total earnings'}), 400
            new_total = previous_total - amount
        else:
            if previous_credit + previous_total < amount:
                return jsonify({'error': 'Insufficient balance'}), 400
            from_credit = min(previous_credit, amount)
            new_credit = previous_credit - from_credit
            new_total = previous_total - (amount - from_credit)

        profile.credit = round(new_credit, 2)
        profile.total_earned = round(new_total, 2)
        profile.updated_at = datetime.utcnow()

        tx = Transaction(
            transaction_id=generate_reference('TXN'),
            user_id=profile.id,
            type='withdraw_request',
            direction='out',
            status='pending',
            amount=amount,
            currency=CURRENCY,
            payment_method='manual_bank_transfer',
            description=f"Withdraw {amount:g} {CURRENCY} from {source}",
            account_name=account_name,
            account_number=account_number,
            source=source,
            previous_credit=previous_credit,
            new_credit=profile.credit,
            previous_total=previous_total,
            new_total=profile.total_earned
        )
        db.session.add(tx)
        payment_audit.log_financial(
            'withdraw_requested',
            f"Withdrawal of {amount:g} {CURRENCY} requested",
            amount,
            'transaction',
            tx.transaction_id,
            details={'source': source}
        )
        db.session.commit()

        return jsonify({'success': True, 'transaction': tx.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Withdraw request error: {str(e)}")
        return jsonify({'error': 'Failed to request withdrawal'}), 500

# ============ ADMIN: TRANSACTIONS ============

@app.route('/api/admin/transactions', methods=['GET'])
@admin_required
def admin_get_transactions():
    try:
        page = request.args.get('page', 1, type=int)
        per_page = min(request.args.get('per_page', 50, type=int), 200)
        status = request.args.get('status')
        tx_type = request.args.get('type')

        query = Transaction.query
        if status:
            query = query.filter(Transaction.status == status)
        if tx_type:
            query = query.filter(Transaction.type == tx_type)

        pagination = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).paginate(
            page=page, per_page=per_page, error_out=False
        )

        return jsonify({
            'transactions': [t.to_dict() for t in pagination.items],
            'total': pagination.total,
            'pages': pagination.pages,
            'current_page': page
        }), 200

    except Exception as e:
        app.logger.error(f"Admin get transactions error: {str(e)}")
        return jsonify({'error': 'Failed to retrieve transactions'}), 500

@app.route('/api/admin/transactions/<int:tx_id>/approve', methods=['POST'])
@admin_required
def admin_approve_transaction(tx_id):
    try:
        tx = Transaction.query.filter_by(id=tx_id).with_for_update().first()
        if not tx:
            return jsonify({'error': 'Transaction not found'}), 404

        if tx.status != 'pending':
            return jsonify({'error': 'Only pending transactions can be approved'}), 409

        now = datetime.utcnow()
        tx.status = 'confirmed'
        tx.approved_by = session['user_id']
        tx.confirmed_at = now
        tx.updated_at = now

        profile = lock_profile(tx.user_id)
        if tx.type == 'subscription':
            if not profile:
                db.session.rollback()
                return jsonify({'error': 'Profile not found'}), 404
            profile.plan = tx.plan or 'basic'
            profile.plan_status = 'active'
            profile.plan_started_at = now
            profile.updated_at = now
        elif tx.type == 'topup':
            if not profile:
                db.session.rollback()
                return jsonify({'error': 'Profile not found'}), 404
            tx.previous_balance = profile.credit or 0
            profile.credit = round((profile.credit or 0) + tx.amount, 2)
            tx.new_balance = profile.credit
            profile.updated_at = now
        # withdraw_request: balances were already deducted at request time

        notification_service.transaction_approved(tx)
        payment_audit.log_admin_action(
            f"Approved {tx.type} transaction",
            'transaction',
            tx.id,
            details={'amount': tx.amount, 'user_id': tx.user_id}
        )
        db.session.commit()

        return jsonify({'success': True, 'transaction': tx.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Approve transaction error: {str(e)}")
        return jsonify({'error': 'Failed to approve transaction'}), 500

@app.route('/api/admin/transactions/<int:tx_id>/reject', methods=['POST'])
@admin_required
def admin_reject_transaction(tx_id):
    try:
        tx = Transaction.query.filter_by(id=tx_id).with_for_update().first()
        if not tx:
            return jsonify({'error': 'Transaction not found'}), 404

        if tx.status != 'pending':
            return jsonify({'error': 'Only pending transactions can be rejected'}), 409

        now = datetime.utcnow()
        tx.status = 'rejected'
        tx.rejected_by = session['user_id']
        tx.error_reason = sanitize_input((request.get_json(silent=True) or {}).get('reason'), max_length=100)
        tx.updated_at = now

        if tx.type == 'withdraw_request':
            profile = lock_profile(tx.user_id)
            if not profile:
                db.session.rollback()
                return jsonify({'error': 'Profile not found'}), 404

            credit_refund, total_refund = withdraw_refund_split(tx)
            profile.credit = round((profile.credit or 0) + credit_refund, 2)
            profile.total_earned = round((profile.total_earned or 0) + total_refund, 2)
            profile.updated_at = now

            db.session.add(Transaction(
                transaction_id=tx.transaction_id,
                user_id=tx.user_id,
                type='refund',
                direction='in',
                status='confirmed',
                amount=tx.amount,
                currency=tx.currency or CURRENCY,
                payment_method='manual_bank_transfer',
                description=f"Refund for rejected withdrawal {tx.transaction_id}",
                source=tx.source,
                confirmed_at=now
            ))

        notification_service.transaction_rejected(tx)
        payment_audit.log_admin_action(
            f"Rejected {tx.type} transaction",
            'transaction',
            tx.id,
            details={'amount': tx.amount, 'user_id': tx.user_id}
        )
        db.session.commit()

        return jsonify({'success': True, 'transaction': tx.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Reject transaction error: {str(e)}")
        return jsonify({'error': 'Failed to reject transaction'}), 500

def withdraw_refund_split(tx):
    """
    Amounts to give back to (credit, total_earned) for a rejected withdrawal.

    Uses the deltas recorded at request time; rows created before snapshots
    existed fall back to the withdraw source, with 'all' going to credit.
    """
    if tx.previous_credit is not None and tx.new_credit is not None:
        credit_refund = (tx.previous_credit or 0) - (tx.new_credit or 0)
        total_refund = (tx.previous_total or 0) - (tx.new_total or 0)
        return round(credit_refund, 2), round(total_refund, 2)

    if tx.source == 'totalEarned':
        return 0.0, tx.amount
    return tx.amount, 0.0

# ============ ADMIN: RECONCILIATION QUEUE ============

@app.route('/api/admin/reconciliation', methods=['GET'])
@admin_required
def admin_get_reconciliation_tasks():
    status = request.args.get('status')
    query = ReconciliationTask.query
    if status:
        query = query.filter(ReconciliationTask.status == status)
    tasks = query.order_by(ReconciliationTask.created_at.desc()).limit(200).all()
    return jsonify({'tasks': [t.to_dict() for t in tasks]}), 200

@app.route('/api/admin/reconciliation/<int:task_id>/retry', methods=['POST'])
@admin_required
def admin_retry_reconciliation_task(task_id):
    task = ReconciliationTask.query.get_or_404(task_id)
    if task.status == 'done':
        return jsonify({'error': 'Task already completed'}), 409

    status = reconciler.retry_task(task)
    payment_audit.log_admin_action('Forced reconciliation retry', 'reconciliation_task', task_id,
                                   details={'result': status})
    db.session.commit()

    task = db.session.get(ReconciliationTask, task_id)
    return jsonify({'success': status == 'done', 'task': task.to_dict()}), 200

# ============ PROJECTS ============

@app.route('/api/projects', methods=['GET'])
def get_projects():
    status = request.args.get('status', 'open')
    query = Project.query
    if status != 'all':
        query = query.filter(Project.status == status)
    category_id = request.args.get('category_id', type=int)
    if category_id:
        query = query.filter(Project.category_id == category_id)
    projects = query.order_by(Project.created_at.desc()).limit(100).all()
    return jsonify([p.to_dict() for p in projects]), 200

@app.route('/api/projects/<int:project_id>', methods=['GET'])
def get_project(project_id):
    project = Project.query.get_or_404(project_id)
    return jsonify(project.to_dict()), 200

@app.route('/api/projects', methods=['POST'])
@login_required
def create_project():
    """Client posts a project; the budget is held in escrow from their credit"""
    try:
        data = request.json or {}
        title = sanitize_input(data.get('title'), max_length=200)
        description = sanitize_input(data.get('description'), max_length=5000)
        budget = parse_amount(data.get('budget'))

        if not title:
            return jsonify({'error': 'Title is required'}), 400
        if not budget:
            return jsonify({'error': 'Budget must be greater than 0'}), 400

        category = Category.query.get(data.get('category_id')) if data.get('category_id') else None
        if not category:
            return jsonify({'error': 'Invalid category'}), 400

        client = lock_profile(session['user_id'])
        if not client:
            return jsonify({'error': 'Profile not found'}), 404

        previous_balance = client.credit or 0
        if previous_balance < budget:
            return jsonify({
                'error': 'Not enough credit to create this project.',
                'required': budget,
                'available': previous_balance
            }), 400

        client.credit = round(previous_balance - budget, 2)
        client.updated_at = datetime.utcnow()

        project = Project(
            client_id=client.id,
            category_id=category.id,
            title=title,
            description=description,
            budget=budget,
            posting_fee=category.posting_fee or 0,
            status='open'
        )
        db.session.add(project)
        db.session.flush()

        escrow = Escrow(
            project_id=project.id,
            client_id=client.id,
            amount=budget,
            status='held'
        )
        db.session.add(escrow)

        db.session.add(Transaction(
            transaction_id=generate_reference('ESCROW'),
            user_id=client.id,
            project_id=project.id,
            type='escrow_hold',
            direction='out',
            status='held',
            amount=budget,
            payment_method='credit',
            description=f"Escrow hold for project {title}",
            previous_balance=previous_balance,
            new_balance=client.credit
        ))

        payment_audit.log_financial('escrow_held', f"Escrow held for project {project.id}", budget,
                                    'project', project.id)
        db.session.commit()

        return jsonify({'success': True, 'project': project.to_dict(), 'escrow': escrow.to_dict()}), 201

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create project error: {str(e)}")
        return jsonify({'error': 'Failed to create project'}), 500

def posting_fee_change(project, category):
    """(old fee, new fee, diff) for moving project to category; unknown category keeps the old fee"""
    old_fee = project.posting_fee or 0
    new_fee = (category.posting_fee or 0) if category else old_fee
    return old_fee, new_fee, round(new_fee - old_fee, 2)

@app.route('/api/projects/<int:project_id>/posting-fee', methods=['GET'])
@login_required
def preview_posting_fee(project_id):
    project = Project.query.get_or_404(project_id)
    if project.client_id != session['user_id']:
        return jsonify({'error': 'Only the project owner can change its category'}), 403

    category_id = request.args.get('category_id', type=int)
    category = Category.query.get(category_id) if category_id else None
    old_fee, new_fee, diff = posting_fee_change(project, category)

    return jsonify({'oldPostingFee': old_fee, 'newPostingFee': new_fee, 'diff': diff}), 200

@app.route('/api/projects/<int:project_id>/category', methods=['PUT'])
@login_required
def change_project_category(project_id):
    """Switch category and settle the posting fee difference against the client's credit"""
    try:
        project = Project.query.filter_by(id=project_id).with_for_update().first()
        if not project:
            return jsonify({'error': 'Project not found'}), 404
        if project.client_id != session['user_id']:
            return jsonify({'error': 'Only the project owner can change its category'}), 403
        if project.status != 'open':
            return jsonify({'error': 'Category can only be changed while the project is open'}), 409

        data = request.json or {}
        category = Category.query.get(data.get('category_id')) if data.get('category_id') else None
        if not category:
            return jsonify({'error': 'Category not found'}), 404

        old_fee, new_fee, diff = posting_fee_change(project, category)

        client = lock_profile(project.client_id)
        previous_balance = client.credit or 0

        if diff > 0:
            if previous_balance < diff:
                return jsonify({
                    'error': 'NOT_ENOUGH_CREDITS',
                    'required': diff,
                    'available': previous_balance
                }), 400
            client.credit = round(previous_balance - diff, 2)
        elif diff < 0:
            client.credit = round(previous_balance + abs(diff), 2)

        if diff != 0:
            client.updated_at = datetime.utcnow()
            db.session.add(Transaction(
                transaction_id=generate_reference('FEE'),
                user_id=client.id,
                project_id=project.id,
                type='posting_fee_adjust',
                direction='out' if diff > 0 else 'in',
                status='confirmed',
                amount=abs(diff),
                payment_method='credit',
                description=f"Posting fee adjustment for project {project.title}",
                previous_balance=previous_balance,
                new_balance=client.credit,
                confirmed_at=datetime.utcnow()
            ))

        project.category_id = category.id
        project.posting_fee = new_fee
        project.updated_at = datetime.utcnow()
        db.session.commit()

        return jsonify({
            'success': True,
            'project': project.to_dict(),
            'oldPostingFee': old_fee,
            'newPostingFee': new_fee,
            'diff': diff,
            'credit': client.credit
        }), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Change project category error: {str(e)}")
        return jsonify({'error': 'Failed to change category'}), 500

def refund_proposal(project, proposal, processed_by):
    """Reject a pending proposal and give its fee back to the freelancer"""
    refund_amount = proposal.fee_paid or 0
    now = datetime.utcnow()

    if refund_amount > 0:
        freelancer = lock_profile(proposal.freelancer_id)
        if freelancer:
            previous_balance = freelancer.credit or 0
            freelancer.credit = round(previous_balance + refund_amount, 2)
            freelancer.updated_at = now
            db.session.add(Transaction(
                transaction_id=generate_reference('REFUND'),
                user_id=freelancer.id,
                project_id=project.id,
                type='proposal_refund',
                direction='in',
                status='confirmed',
                amount=refund_amount,
                payment_method='credit',
                description=f"Proposal fee refund for project {project.title}",
                previous_balance=previous_balance,
                new_balance=freelancer.credit,
                confirmed_at=now
            ))

    proposal.status = 'rejected'
    proposal.processed_by = processed_by
    proposal.processed_at = now
    notification_service.proposal_rejected(project, proposal, refund_amount)
    return refund_amount

@app.route('/api/projects/<int:project_id>', methods=['DELETE'])
@login_required
def delete_project(project_id):
    """Cancel a project that has not started, refunding escrow and proposal fees"""
    try:
        project = Project.query.filter_by(id=project_id).with_for_update().first()
        if not project:
            return jsonify({'error': 'Project not found'}), 404
        if project.client_id != session['user_id'] and not current_user_is_admin():
            return jsonify({'error': 'Only the project owner can delete this project'}), 403
        if project.status != 'open':
            return jsonify({'error': f'Cannot delete a project that is {project.status}'}), 409

        now = datetime.utcnow()
        refunded = 0.0

        escrow = Escrow.query.filter_by(project_id=project.id, status='held').with_for_update().first()
        if escrow:
            client = lock_profile(project.client_id)
            previous_balance = client.credit or 0
            client.credit = round(previous_balance + escrow.amount, 2)
            client.updated_at = now
            escrow.status = 'refunded'
            escrow.refunded_at = now
            refunded = escrow.amount

            Transaction.query.filter_by(project_id=project.id, type='escrow_hold', status='held').update(
                {'status': 'released', 'updated_at': now}, synchronize_session=False
            )
            db.session.add(Transaction(
                transaction_id=generate_reference('ESCROW'),
                user_id=client.id,
                project_id=project.id,
                type='escrow_refund',
                direction='in',
                status='confirmed',
                amount=escrow.amount,
                payment_method='credit',
                description=f"Escrow refund for cancelled project {project.title}",
                previous_balance=previous_balance,
                new_balance=client.credit,
                confirmed_at=now
            ))

        pending = Proposal.query.filter_by(project_id=project.id, status='pending').all()
        for proposal in pending:
            refund_proposal(project, proposal, session['user_id'])

        project.status = 'cancelled'
        project.updated_at = now

        payment_audit.log_financial('escrow_refunded', f"Project {project.id} cancelled", refunded,
                                    'project', project.id,
                                    details={'proposals_refunded': len(pending)})
        db.session.commit()

        return jsonify({
            'success': True,
            'refunded': refunded,
            'proposals_refunded': len(pending)
        }), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete project error: {str(e)}")
        return jsonify({'error': 'Failed to delete project'}), 500

@app.route('/api/projects/<int:project_id>/submit-work', methods=['POST'])
@login_required
def submit_work(project_id):
    """Freelancer submits work for client review"""
    try:
        project = Project.query.get_or_404(project_id)
        if project.accepted_freelancer_id != session['user_id']:
            return jsonify({'error': 'Only the assigned freelancer can submit work'}), 403
        if project.status != 'in_progress':
            return jsonify({'error': 'Work can only be submitted for projects in progress'}), 409

        project.status = 'in_review'
        project.updated_at = datetime.utcnow()
        notification_service.work_submitted(project)
        db.session.commit()

        return jsonify({'success': True, 'project': project.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Submit work error: {str(e)}")
        return jsonify({'error': 'Failed to submit work'}), 500

@app.route('/api/projects/<int:project_id>/approve-work', methods=['POST'])
@login_required
def approve_work(project_id):
    """Client approves submitted work; the project then waits for its payout QR"""
    try:
        project = Project.query.get_or_404(project_id)
        if project.client_id != session['user_id']:
            return jsonify({'error': 'Only the client can approve work'}), 403
        if project.status != 'in_review':
            return jsonify({'error': 'No submitted work to approve'}), 409

        project.status = 'payout_project'
        project.updated_at = datetime.utcnow()
        notification_service.work_approved(project)
        db.session.commit()

        return jsonify({'success': True, 'project': project.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Approve work error: {str(e)}")
        return jsonify({'error': 'Failed to approve work'}), 500

# ============ PROPOSALS ============

def validate_proposal(data):
    errors = {}
    cover_letter = (data.get('cover_letter') or '').strip()
    if len(cover_letter) < 20:
        errors['cover_letter'] = 'Cover letter must be at least 20 characters'
    if not parse_amount(data.get('proposed_budget')):
        errors['proposed_budget'] = 'Proposed budget must be greater than 0'
    if not (data.get('estimated_duration') or '').strip():
        errors['estimated_duration'] = 'Estimated duration is required'
    return errors

@app.route('/api/proposals', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def submit_proposal():
    """Freelancer applies to a project, paying the project's posting fee in credits"""
    try:
        data = request.json or {}
        errors = validate_proposal(data)
        if errors:
            return jsonify({'error': 'Invalid proposal', 'errors': errors}), 400

        project = Project.query.filter_by(id=data.get('project_id')).with_for_update().first()
        if not project:
            return jsonify({'error': 'Project not found'}), 404
        if project.status != 'open':
            return jsonify({'error': 'This project is no longer accepting proposals'}), 400

        user_id = session['user_id']
        if project.client_id == user_id:
            return jsonify({'error': 'You cannot submit a proposal to your own project'}), 400

        if Proposal.query.filter_by(project_id=project.id, freelancer_id=user_id).first():
            return jsonify({'error': 'You have already submitted a proposal for this project'}), 400

        freelancer = lock_profile(user_id)
        if not freelancer:
            return jsonify({'error': 'Profile not found'}), 404

        fee = project.posting_fee or 0
        previous_balance = freelancer.credit or 0
        if previous_balance < fee:
            return jsonify({
                'error': 'Insufficient credits',
                'required': fee,
                'available': previous_balance
            }), 400

        freelancer.credit = round(previous_balance - fee, 2)
        freelancer.updated_at = datetime.utcnow()

        proposal = Proposal(
            project_id=project.id,
            freelancer_id=user_id,
            cover_letter=sanitize_input(data['cover_letter'], max_length=5000),
            proposed_budget=parse_amount(data['proposed_budget']),
            estimated_duration=sanitize_input(data['estimated_duration'], max_length=50),
            fee_paid=fee,
            status='pending'
        )
        db.session.add(proposal)
        db.session.flush()

        if fee > 0:
            db.session.add(Transaction(
                transaction_id=generate_reference('PROPOSAL'),
                user_id=user_id,
                project_id=project.id,
                type='proposal_fee',
                direction='out',
                status='confirmed',
                amount=fee,
                payment_method='credit',
                description=f"Proposal fee for project {project.title}",
                previous_balance=previous_balance,
                new_balance=freelancer.credit,
                confirmed_at=datetime.utcnow()
            ))

        project.proposals_count = (project.proposals_count or 0) + 1
        notification_service.proposal_submitted(project, proposal)
        db.session.commit()

        return jsonify({
            'success': True,
            'proposal': proposal.to_dict(),
            'credit': freelancer.credit
        }), 201

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Submit proposal error: {str(e)}")
        return jsonify({'error': 'Failed to submit proposal'}), 500

@app.route('/api/projects/<int:project_id>/proposals', methods=['GET'])
@login_required
def get_project_proposals(project_id):
    project = Project.query.get_or_404(project_id)
    if project.client_id != session['user_id'] and not current_user_is_admin():
        return jsonify({'error': 'Only the project owner can view proposals'}), 403

    proposals = Proposal.query.filter_by(project_id=project_id).order_by(Proposal.created_at.asc()).all()
    return jsonify({'proposals': [p.to_dict() for p in proposals]}), 200

@app.route('/api/proposals/<int:proposal_id>/accept', methods=['POST'])
@login_required
def accept_proposal(proposal_id):
    """Client accepts a proposal; every other pending proposal is refunded"""
    try:
        proposal = Proposal.query.get_or_404(proposal_id)
        project = Project.query.filter_by(id=proposal.project_id).with_for_update().first()
        user_id = session['user_id']

        if project.client_id != user_id:
            return jsonify({'error': 'Only the project owner can accept proposals'}), 403
        if proposal.status != 'pending':
            return jsonify({'error': 'Can only accept pending proposals'}), 400
        if project.status != 'open':
            return jsonify({'error': 'This project is no longer accepting proposals'}), 400

        now = datetime.utcnow()
        proposal.status = 'accepted'
        proposal.processed_by = user_id
        proposal.processed_at = now

        project.status = 'in_progress'
        project.accepted_freelancer_id = proposal.freelancer_id
        project.accepted_proposal_id = proposal.id
        project.updated_at = now

        escrow = Escrow.query.filter_by(project_id=project.id, status='held').first()
        if escrow:
            escrow.freelancer_id = proposal.freelancer_id

        others = Proposal.query.filter(
            Proposal.project_id == project.id,
            Proposal.id != proposal.id,
            Proposal.status == 'pending'
        ).all()
        for other in others:
            refund_proposal(project, other, user_id)

        notification_service.proposal_accepted(project, proposal)
        db.session.commit()

        return jsonify({
            'success': True,
            'project': project.to_dict(),
            'rejected_count': len(others)
        }), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Accept proposal error: {str(e)}")
        return jsonify({'error': 'Failed to accept proposal'}), 500

@app.route('/api/proposals/<int:proposal_id>/reject', methods=['POST'])
@login_required
def reject_proposal(proposal_id):
    """Client rejects a proposal and the freelancer's fee is refunded"""
    try:
        proposal = Proposal.query.get_or_404(proposal_id)
        project = Project.query.get(proposal.project_id)

        if project.client_id != session['user_id']:
            return jsonify({'error': 'Only the project owner can reject proposals'}), 403
        if proposal.status != 'pending':
            return jsonify({'error': 'Can only reject pending proposals'}), 400

        refund_amount = refund_proposal(project, proposal, session['user_id'])
        db.session.commit()

        return jsonify({'success': True, 'refunded': refund_amount}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Reject proposal error: {str(e)}")
        return jsonify({'error': 'Failed to reject proposal'}), 500

def recount_proposals():
    """Resync Project.proposals_count with the proposal rows; returns the projects that changed"""
    counts = dict(
        db.session.query(Proposal.project_id, db.func.count(Proposal.id))
        .group_by(Proposal.project_id).all()
    )

    updated = []
    for project in Project.query.all():
        actual = counts.get(project.id, 0)
        if (project.proposals_count or 0) != actual:
            updated.append({'id': project.id, 'old': project.proposals_count or 0, 'new': actual})
            project.proposals_count = actual

    db.session.commit()
    return updated

@app.route('/api/admin/update-proposals-count', methods=['POST'])
@admin_required
def admin_update_proposals_count():
    try:
        updated = recount_proposals()
        return jsonify({'success': True, 'updated': len(updated), 'projects': updated}), 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update proposals count error: {str(e)}")
        return jsonify({'error': 'Failed to update proposal counts'}), 500

# ============ ORDERS ============

# (current status, new status) -> who may make the move
ORDER_TRANSITIONS = {
    ('pending', 'accepted'): 'freelancer',
    ('pending', 'cancelled'): 'freelancer',
    ('accepted', 'in_progress'): 'freelancer',
    ('in_progress', 'delivered'): 'freelancer',
    ('delivered', 'in_progress'): 'client',
    ('delivered', 'awaiting_payment'): 'client',
}

@app.route('/api/orders', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def create_order():
    """Buyer checks out a catalog package, paying the category's order fee in credits"""
    try:
        data = request.json or {}
        seller_id = parse_id(data.get('seller_id'))
        package_name = sanitize_input(data.get('package_name'), max_length=100)
        catalog_title = sanitize_input(data.get('catalog_title'), max_length=200)
        package_price = parse_amount(data.get('package_price')) or 0

        if not seller_id or not package_name or not data.get('category_id'):
            return jsonify({'error': 'Missing required fields'}), 400

        buyer_id = session['user_id']
        if seller_id == buyer_id:
            return jsonify({'error': 'You cannot order your own package'}), 400

        seller = db.session.get(Profile, seller_id)
        if not seller:
            return jsonify({'error': 'Seller not found'}), 404

        category = Category.query.get(data.get('category_id'))
        if not category:
            return jsonify({'error': 'Category not found'}), 404

        buyer = lock_profile(buyer_id)
        if not buyer:
            return jsonify({'error': 'Profile not found'}), 404

        order_fee = category.posting_fee or 0
        previous_balance = buyer.credit or 0
        if previous_balance < order_fee:
            return jsonify({
                'error': 'Insufficient credits. Please top up your account.',
                'required': order_fee,
                'available': previous_balance
            }), 400

        buyer.credit = round(previous_balance - order_fee, 2)
        buyer.updated_at = datetime.utcnow()

        order = Order(
            buyer_id=buyer_id,
            seller_id=seller_id,
            category_id=category.id,
            catalog_title=catalog_title,
            package_name=package_name,
            package_price=package_price,
            order_fee=order_fee,
            status='pending'
        )
        db.session.add(order)
        db.session.flush()

        db.session.add(Transaction(
            transaction_id=generate_reference('ORDER'),
            user_id=buyer_id,
            order_id=order.id,
            type='order_placement_fee',
            direction='out',
            status='confirmed',
            amount=order_fee,
            payment_method='credit',
            description=f"Order fee for {catalog_title or package_name}",
            previous_balance=previous_balance,
            new_balance=buyer.credit,
            confirmed_at=datetime.utcnow()
        ))

        notification_service.order_created(order, order_fee, buyer.credit)
        db.session.commit()

        return jsonify({'success': True, 'order': order.to_dict(), 'credit': buyer.credit}), 201

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create order error: {str(e)}")
        return jsonify({'error': 'Failed to create order'}), 500

@app.route('/api/orders', methods=['GET'])
@login_required
def get_my_orders():
    user_id = session['user_id']
    role = request.args.get('role', 'buyer')
    if role == 'seller':
        query = Order.query.filter_by(seller_id=user_id)
    else:
        query = Order.query.filter_by(buyer_id=user_id)
    orders = query.order_by(Order.created_at.desc()).all()
    return jsonify({'orders': [o.to_dict() for o in orders]}), 200

@app.route('/api/orders/<int:order_id>', methods=['GET'])
@login_required
def get_order(order_id):
    order = Order.query.get_or_404(order_id)
    if session['user_id'] not in (order.buyer_id, order.seller_id) and not current_user_is_admin():
        return jsonify({'error': 'Forbidden'}), 403
    return jsonify(order.to_dict()), 200

@app.route('/api/orders/<int:order_id>/status', methods=['PUT'])
@login_required
def update_order_status(order_id):
    try:
        order = Order.query.filter_by(id=order_id).with_for_update().first()
        if not order:
            return jsonify({'error': 'Order not found'}), 404

        user_id = session['user_id']
        if user_id == order.seller_id:
            actor_role = 'freelancer'
        elif user_id == order.buyer_id:
            actor_role = 'client'
        else:
            return jsonify({'error': 'Forbidden'}), 403

        new_status = (request.json or {}).get('status')
        allowed_role = ORDER_TRANSITIONS.get((order.status, new_status))
        if not allowed_role:
            return jsonify({'error': f'Cannot change order from {order.status} to {new_status}'}), 409
        if allowed_role != actor_role:
            return jsonify({'error': 'You are not allowed to make this change'}), 403

        now = datetime.utcnow()

        if new_status == 'cancelled' and (order.order_fee or 0) > 0:
            buyer = lock_profile(order.buyer_id)
            if buyer:
                previous_balance = buyer.credit or 0
                buyer.credit = round(previous_balance + order.order_fee, 2)
                buyer.updated_at = now
                db.session.add(Transaction(
                    transaction_id=generate_reference('ORDER'),
                    user_id=buyer.id,
                    order_id=order.id,
                    type='refund',
                    direction='in',
                    status='confirmed',
                    amount=order.order_fee,
                    payment_method='credit',
                    description=f"Order fee refund for {order.catalog_title or order.package_name}",
                    previous_balance=previous_balance,
                    new_balance=buyer.credit,
                    confirmed_at=now
                ))

        order.status = new_status
        order.updated_at = now
        notification_service.order_status_changed(order, new_status, actor_role)
        db.session.commit()

        return jsonify({'success': True, 'order': order.to_dict()}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update order status error: {str(e)}")
        return jsonify({'error': 'Failed to update order'}), 500

# ============ NOTIFICATIONS & WALLET ============

@app.route('/api/notifications', methods=['GET'])
@login_required
def get_notifications():
    user_id = session['user_id']
    unread_only = request.args.get('unread_only', 'false').lower() == 'true'

    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter_by(is_read=False)

    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(20).all()
    unread_count = Notification.query.filter_by(user_id=user_id, is_read=False).count()

    return jsonify({
        'notifications': [n.to_dict() for n in notifications],
        'unread_count': unread_count
    }), 200

@app.route('/api/notifications/mark-read', methods=['POST'])
@login_required
def mark_notifications_read():
    try:
        user_id = session['user_id']
        ids = (request.get_json(silent=True) or {}).get('ids')

        query = Notification.query.filter_by(user_id=user_id, is_read=False)
        if ids:
            query = query.filter(Notification.id.in_(ids))

        updated = query.update({'is_read': True, 'read_at': datetime.utcnow()}, synchronize_session=False)
        db.session.commit()

        return jsonify({'success': True, 'updated': updated}), 200

    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Mark notifications read error: {str(e)}")
        return jsonify({'error': 'Failed to update notifications'}), 500

@app.route('/api/wallet', methods=['GET'])
@login_required
def get_wallet():
    user = db.session.get(Profile, session['user_id'])
    if not user:
        return jsonify({'error': 'Profile not found'}), 404

    held = db.session.query(db.func.coalesce(db.func.sum(Escrow.amount), 0.0)).filter(
        Escrow.client_id == user.id,
        Escrow.status == 'held'
    ).scalar()

    return jsonify({
        'credit': user.credit or 0,
        'total_earned': user.total_earned or 0,
        'total_spent': user.total_spent or 0,
        'projects_completed': user.projects_completed or 0,
        'orders_completed': user.orders_completed or 0,
        'held_in_escrow': round(held or 0, 2),
        'currency': CURRENCY
    }), 200

@app.route('/api/transactions', methods=['GET'])
@login_required
def get_my_transactions():
    query = Transaction.query.filter_by(user_id=session['user_id'])
    if request.args.get('type'):
        query = query.filter(Transaction.type == request.args['type'])
    if request.args.get('status'):
        query = query.filter(Transaction.status == request.args['status'])
    transactions = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(100).all()
    return jsonify({'transactions': [t.to_dict() for t in transactions]}), 200

# ============ DATABASE ============

DEFAULT_CATEGORIES = [
    # slug, English, Lao, posting fee
    ('marketing', 'Marketing', 'ການຕະຫຼາດ', 10),
    ('copy-writing', 'Copy Writing', 'ການຂຽນບົດຄວາມ', 10),
    ('design', 'Design', 'ອອກແບບ', 20),
    ('web-developer', 'Web Developer', 'ພັດທະນາເວັບໄຊ', 25),
    ('mobile-developer', 'Mobile Developer', 'ພັດທະນາແອັບມືຖື', 25),
]

def seed_categories():
    """Add any default category that is missing"""
    added = 0
    for slug, name_en, name_lo, fee in DEFAULT_CATEGORIES:
        if not Category.query.filter_by(slug=slug).first():
            db.session.add(Category(slug=slug, name_en=name_en, name_lo=name_lo, posting_fee=fee))
            added += 1
    if added:
        db.session.commit()
    return added

_db_initialized = False

def init_database():
    """Create tables and default categories"""
    global _db_initialized
    if _db_initialized:
        return

    try:
        db.create_all()
        added = seed_categories()
        if added:
            print(f"Added {added} default categories")
        _db_initialized = True
    except Exception as e:
        print(f"Database initialization error: {e}")
        _db_initialized = True  # Mark as done to avoid retry loops

with app.app_context():
    init_database()

if app.config['ENABLE_SCHEDULER']:
    from scheduled_jobs import init_scheduler
    init_scheduler(app, reconciler, ReconciliationTask)

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
