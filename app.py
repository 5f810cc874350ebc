# pyright: reportMissingImports=false, reportCallIssue=false, reportAttributeAccessIssue=false, reportOptionalMemberAccess=false, reportArgumentType=false
from flask import Flask, request, jsonify, Blueprint, send_file, send_from_directory, g, Response
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_cors import CORS
from flask_jwt_extended import JWTManager, create_access_token, get_jwt, get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from jwt.exceptions import ExpiredSignatureError, PyJWTError
from sqlalchemy import or_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from functools import wraps
from io import BytesIO
from uuid import uuid4
import ipaddress
import os
import secrets
import time
import pandas as pd
from werkzeug.utils import secure_filename
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.exceptions import HTTPException
from models.telegram import TelegramService, TelegramError
from models.security import (
    SECURITY_HEADERS, LoginAttemptTracker, sanitize_payload, sanitize_string,
    detect_suspicious_activity, validate_token_format, check_admin_whitelist, log_security_event,
)

# Import Honeybadger conditionally to handle compatibility issues
try:
    from honeybadger.contrib import FlaskHoneybadger
    has_honeybadger = True
except (ImportError, AttributeError) as e:
    print(f"Warning: Honeybadger import failed: {e}")
    has_honeybadger = False

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv('DATABASE_URL', 'sqlite:///mustawdaa-store.sqlite3')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
is_debug_env = os.getenv('FLASK_DEBUG', '1') in ('1', 'true', 'True')
secret_key = os.getenv('SECRET_KEY')
if not secret_key:
    if is_debug_env:
        secret_key = 'dev-only-secret-key-change-me'
    else:
        raise RuntimeError('SECRET_KEY environment variable is required in non-debug mode')

jwt_secret_key = os.getenv('JWT_SECRET_KEY')
if not jwt_secret_key:
    if is_debug_env:
        jwt_secret_key = 'dev-only-jwt-secret-key-change-me-please'
    else:
        raise RuntimeError('JWT_SECRET_KEY environment variable is required in non-debug mode')

app.config['SECRET_KEY'] = secret_key
app.config['JWT_SECRET_KEY'] = jwt_secret_key
app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(hours=8)
app.config['JWT_TOKEN_LOCATION'] = ['headers']
app.config['RATELIMIT_ENABLED'] = os.getenv('RATELIMIT_ENABLED', '1') in ('1', 'true', 'True')
app.config['RATELIMIT_STORAGE_URI'] = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')
app.config['MAX_CONTENT_LENGTH'] = 10 * 1024 * 1024
app.config['MAX_IMAGE_SIZE'] = 5 * 1024 * 1024
app.config['CART_ITEM_TTL_HOURS'] = int(os.getenv('CART_ITEM_TTL_HOURS', '72'))
app.config['ADMIN_IP_WHITELIST'] = [ip.strip() for ip in os.getenv('ADMIN_IP_WHITELIST', '').split(',') if ip.strip()]
app.logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())
app.json.ensure_ascii = False

UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', os.path.join(app.root_path, 'uploads'))
os.makedirs(UPLOAD_FOLDER, exist_ok=True)
app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}


def utc_now():
    """Return current UTC time as a naive datetime (no timezone info).
    SQLite does not preserve timezone info, so we store naive UTC consistently."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# Configure Honeybadger only if successfully imported and a key is set
if has_honeybadger and os.getenv('HONEYBADGER_API_KEY'):
    app.config['HONEYBADGER_ENVIRONMENT'] = os.getenv('HONEYBADGER_ENVIRONMENT', 'production')
    app.config['HONEYBADGER_API_KEY'] = os.getenv('HONEYBADGER_API_KEY', '')
    app.config['HONEYBADGER_PARAMS_FILTERS'] = 'password, secret, token, authorization'
    try:
        FlaskHoneybadger(app, report_exceptions=True)
        app.logger.info("Honeybadger initialized successfully")
    except Exception as e:
        app.logger.warning(f"Could not initialize Honeybadger: {e}")

cors_origins = [origin.strip() for origin in os.getenv('CORS_ALLOWED_ORIGINS', '').split(',') if origin.strip()]
CORS(app, resources={r"/api/*": {"origins": cors_origins or "*"}})

db = SQLAlchemy(app)
migrate = Migrate(app, db)
jwt_manager = JWTManager(app)
limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    default_limits=["1000 per 5 minutes"],
)
telegram_service = TelegramService(os.getenv('TELEGRAM_BOT_TOKEN'), os.getenv('TELEGRAM_CHAT_ID'))
login_attempts = LoginAttemptTracker()

ORDER_STATUSES = {
    'pending': 'قيد الانتظار',
    'confirmed': 'مؤكد',
    'shipped': 'تم الشحن',
    'delivered': 'تم التوصيل',
    'cancelled': 'ملغي',
}

PRODUCT_SORTS = ('newest', 'price-asc', 'price-desc', 'name-asc', 'name-desc')


def money(value):
    """Format an amount the way the storefront expects it: a string with two decimals."""
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(Decimal('0.01')))


def iso(value):
    return value.isoformat() if value else None

# models
class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), nullable=False, unique=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='customer')
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def serialize(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'role': self.role,
            'createdAt': iso(self.created_at),
        }

class Category(db.Model):
    __tablename__ = 'categories'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    name_ar = db.Column(db.String(100), nullable=False)
    slug = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    description_ar = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    products = db.relationship('Product', backref='category', lazy=True)

    def serialize(self):
        return {
            'id': self.id,
            'name': self.name,
            'nameAr': self.name_ar,
            'slug': self.slug,
            'description': self.description,
            'descriptionAr': self.description_ar,
            'isActive': self.is_active,
        }

class Product(db.Model):
    __tablename__ = 'products'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    name_ar = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    description_ar = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    original_price = db.Column(db.Numeric(10, 2), nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey('categories.id'), nullable=True)
    images = db.Column(db.JSON, nullable=False, default=list)
    sku = db.Column(db.String(100), nullable=True, unique=True)
    stock = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_featured = db.Column(db.Boolean, nullable=False, default=False)
    tags = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def serialize(self):
        return {
            'id': self.id,
            'name': self.name,
            'nameAr': self.name_ar,
            'description': self.description,
            'descriptionAr': self.description_ar,
            'price': money(self.price),
            'originalPrice': money(self.original_price),
            'categoryId': self.category_id,
            'images': self.images or [],
            'sku': self.sku,
            'stock': self.stock,
            'isActive': self.is_active,
            'isFeatured': self.is_featured,
            'tags': self.tags or [],
            'createdAt': iso(self.created_at),
        }

class CartItem(db.Model):
    __tablename__ = 'cart_items'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(100), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    added_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    product = db.relationship('Product', backref='cart_items', lazy=True)

    def serialize(self, with_product=True):
        data = {
            'id': self.id,
            'sessionId': self.session_id,
            'productId': self.product_id,
            'quantity': self.quantity,
            'addedAt': iso(self.added_at),
        }
        if with_product and self.product is not None:
            data['product'] = self.product.serialize()
        return data

class Order(db.Model):
    __tablename__ = 'orders'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(100), nullable=False, index=True)
    customer_name = db.Column(db.String(200), nullable=False)
    customer_phone = db.Column(db.String(50), nullable=False)
    customer_email = db.Column(db.String(255), nullable=True)
    shipping_address = db.Column(db.Text, nullable=False)
    city = db.Column(db.String(100), nullable=False)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')
    items = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def serialize(self):
        return {
            'id': self.id,
            'sessionId': self.session_id,
            'customerName': self.customer_name,
            'customerPhone': self.customer_phone,
            'customerEmail': self.customer_email,
            'shippingAddress': self.shipping_address,
            'city': self.city,
            'totalAmount': money(self.total_amount),
            'status': self.status,
            'items': self.items or [],
            'createdAt': iso(self.created_at),
        }

class StoreSetting(db.Model):
    __tablename__ = 'store_settings'
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), nullable=False, unique=True)
    value = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def serialize(self):
        return {'id': self.id, 'key': self.key, 'value': self.value, 'updatedAt': iso(self.updated_at)}

class CustomerActivity(db.Model):
    __tablename__ = 'customer_activity'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(100), nullable=False, index=True)
    action = db.Column(db.String(50), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('products.id'), nullable=True)
    # "metadata" is reserved on declarative models
    details = db.Column('metadata', db.JSON, nullable=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=utc_now)

    def serialize(self):
        return {
            'id': self.id,
            'sessionId': self.session_id,
            'action': self.action,
            'productId': self.product_id,
            'metadata': self.details,
            'timestamp': iso(self.timestamp),
        }

class VisitorStats(db.Model):
    __tablename__ = 'visitor_stats'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(100), nullable=False, unique=True)
    ip_address = db.Column(db.String(64), nullable=True)
    country = db.Column(db.String(100), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    user_agent = db.Column(db.Text, nullable=True)
    first_visit = db.Column(db.DateTime, nullable=False, default=utc_now)
    last_visit = db.Column(db.DateTime, nullable=False, default=utc_now)
    page_views = db.Column(db.Integer, nullable=False, default=1)

    def serialize(self):
        return {
            'id': self.id,
            'sessionId': self.session_id,
            'ipAddress': self.ip_address,
            'country': self.country,
            'city': self.city,
            'userAgent': self.user_agent,
            'firstVisit': iso(self.first_visit),
            'lastVisit': iso(self.last_visit),
            'pageViews': self.page_views,
        }


class DatabaseStorage:
    """
    Thin persistence layer over the SQLAlchemy models.

    Every method maps to one entity operation and commits its own work;
    callers are responsible for rolling back the session on errors.
    """

    # Users
    def get_user(self, user_id):
        return db.session.get(User, user_id)

    def get_user_by_username(self, username):
        return User.query.filter_by(username=username).first()

    def has_users(self):
        return db.session.query(User.id).first() is not None

    def create_user(self, username, password, email=None, role='customer'):
        user = User(
            username=username,
            email=email or f'{username}@system.local',
            password=generate_password_hash(password),
            role=role,
        )
        db.session.add(user)
        db.session.commit()
        return user

    def authenticate_admin(self, username, password):
        user = self.get_user_by_username(username)
        if not user or user.role != 'admin':
            return None
        return user if check_password_hash(user.password, password) else None

    # Categories
    def get_categories(self):
        return Category.query.order_by(Category.name).all()

    def get_category(self, category_id):
        return db.session.get(Category, category_id)

    def create_category(self, values):
        category = Category(**values)
        db.session.add(category)
        db.session.commit()
        return category

    def update_category(self, category_id, values):
        category = self.get_category(category_id)
        if not category:
            return None
        for column, value in values.items():
            setattr(category, column, value)
        db.session.commit()
        return category

    def delete_category(self, category_id):
        category = self.get_category(category_id)
        if not category:
            return False
        Product.query.filter_by(category_id=category_id).update({'category_id': None})
        db.session.delete(category)
        db.session.commit()
        return True

    # Products
    def get_products(self, category_id=None, search=None, featured=None, active=None,
                     min_price=None, max_price=None, sort='newest'):
        query = Product.query
        if category_id:
            query = query.filter(Product.category_id == category_id)
        if search:
            pattern = f'%{search}%'
            query = query.filter(or_(Product.name.ilike(pattern), Product.name_ar.ilike(pattern)))
        if featured:
            query = query.filter(Product.is_featured.is_(True))
        if active is not None:
            query = query.filter(Product.is_active.is_(active))
        if min_price is not None:
            query = query.filter(Product.price >= min_price)
        if max_price is not None:
            query = query.filter(Product.price <= max_price)

        if sort == 'price-asc':
            query = query.order_by(Product.price.asc(), Product.id.asc())
        elif sort == 'price-desc':
            query = query.order_by(Product.price.desc(), Product.id.desc())
        elif sort == 'name-asc':
            query = query.order_by(Product.name.asc())
        elif sort == 'name-desc':
            query = query.order_by(Product.name.desc())
        else:
            query = query.order_by(Product.created_at.desc(), Product.id.desc())
        return query.all()

    def get_product(self, product_id):
        return db.session.get(Product, product_id)

    def create_product(self, values):
        product = Product(**values)
        db.session.add(product)
        db.session.commit()
        return product

    def update_product(self, product_id, values):
        product = self.get_product(product_id)
        if not product:
            return None
        for column, value in values.items():
            setattr(product, column, value)
        db.session.commit()
        return product

    def delete_product(self, product_id):
        """Delete a product together with the cart and activity rows that reference it."""
        try:
            CartItem.query.filter_by(product_id=product_id).delete()
            CustomerActivity.query.filter_by(product_id=product_id).delete()
            deleted = Product.query.filter_by(id=product_id).delete()
            db.session.commit()
            app.logger.info(f'Product {product_id} deletion completed successfully')
            return deleted > 0
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.error(f'Error deleting product {product_id}: {str(e)}')
            return False

    # Cart
    def get_cart_items(self, session_id):
        return (
            CartItem.query.join(Product)
            .filter(CartItem.session_id == session_id)
            .order_by(CartItem.added_at.asc(), CartItem.id.asc())
            .all()
        )

    def get_cart_item(self, item_id):
        return db.session.get(CartItem, item_id)

    def find_cart_item(self, session_id, product_id):
        return CartItem.query.filter_by(session_id=session_id, product_id=product_id).first()

    def add_to_cart(self, session_id, product_id, quantity=1):
        cart_item = self.find_cart_item(session_id, product_id)
        if cart_item:
            cart_item.quantity = cart_item.quantity + quantity
            cart_item.added_at = utc_now()
        else:
            cart_item = CartItem(session_id=session_id, product_id=product_id, quantity=quantity, added_at=utc_now())
            db.session.add(cart_item)
        db.session.commit()
        return cart_item

    def update_cart_item(self, item_id, quantity):
        cart_item = self.get_cart_item(item_id)
        if not cart_item:
            return None
        cart_item.quantity = quantity
        db.session.commit()
        return cart_item

    def remove_from_cart(self, item_id):
        deleted = CartItem.query.filter_by(id=item_id).delete()
        db.session.commit()
        return deleted > 0

    def clear_cart(self, session_id):
        CartItem.query.filter_by(session_id=session_id).delete()
        db.session.commit()

    def cleanup_expired_cart_items(self, max_age_hours):
        """Delete cart items older than ``max_age_hours``; returns how many were removed."""
        expiration_time = utc_now() - timedelta(hours=max_age_hours)
        deleted = CartItem.query.filter(CartItem.added_at < expiration_time).delete()
        db.session.commit()
        return deleted

    # Orders
    def get_orders(self):
        return Order.query.order_by(Order.created_at.desc(), Order.id.desc()).all()

    def get_order(self, order_id):
        return db.session.get(Order, order_id)

    def get_orders_by_session(self, session_id):
        return Order.query.filter_by(session_id=session_id).order_by(Order.created_at.desc(), Order.id.desc()).all()

    def create_order(self, customer, lines):
        """
        Persist an order for already validated ``(product, quantity)`` lines.

        Item prices are snapshotted, stock is decremented and the session's
        cart is cleared in the same commit.
        """
        items = []
        total = Decimal('0')
        for product, quantity in lines:
            price = Decimal(str(product.price))
            total += price * quantity
            items.append({
                'productId': product.id,
                'name': product.name,
                'nameAr': product.name_ar,
                'price': money(price),
                'quantity': quantity,
                'image': (product.images or [None])[0],
            })
            product.stock = (product.stock or 0) - quantity

        order = Order(
            session_id=customer['session_id'],
            customer_name=customer['customer_name'],
            customer_phone=customer['customer_phone'],
            customer_email=customer.get('customer_email'),
            shipping_address=customer['shipping_address'],
            city=customer['city'],
            total_amount=total,
            status='pending',
            items=items,
        )
        db.session.add(order)
        CartItem.query.filter_by(session_id=customer['session_id']).delete()
        db.session.commit()
        return order

    def update_order_status(self, order_id, status):
        order = self.get_order(order_id)
        if not order:
            return None
        if status == 'cancelled' and order.status != 'cancelled':
            self._restock(order)
        order.status = status
        db.session.commit()
        return order

    def cancel_order(self, order_id):
        return self.update_order_status(order_id, 'cancelled')

    def _restock(self, order):
        for item in order.items or []:
            product_id = item.get('productId')
            product = db.session.get(Product, product_id) if product_id else None
            if product:
                product.stock = (product.stock or 0) + int(item.get('quantity') or 0)

    # Store Settings
    def get_store_settings(self):
        return StoreSetting.query.order_by(StoreSetting.key).all()

    def get_store_setting(self, key):
        return StoreSetting.query.filter_by(key=key).first()

    def update_store_setting(self, key, value):
        setting = self.get_store_setting(key)
        if setting:
            setting.value = value
            setting.updated_at = utc_now()
        else:
            setting = StoreSetting(key=key, value=value, updated_at=utc_now())
            db.session.add(setting)
        db.session.commit()
        return setting

    # Customer Activity
    def log_activity(self, session_id, action, product_id=None, metadata=None):
        activity = CustomerActivity(session_id=session_id, action=action, product_id=product_id, details=metadata)
        db.session.add(activity)
        db.session.commit()
        return activity

    def get_recent_activity(self, limit=100):
        return (
            CustomerActivity.query
            .order_by(CustomerActivity.timestamp.desc(), CustomerActivity.id.desc())
            .limit(limit)
            .all()
        )

    def get_activity_by_session(self, session_id):
        return (
            CustomerActivity.query.filter_by(session_id=session_id)
            .order_by(CustomerActivity.timestamp.desc(), CustomerActivity.id.desc())
            .all()
        )

    # Analytics
    def get_stats(self):
        total_sales = (
            db.session.query(func.coalesce(func.sum(Order.total_amount), 0))
            .filter(Order.status != 'cancelled')
            .scalar()
        )
        total_orders = db.session.query(func.count(Order.id)).scalar()
        total_products = db.session.query(func.count(Product.id)).scalar()
        total_customers = db.session.query(func.count(func.distinct(CustomerActivity.session_id))).scalar()
        return {
            'totalSales': money(total_sales or 0),
            'totalOrders': total_orders or 0,
            'totalProducts': total_products or 0,
            'totalCustomers': total_customers or 0,
        }

    def get_customers(self, active_days=30):
        """Aggregate orders and activity per cart session into a customer list."""
        customers = {}
        for order in Order.query.order_by(Order.created_at.asc(), Order.id.asc()).all():
            customer = customers.setdefault(order.session_id, {
                'sessionId': order.session_id,
                'customerName': None,
                'customerPhone': None,
                'customerEmail': None,
                'totalOrders': 0,
                'totalSpent': Decimal('0'),
                'lastActivity': None,
            })
            customer['totalOrders'] += 1
            if order.status != 'cancelled':
                customer['totalSpent'] += Decimal(str(order.total_amount))
            if customer['lastActivity'] is None or order.created_at >= customer['lastActivity']:
                customer['lastActivity'] = order.created_at
                customer['customerName'] = order.customer_name
                customer['customerPhone'] = order.customer_phone
                customer['customerEmail'] = order.customer_email

        activity_rows = (
            db.session.query(CustomerActivity.session_id, func.max(CustomerActivity.timestamp))
            .group_by(CustomerActivity.session_id)
            .all()
        )
        for session_id, last_seen in activity_rows:
            customer = customers.setdefault(session_id, {
                'sessionId': session_id,
                'customerName': None,
                'customerPhone': None,
                'customerEmail': None,
                'totalOrders': 0,
                'totalSpent': Decimal('0'),
                'lastActivity': last_seen,
            })
            if last_seen and (customer['lastActivity'] is None or last_seen > customer['lastActivity']):
                customer['lastActivity'] = last_seen

        active_since = utc_now() - timedelta(days=active_days)
        result = []
        for customer in customers.values():
            last_activity = customer['lastActivity']
            is_active = customer['totalOrders'] > 0 and last_activity is not None and last_activity >= active_since
            result.append({
                **customer,
                'totalSpent': money(customer['totalSpent']),
                'lastActivity': iso(last_activity),
                'status': 'active' if is_active else 'inactive',
            })
        result.sort(key=lambda c: c['lastActivity'] or '', reverse=True)
        return result

    def get_sales_report(self, months=6, top=5):
        orders = Order.query.order_by(Order.created_at.asc(), Order.id.asc()).all()
        now = pd.Timestamp(utc_now())
        periods = pd.period_range(end=now.to_period('M'), periods=months, freq='M')
        if not orders:
            return {
                'totalSales': money(0),
                'totalOrders': 0,
                'averageOrderValue': money(0),
                'newOrders': 0,
                'ordersByStatus': {},
                'topProducts': [],
                'monthlySales': [{'month': str(p), 'sales': money(0), 'orders': 0} for p in periods],
            }

        df = pd.DataFrame([{
            'id': order.id,
            'status': order.status,
            'total': float(order.total_amount),
            'created_at': order.created_at,
        } for order in orders])
        df['month'] = pd.to_datetime(df['created_at']).dt.to_period('M')
        confirmed = df[df['status'] != 'cancelled']

        total_sales = float(confirmed['total'].sum())
        average = total_sales / len(confirmed) if len(confirmed) else 0
        new_orders = int((pd.to_datetime(df['created_at']) >= now - pd.Timedelta(days=1)).sum())
        by_status = {status: int(count) for status, count in df['status'].value_counts().items()}

        lines = [
            {'productId': item.get('productId'), 'name': item.get('nameAr') or item.get('name'), 'quantity': int(item.get('quantity') or 0)}
            for order in orders if order.status != 'cancelled'
            for item in (order.items or [])
        ]
        top_products = []
        if lines:
            items_df = pd.DataFrame(lines)
            # one row per product; the name comes from its latest order
            grouped = (
                items_df.groupby('productId', as_index=False)
                .agg(quantity=('quantity', 'sum'), name=('name', 'last'))
                .sort_values('quantity', ascending=False, kind='stable')
                .head(top)
            )
            top_products = [
                {'productId': int(row.productId), 'name': row.name, 'quantity': int(row.quantity)}
                for row in grouped.itertuples(index=False)
            ]

        monthly = []
        for period in periods:
            month_orders = df[df['month'] == period]
            month_sales = month_orders[month_orders['status'] != 'cancelled']['total'].sum()
            monthly.append({'month': str(period), 'sales': money(round(float(month_sales), 2)), 'orders': int(len(month_orders))})

        return {
            'totalSales': money(round(total_sales, 2)),
            'totalOrders': int(len(df)),
            'averageOrderValue': money(round(average, 2)),
            'newOrders': new_orders,
            'ordersByStatus': by_status,
            'topProducts': top_products,
            'monthlySales': monthly,
        }

    # Visitor tracking
    def track_visitor(self, session_id, ip_address=None, country=None, city=None, user_agent=None):
        visitor = VisitorStats.query.filter_by(session_id=session_id).first()
        if visitor:
            visitor.last_visit = utc_now()
            visitor.page_views = (visitor.page_views or 0) + 1
        else:
            visitor = VisitorStats(
                session_id=session_id,
                ip_address=ip_address,
                country=country,
                city=city,
                user_agent=user_agent,
                first_visit=utc_now(),
                last_visit=utc_now(),
                page_views=1,
            )
            db.session.add(visitor)
        db.session.commit()
        return visitor

    def get_visitor_stats(self):
        total = db.session.query(func.count(VisitorStats.id)).scalar() or 0
        today_start = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
        today = (
            db.session.query(func.count(VisitorStats.id))
            .filter(VisitorStats.first_visit >= today_start)
            .scalar()
        ) or 0
        visitor_count = func.count(VisitorStats.id)
        country_rows = (
            db.session.query(VisitorStats.country, visitor_count)
            .filter(VisitorStats.country.isnot(None))
            .group_by(VisitorStats.country)
            .order_by(visitor_count.desc())
            .limit(10)
            .all()
        )
        return {
            'totalVisitors': total,
            'todayVisitors': today,
            'countryCounts': [{'country': country or 'Unknown', 'count': count} for country, count in country_rows],
        }


storage = DatabaseStorage()

api = Blueprint('api', __name__)
admin_api = Blueprint('admin_api', __name__)


def client_ip():
    return request.remote_addr or 'unknown'


def get_json_body():
    """Return the sanitized JSON body, or an empty dict for non-JSON requests."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return {}
    password = data.get('password')
    data = sanitize_payload(data)
    if password is not None:
        data['password'] = password
    return data


def query_arg(name, default=None):
    value = request.args.get(name)
    if value is None:
        return default
    return sanitize_string(value).strip()


def parse_decimal(value):
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def parse_int(value, minimum=None):
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    if isinstance(value, float) and value != number:
        return None
    if minimum is not None and number < minimum:
        return None
    return number


def parse_bool_arg(value):
    if value is None or value == '':
        return None
    return value.lower() in ('1', 'true', 'yes')


def validation_error(message, errors):
    return jsonify({'message': message, 'errors': errors}), 400


def missing_fields(data, fields):
    return [
        {'field': field, 'message': 'هذا الحقل مطلوب'}
        for field in fields
        if data.get(field) is None or (isinstance(data.get(field), str) and not data.get(field).strip())
    ]


def record_activity(session_id, action, product_id=None, metadata=None):
    """Log a customer activity row without letting a logging failure break the caller."""
    try:
        return storage.log_activity(session_id, action, product_id=product_id, metadata=metadata)
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error logging activity {action} for {session_id}: {str(e)}')
        return None


def detect_location(ip):
    # local/internal addresses are the shop's own network in Ramadi
    if ip == 'unknown':
        return 'العراق', 'الرمادي'
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return 'غير معروف', 'غير معروف'
    if address.is_private or address.is_loopback:
        return 'العراق', 'الرمادي'
    return 'غير معروف', 'غير معروف'


def allowed_file(filename):
    return '.' in filename and \
           filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def save_uploaded_file(file):
    filename = secure_filename(file.filename)
    extension = filename.rsplit('.', 1)[1].lower()
    unique_filename = f"{uuid4().hex}.{extension}"
    file.save(os.path.join(app.config['UPLOAD_FOLDER'], unique_filename))
    return f"/uploads/{unique_filename}"

# auth
def generate_token(user):
    return create_access_token(
        identity=str(user.id),
        additional_claims={
            'username': user.username,
            'role': 'admin',
            'sessionId': secrets.token_hex(8),
        },
    )


def current_admin():
    """Return the admin behind the request's bearer token, or None."""
    try:
        verify_jwt_in_request(optional=True)
    except (JWTExtendedException, PyJWTError):
        return None
    claims = get_jwt()
    if not claims or claims.get('role') != 'admin':
        return None
    return {'id': int(get_jwt_identity()), 'username': claims.get('username'), 'role': claims.get('role')}


def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        ip = client_ip()
        if not check_admin_whitelist(ip, app.config['ADMIN_IP_WHITELIST']):
            log_security_event('ADMIN_IP_REJECTED', {'ip': ip, 'path': request.path})
            return jsonify({'message': 'غير مصرح بالوصول'}), 403

        auth_header = request.headers.get('Authorization', '')
        token = auth_header[7:] if auth_header.startswith('Bearer ') else None
        if not token:
            return jsonify({'message': 'رمز المصادقة مطلوب'}), 401
        if not validate_token_format(token):
            return jsonify({'message': 'رمز مصادقة غير صالح'}), 401

        try:
            verify_jwt_in_request()
        except ExpiredSignatureError:
            return jsonify({'message': 'انتهت صلاحية الجلسة'}), 401
        except (JWTExtendedException, PyJWTError) as e:
            app.logger.warning(f'Token verification error: {str(e)}')
            return jsonify({'message': 'رمز مصادقة غير صالح'}), 401

        claims = get_jwt()
        if claims.get('role') != 'admin':
            return jsonify({'message': 'غير مصرح بالوصول'}), 401

        user_id = parse_int(get_jwt_identity())
        user = storage.get_user(user_id) if user_id else None
        if not user or user.role != 'admin':
            return jsonify({'message': 'غير مصرح بالوصول'}), 401

        g.admin = {'id': user.id, 'username': user.username, 'role': user.role}
        return f(*args, **kwargs)
    return decorated_function

# request hooks
@app.before_request
def security_monitor():
    g.request_started = time.perf_counter()
    body = request.get_json(silent=True) if request.is_json else None
    query = request.args.to_dict(flat=False)
    if detect_suspicious_activity(request.path, body=body, query=query):
        log_security_event('SUSPICIOUS_ACTIVITY', {
            'ip': client_ip(),
            'url': request.full_path,
            'method': request.method,
            'userAgent': request.headers.get('User-Agent'),
        })
        return jsonify({'message': 'تم رفض الطلب لأسباب أمنية'}), 403


@app.after_request
def apply_security_headers(response):
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    response.headers.pop('Server', None)
    response.headers.pop('X-Powered-By', None)

    if request.path.startswith('/api'):
        started = g.get('request_started')
        duration = int((time.perf_counter() - started) * 1000) if started else 0
        log_line = f'{request.method} {request.path} {response.status_code} in {duration}ms'
        if len(log_line) > 80:
            log_line = log_line[:79] + '…'
        app.logger.info(log_line)
    return response

# admin auth
@admin_api.route('/admin/check-users')
def check_users():
    try:
        return jsonify(storage.has_users())
    except SQLAlchemyError as e:
        app.logger.error(f'Error checking users: {str(e)}')
        return jsonify(False)


@admin_api.route('/admin/create-first-user', methods=['POST'])
def create_first_user():
    try:
        if storage.has_users():
            return jsonify({'message': 'يوجد مستخدمين بالفعل في النظام'}), 400

        data = get_json_body()
        username = (data.get('username') or '').strip()
        password = data.get('password') or ''
        if not username or not password:
            return jsonify({'message': 'اسم المستخدم وكلمة المرور مطلوبان'}), 400

        user = storage.create_user(username, password, role='admin')
        token = generate_token(user)
        login_attempts.clear_all()
        app.logger.info(f'First admin user created: {user.username}')
        return jsonify({'token': token, 'message': 'تم إنشاء الحساب بنجاح'})
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error creating first user: {str(e)}')
        return jsonify({'message': 'خطأ في إنشاء الحساب'}), 500


@admin_api.route('/admin/clear-blocks', methods=['POST'])
@admin_required
def clear_blocks():
    login_attempts.clear_all()
    app.logger.info(f"Login blocks cleared by {g.admin['username']}")
    return jsonify({'message': 'تم تنظيف قائمة IP المحظورة'})


@admin_api.route('/admin/login', methods=['POST'])
@limiter.limit("20 per minute")
def admin_login():
    ip = client_ip()
    if login_attempts.is_blocked(ip):
        log_security_event('LOGIN_BLOCKED', {'ip': ip})
        return jsonify({'message': 'تم حظر محاولات الدخول مؤقتاً بسبب كثرة المحاولات الفاشلة. حاول مرة أخرى بعد 15 دقيقة'}), 429

    data = get_json_body()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    if not username or not isinstance(password, str) or not password:
        return jsonify({'message': 'بيانات غير صحيحة'}), 400

    try:
        admin = storage.authenticate_admin(username, password)
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Login error: {str(e)}')
        return jsonify({'message': 'حدث خطأ أثناء تسجيل الدخول'}), 500

    if not admin:
        attempts = login_attempts.record_failure(ip)
        log_security_event('LOGIN_FAILED', {'ip': ip, 'username': username, 'attempts': attempts})
        return jsonify({'message': 'اسم المستخدم أو كلمة المرور غير صحيحة'}), 401

    login_attempts.clear(ip)
    token = generate_token(admin)
    app.logger.info(f'Admin login successful: {admin.username} from IP: {ip}')
    return jsonify({'token': token, 'user': {'id': admin.id, 'username': admin.username, 'role': admin.role}})


@admin_api.route('/admin/logout', methods=['POST'])
@admin_required
def admin_logout():
    login_attempts.clear(client_ip())
    app.logger.info(f"Admin logout successful: {g.admin['username']} from IP: {client_ip()}")
    return jsonify({'message': 'تم تسجيل الخروج بنجاح'})


@admin_api.route('/admin/verify')
@admin_required
def admin_verify():
    return jsonify({'user': g.admin})

# categories
CATEGORY_FIELDS = {
    'name': 'name',
    'nameAr': 'name_ar',
    'slug': 'slug',
    'description': 'description',
    'descriptionAr': 'description_ar',
    'isActive': 'is_active',
}


def parse_category_payload(data, partial=False):
    errors = [] if partial else missing_fields(data, ['name', 'nameAr', 'slug'])
    flagged = {error['field'] for error in errors}
    values = {}
    for key, column in CATEGORY_FIELDS.items():
        if key not in data or key in flagged:
            continue
        value = data[key]
        if key == 'isActive':
            if not isinstance(value, bool):
                errors.append({'field': key, 'message': 'قيمة غير صالحة'})
                continue
            values[column] = value
        elif value is None and key in ('description', 'descriptionAr'):
            values[column] = None
        elif not isinstance(value, str) or (key in ('name', 'nameAr', 'slug') and not value.strip()):
            errors.append({'field': key, 'message': 'قيمة غير صالحة'})
        else:
            values[column] = value.strip()
    return values, errors


@api.route('/categories')
def get_categories():
    try:
        return jsonify([category.serialize() for category in storage.get_categories()])
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching categories: {str(e)}')
        return jsonify({'message': 'فشل في جلب التصنيفات'}), 500


@admin_api.route('/categories', methods=['POST'])
@admin_required
def create_category():
    values, errors = parse_category_payload(get_json_body())
    if errors:
        return validation_error('بيانات التصنيف غير صالحة', errors)
    try:
        category = storage.create_category(values)
        return jsonify(category.serialize()), 201
    except IntegrityError:
        db.session.rollback()
        return jsonify({'message': 'الرابط المختصر (slug) مستخدم مسبقاً'}), 400
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error creating category: {str(e)}')
        return jsonify({'message': 'فشل في إنشاء التصنيف'}), 500


@admin_api.route('/categories/<int:category_id>', methods=['PUT'])
@admin_required
def update_category(category_id):
    values, errors = parse_category_payload(get_json_body(), partial=True)
    if errors:
        return validation_error('بيانات التصنيف غير صالحة', errors)
    try:
        category = storage.update_category(category_id, values)
        if not category:
            return jsonify({'message': 'التصنيف غير موجود'}), 404
        return jsonify(category.serialize())
    except IntegrityError:
        db.session.rollback()
        return jsonify({'message': 'الرابط المختصر (slug) مستخدم مسبقاً'}), 400
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error updating category {category_id}: {str(e)}')
        return jsonify({'message': 'فشل في تحديث التصنيف'}), 500


@admin_api.route('/categories/<int:category_id>', methods=['DELETE'])
@admin_required
def delete_category(category_id):
    try:
        if not storage.delete_category(category_id):
            return jsonify({'message': 'التصنيف غير موجود'}), 404
        return jsonify({'message': 'تم حذف التصنيف بنجاح'})
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error deleting category {category_id}: {str(e)}')
        return jsonify({'message': 'فشل في حذف التصنيف'}), 500

# products
PRODUCT_FIELDS = {
    'name': 'name',
    'nameAr': 'name_ar',
    'description': 'description',
    'descriptionAr': 'description_ar',
    'price': 'price',
    'originalPrice': 'original_price',
    'categoryId': 'category_id',
    'images': 'images',
    'sku': 'sku',
    'stock': 'stock',
    'isActive': 'is_active',
    'isFeatured': 'is_featured',
    'tags': 'tags',
}


def parse_product_payload(data, partial=False):
    errors = [] if partial else missing_fields(data, ['name', 'nameAr', 'price'])
    flagged = {error['field'] for error in errors}
    values = {}
    for key, column in PRODUCT_FIELDS.items():
        if key not in data or key in flagged:
            continue
        value = data[key]
        if key in ('price', 'originalPrice'):
            if value in (None, '') and key == 'originalPrice':
                values[column] = None
                continue
            amount = parse_decimal(value)
            if amount is None:
                errors.append({'field': key, 'message': 'قيمة السعر غير صالحة'})
                continue
            values[column] = amount
        elif key == 'stock':
            stock = parse_int(value, minimum=0)
            if stock is None:
                errors.append({'field': key, 'message': 'قيمة المخزون غير صالحة'})
                continue
            values[column] = stock
        elif key == 'categoryId':
            if value is None:
                values[column] = None
                continue
            category_id = parse_int(value, minimum=1)
            if category_id is None or not storage.get_category(category_id):
                errors.append({'field': key, 'message': 'التصنيف غير موجود'})
                continue
            values[column] = category_id
        elif key in ('images', 'tags'):
            if value is None:
                values[column] = []
            elif isinstance(value, list) and all(isinstance(item, str) for item in value):
                values[column] = [item.strip() for item in value if item.strip()]
            else:
                errors.append({'field': key, 'message': 'يجب أن تكون قائمة نصوص'})
        elif key in ('isActive', 'isFeatured'):
            if not isinstance(value, bool):
                errors.append({'field': key, 'message': 'قيمة غير صالحة'})
                continue
            values[column] = value
        elif value is None or (key == 'sku' and isinstance(value, str) and not value.strip()):
            if key in ('name', 'nameAr'):
                errors.append({'field': key, 'message': 'هذا الحقل مطلوب'})
            else:
                values[column] = None
        elif not isinstance(value, str) or (key in ('name', 'nameAr') and not value.strip()):
            errors.append({'field': key, 'message': 'قيمة غير صالحة'})
        else:
            values[column] = value.strip()
    return values, errors


@api.route('/products')
def get_products():
    category_id = request.args.get('categoryId', type=int)
    search = query_arg('search')
    featured = parse_bool_arg(query_arg('featured'))
    active = parse_bool_arg(query_arg('active'))
    sort = query_arg('sort', 'newest')
    if sort not in PRODUCT_SORTS:
        app.logger.warning(f'Unknown product sort "{sort}" requested. Falling back to newest.')
        sort = 'newest'

    min_price = max_price = None
    if request.args.get('minPrice'):
        min_price = parse_decimal(request.args['minPrice'])
        if min_price is None:
            app.logger.warning(f"Invalid minPrice filter: {request.args['minPrice']}")
    if request.args.get('maxPrice'):
        max_price = parse_decimal(request.args['maxPrice'])
        if max_price is None:
            app.logger.warning(f"Invalid maxPrice filter: {request.args['maxPrice']}")

    try:
        products = storage.get_products(
            category_id=category_id,
            search=search or None,
            featured=featured,
            active=active,
            min_price=min_price,
            max_price=max_price,
            sort=sort,
        )
        return jsonify([product.serialize() for product in products])
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching products: {str(e)}')
        return jsonify({'message': 'فشل في جلب المنتجات'}), 500


@api.route('/products/<int:product_id>')
def get_product(product_id):
    try:
        product = storage.get_product(product_id)
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching product {product_id}: {str(e)}')
        return jsonify({'message': 'فشل في جلب المنتج'}), 500
    if not product:
        return jsonify({'message': 'المنتج غير موجود'}), 404
    return jsonify(product.serialize())


@admin_api.route('/products', methods=['POST'])
@admin_required
def create_product():
    values, errors = parse_product_payload(get_json_body())
    if errors:
        return validation_error('بيانات المنتج غير صالحة', errors)
    try:
        product = storage.create_product(values)
        app.logger.info(f"Product {product.id} created by {g.admin['username']}")
        return jsonify(product.serialize()), 201
    except IntegrityError:
        db.session.rollback()
        return jsonify({'message': 'رمز المنتج (SKU) مستخدم مسبقاً'}), 400
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error creating product: {str(e)}')
        return jsonify({'message': 'فشل في إنشاء المنتج'}), 500


@admin_api.route('/products/<int:product_id>', methods=['PUT'])
@admin_required
def update_product(product_id):
    values, errors = parse_product_payload(get_json_body(), partial=True)
    if errors:
        return validation_error('بيانات المنتج غير صالحة', errors)
    try:
        product = storage.update_product(product_id, values)
        if not product:
            return jsonify({'message': 'المنتج غير موجود'}), 404
        return jsonify(product.serialize())
    except IntegrityError:
        db.session.rollback()
        return jsonify({'message': 'رمز المنتج (SKU) مستخدم مسبقاً'}), 400
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error updating product {product_id}: {str(e)}')
        return jsonify({'message': 'فشل في تحديث المنتج'}), 500


@admin_api.route('/products/<int:product_id>', methods=['DELETE'])
@admin_required
def delete_product(product_id):
    if not storage.get_product(product_id):
        return jsonify({'message': 'المنتج غير موجود'}), 404
    if not storage.delete_product(product_id):
        return jsonify({'message': 'فشل في حذف المنتج من قاعدة البيانات'}), 500
    app.logger.info(f"Product {product_id} deleted by {g.admin['username']}")
    return jsonify({'message': 'تم حذف المنتج بنجاح'})

# cart
def cleanup_expired_cart_items():
    ttl = app.config['CART_ITEM_TTL_HOURS']
    if ttl <= 0:
        return
    try:
        removed = storage.cleanup_expired_cart_items(ttl)
        if removed:
            app.logger.info(f'Removed {removed} expired cart items')
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error cleaning up expired cart items: {str(e)}')


@api.route('/cart/<session_id>')
def get_cart(session_id):
    cleanup_expired_cart_items()
    try:
        return jsonify([item.serialize() for item in storage.get_cart_items(session_id)])
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching cart for {session_id}: {str(e)}')
        return jsonify({'message': 'فشل في جلب محتويات السلة'}), 500


@api.route('/cart', methods=['POST'])
def add_to_cart():
    data = get_json_body()
    session_id = (data.get('sessionId') or '').strip() if isinstance(data.get('sessionId'), str) else ''
    product_id = parse_int(data.get('productId'), minimum=1)
    quantity = parse_int(data.get('quantity', 1), minimum=1)
    if not session_id or product_id is None or quantity is None:
        return jsonify({'message': 'بيانات ناقصة أو غير صالحة'}), 400

    try:
        product = storage.get_product(product_id)
        if not product or not product.is_active:
            return jsonify({'message': 'المنتج غير موجود'}), 404

        existing = storage.find_cart_item(session_id, product_id)
        in_cart = existing.quantity if existing else 0
        if in_cart + quantity > (product.stock or 0):
            return jsonify({'message': 'الكمية المطلوبة غير متوفرة في المخزون'}), 400

        cart_item = storage.add_to_cart(session_id, product_id, quantity)
        record_activity(session_id, 'add_to_cart', product_id=product_id, metadata={'quantity': quantity})
        return jsonify(cart_item.serialize()), 201
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error adding item to cart: {str(e)}')
        return jsonify({'message': 'حدث خطأ أثناء إضافة المنتج إلى السلة'}), 500


def cart_session_id(data):
    """Cart session of the caller, from the JSON body or the ``sessionId`` query arg."""
    session_id = data.get('sessionId')
    if isinstance(session_id, str) and session_id.strip():
        return session_id.strip()
    return query_arg('sessionId') or None


@api.route('/cart/<int:item_id>', methods=['PUT'])
def update_cart_item(item_id):
    data = get_json_body()
    session_id = cart_session_id(data)
    quantity = parse_int(data.get('quantity'), minimum=1)
    if quantity is None:
        return jsonify({'message': 'الكمية غير صالحة'}), 400

    try:
        cart_item = storage.get_cart_item(item_id)
        if not cart_item or cart_item.session_id != session_id:
            return jsonify({'message': 'العنصر غير موجود في السلة'}), 404
        if cart_item.product and quantity > (cart_item.product.stock or 0):
            return jsonify({'message': f'الكمية يجب أن تكون بين 1 و {cart_item.product.stock}'}), 400
        cart_item = storage.update_cart_item(item_id, quantity)
        return jsonify(cart_item.serialize())
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error updating cart item {item_id}: {str(e)}')
        return jsonify({'message': 'فشل في تحديث السلة'}), 500


@api.route('/cart/<int:item_id>', methods=['DELETE'])
def remove_cart_item(item_id):
    session_id = cart_session_id(get_json_body())
    try:
        cart_item = storage.get_cart_item(item_id)
        if not cart_item or cart_item.session_id != session_id:
            return jsonify({'message': 'العنصر غير موجود في السلة'}), 404
        product_id = cart_item.product_id
        storage.remove_from_cart(item_id)
        record_activity(session_id, 'remove_from_cart', product_id=product_id)
        return jsonify({'message': 'تم حذف المنتج من السلة'})
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error removing cart item {item_id}: {str(e)}')
        return jsonify({'message': 'فشل في حذف المنتج من السلة'}), 500

# orders
ORDER_REQUIRED_FIELDS = ['sessionId', 'customerName', 'customerPhone', 'shippingAddress', 'city']


def resolve_order_lines(data, session_id):
    """
    Build validated ``(product, quantity)`` lines for checkout.

    Uses the explicit ``items`` list when given, otherwise the session's cart.
    Returns ``(lines, errors)``.
    """
    errors = []
    requested = []
    if data.get('items'):
        if not isinstance(data['items'], list):
            return [], [{'field': 'items', 'message': 'يجب أن تكون قائمة منتجات'}]
        for index, item in enumerate(data['items']):
            product_id = parse_int(item.get('productId'), minimum=1) if isinstance(item, dict) else None
            quantity = parse_int(item.get('quantity'), minimum=1) if isinstance(item, dict) else None
            if product_id is None or quantity is None:
                errors.append({'field': f'items[{index}]', 'message': 'منتج أو كمية غير صالحة'})
                continue
            requested.append((product_id, quantity))
    else:
        requested = [(item.product_id, item.quantity) for item in storage.get_cart_items(session_id)]

    if errors:
        return [], errors
    if not requested:
        return [], [{'field': 'items', 'message': 'سلة التسوق فارغة'}]

    merged = {}
    for product_id, quantity in requested:
        merged[product_id] = merged.get(product_id, 0) + quantity

    lines = []
    for product_id, quantity in merged.items():
        product = storage.get_product(product_id)
        if not product or not product.is_active:
            errors.append({'field': 'items', 'message': f'المنتج رقم {product_id} غير موجود'})
        elif (product.stock or 0) < quantity:
            errors.append({'field': 'items', 'message': f'الكمية المتاحة من {product.name_ar} غير كافية'})
        else:
            lines.append((product, quantity))
    return lines, errors


@admin_api.route('/orders')
@admin_required
def get_orders():
    try:
        status = query_arg('status')
        orders = storage.get_orders()
        if status:
            orders = [order for order in orders if order.status == status]
        return jsonify([order.serialize() for order in orders])
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching orders: {str(e)}')
        return jsonify({'message': 'فشل في جلب الطلبات'}), 500


@api.route('/orders/session/<session_id>')
def get_session_orders(session_id):
    try:
        return jsonify([order.serialize() for order in storage.get_orders_by_session(session_id)])
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching orders for session {session_id}: {str(e)}')
        return jsonify({'message': 'فشل في جلب الطلبات'}), 500


@api.route('/orders/<int:order_id>')
def get_order(order_id):
    order = storage.get_order(order_id)
    if not order:
        return jsonify({'message': 'الطلب غير موجود'}), 404
    if query_arg('sessionId') != order.session_id and not current_admin():
        return jsonify({'message': 'الطلب غير موجود'}), 404
    return jsonify(order.serialize())


@api.route('/orders', methods=['POST'])
def create_order():
    data = get_json_body()
    errors = missing_fields(data, ORDER_REQUIRED_FIELDS)
    for field in ORDER_REQUIRED_FIELDS + ['customerEmail']:
        if data.get(field) is not None and not isinstance(data.get(field), str):
            errors.append({'field': field, 'message': 'قيمة غير صالحة'})
    if errors:
        return validation_error('بيانات الطلب غير صالحة', errors)

    session_id = data['sessionId'].strip()
    try:
        cleanup_expired_cart_items()
        lines, errors = resolve_order_lines(data, session_id)
        if errors:
            return validation_error('بيانات الطلب غير صالحة', errors)

        if data.get('totalAmount') is not None:
            app.logger.info(f"Ignoring client totalAmount {data.get('totalAmount')} for session {session_id}")

        order = storage.create_order({
            'session_id': session_id,
            'customer_name': data['customerName'].strip(),
            'customer_phone': data['customerPhone'].strip(),
            'customer_email': (data.get('customerEmail') or '').strip() or None,
            'shipping_address': data['shippingAddress'].strip(),
            'city': data['city'].strip(),
        }, lines)
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error in create_order: {str(e)}')
        return jsonify({'message': 'فشل في إنشاء الطلب'}), 500

    app.logger.info(f'Order #{order.id} created for session {session_id} - total {money(order.total_amount)}')
    order_data = order.serialize()

    # notification failures must never fail the order
    try:
        telegram_service.send_order_notification(order_data)
    except Exception as e:
        app.logger.error(f'Failed to send Telegram notification: {str(e)}')

    record_activity(session_id, 'place_order', metadata={'orderId': order.id, 'totalAmount': order_data['totalAmount']})
    return jsonify(order_data), 201


@admin_api.route('/orders/<int:order_id>/status', methods=['PUT'])
@admin_required
def update_order_status(order_id):
    status = get_json_body().get('status')
    if not status:
        return jsonify({'message': 'الحالة مطلوبة'}), 400
    if status not in ORDER_STATUSES:
        return jsonify({'message': 'حالة الطلب غير صالحة', 'allowed': list(ORDER_STATUSES)}), 400

    try:
        order = storage.get_order(order_id)
        if not order:
            return jsonify({'message': 'الطلب غير موجود'}), 404
        if order.status == 'cancelled' and status != 'cancelled':
            return jsonify({'message': 'لا يمكن تغيير حالة طلب ملغي'}), 400
        order = storage.update_order_status(order_id, status)
        app.logger.info(f"Order {order_id} status set to {status} by {g.admin['username']}")
        return jsonify(order.serialize())
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error updating order status {order_id}: {str(e)}')
        return jsonify({'message': 'فشل في تحديث حالة الطلب'}), 500


@admin_api.route('/orders/<int:order_id>/cancel', methods=['POST'])
@admin_required
def cancel_order(order_id):
    try:
        order = storage.get_order(order_id)
        if not order:
            return jsonify({'message': 'الطلب غير موجود'}), 404
        if order.status == 'cancelled':
            return jsonify({'message': 'الطلب ملغي مسبقاً'}), 400
        cancelled_order = storage.cancel_order(order_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error cancelling order {order_id}: {str(e)}')
        return jsonify({'message': 'فشل في إلغاء الطلب'}), 500

    order_data = cancelled_order.serialize()
    try:
        telegram_service.send_cancellation_notification({
            'orderId': order_data['id'],
            'customerName': order_data['customerName'],
            'customerPhone': order_data['customerPhone'],
            'totalAmount': order_data['totalAmount'],
            'cancelledBy': g.admin['username'],
        })
    except Exception as e:
        app.logger.error(f'Failed to send Telegram cancellation notification: {str(e)}')

    record_activity(order_data['sessionId'], 'cancel_order', metadata={
        'orderId': order_data['id'],
        'totalAmount': order_data['totalAmount'],
        'cancelledBy': g.admin['username'],
    })
    app.logger.info(f"Order {order_id} cancelled successfully by admin: {g.admin['username']}")
    return jsonify({
        'message': 'تم إلغاء الطلب بنجاح',
        'order': order_data,
        'refundAmount': order_data['totalAmount'],
    })

# store settings
def save_setting(key, value):
    if value is None or value == '':
        return jsonify({'message': 'القيمة مطلوبة'}), 400
    if not isinstance(value, str):
        value = str(value)
    try:
        setting = storage.update_store_setting(key, value)
        return jsonify(setting.serialize())
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error updating setting {key}: {str(e)}')
        return jsonify({'message': 'فشل في تحديث الإعداد'}), 500


@api.route('/settings')
def get_settings():
    try:
        return jsonify([setting.serialize() for setting in storage.get_store_settings()])
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching settings: {str(e)}')
        return jsonify({'message': 'فشل في جلب الإعدادات'}), 500


@admin_api.route('/settings/<key>', methods=['PUT'])
@admin_required
def update_setting(key):
    return save_setting(key, get_json_body().get('value'))


@admin_api.route('/admin/settings', methods=['POST'])
@admin_required
def admin_update_setting():
    data = get_json_body()
    key = data.get('key')
    if not key or not isinstance(key, str):
        return jsonify({'message': 'المفتاح والقيمة مطلوبان'}), 400
    return save_setting(key.strip(), data.get('value'))

# analytics
@admin_api.route('/analytics/stats')
@admin_required
def analytics_stats():
    try:
        return jsonify(storage.get_stats())
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching analytics: {str(e)}')
        return jsonify({'message': 'فشل في جلب الإحصائيات'}), 500


@admin_api.route('/analytics/activity')
@admin_required
def analytics_activity():
    try:
        session_id = query_arg('sessionId')
        activity = storage.get_activity_by_session(session_id) if session_id else storage.get_recent_activity()
        return jsonify([row.serialize() for row in activity])
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching activity: {str(e)}')
        return jsonify({'message': 'فشل في جلب النشاطات'}), 500


@api.route('/activity', methods=['POST'])
def log_activity():
    data = get_json_body()
    errors = missing_fields(data, ['sessionId', 'action'])
    product_id = None
    if data.get('productId') is not None:
        product_id = parse_int(data.get('productId'), minimum=1)
        if product_id is None:
            errors.append({'field': 'productId', 'message': 'قيمة غير صالحة'})
    if data.get('metadata') is not None and not isinstance(data.get('metadata'), dict):
        errors.append({'field': 'metadata', 'message': 'قيمة غير صالحة'})
    if errors:
        return validation_error('بيانات النشاط غير صالحة', errors)

    try:
        if product_id is not None and not storage.get_product(product_id):
            return validation_error('بيانات النشاط غير صالحة', [{'field': 'productId', 'message': 'المنتج غير موجود'}])
        activity = storage.log_activity(str(data['sessionId']), str(data['action']), product_id=product_id, metadata=data.get('metadata'))
        return jsonify(activity.serialize()), 201
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error logging activity: {str(e)}')
        return jsonify({'message': 'فشل في تسجيل النشاط'}), 500


@api.route('/analytics/visitor', methods=['POST'])
def track_visitor():
    data = get_json_body()
    session_id = data.get('sessionId') or request.headers.get('X-Session-Id') or f'anonymous-{int(time.time() * 1000)}'
    ip = client_ip()
    country, city = detect_location(ip)
    try:
        visitor = storage.track_visitor(
            str(session_id),
            ip_address=ip,
            country=country,
            city=city,
            user_agent=request.headers.get('User-Agent', 'unknown'),
        )
        return jsonify(visitor.serialize())
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.error(f'Error tracking visitor: {str(e)}')
        return jsonify({'message': 'فشل في تسجيل الزائر'}), 500


@admin_api.route('/analytics/visitors')
@admin_required
def visitor_stats():
    try:
        return jsonify(storage.get_visitor_stats())
    except SQLAlchemyError as e:
        app.logger.error(f'Error fetching visitor stats: {str(e)}')
        return jsonify({'message': 'فشل في جلب إحصائيات الزوار'}), 500


@admin_api.route('/admin/customers')
@admin_required
def admin_customers():
    try:
        customers = storage.get_customers()
        search = query_arg('search')
        if search:
            needle = search.lower()
            customers = [
                c for c in customers
                if needle in (c['customerName'] or '').lower()
                or needle in (c['customerPhone'] or '')
                or needle in (c['customerEmail'] or '').lower()
            ]
        return jsonify(customers)
    except SQLAlchemyError as e:
        app.logger.error(f'Error building customer list: {str(e)}')
        return jsonify({'message': 'فشل في جلب العملاء'}), 500


@admin_api.route('/admin/reports/sales')
@admin_required
def admin_sales_report():
    months = request.args.get('months', 6, type=int)
    if months < 1 or months > 24:
        months = 6
    try:
        return jsonify(storage.get_sales_report(months=months))
    except SQLAlchemyError as e:
        app.logger.error(f'Error building sales report: {str(e)}')
        return jsonify({'message': 'فشل في إنشاء التقرير'}), 500


@admin_api.route('/admin/export/orders')
@admin_required
def export_orders():
    try:
        orders = storage.get_orders()
        selected = query_arg('ids')
        if selected:
            order_ids = {parse_int(order_id) for order_id in selected.split(',')}
            orders = [order for order in orders if order.id in order_ids]
        status = query_arg('status')
        if status:
            orders = [order for order in orders if order.status == status]

        data = []
        for order in orders:
            items = order.items or []
            data.append({
                'رقم الطلب': order.id,
                'اسم العميل': order.customer_name,
                'رقم الهاتف': order.customer_phone,
                'البريد الإلكتروني': order.customer_email or '',
                'المدينة': order.city,
                'العنوان': order.shipping_address,
                'المنتجات': ', '.join(item.get('nameAr') or item.get('name') or '' for item in items),
                'عدد القطع': sum(int(item.get('quantity') or 0) for item in items),
                'المبلغ الإجمالي': float(order.total_amount),
                'الحالة': ORDER_STATUSES.get(order.status, order.status),
                'تاريخ الطلب': order.created_at.strftime('%Y-%m-%d %H:%M'),
            })

        df = pd.DataFrame(data, columns=[
            'رقم الطلب', 'اسم العميل', 'رقم الهاتف', 'البريد الإلكتروني', 'المدينة', 'العنوان',
            'المنتجات', 'عدد القطع', 'المبلغ الإجمالي', 'الحالة', 'تاريخ الطلب',
        ])

        output = BytesIO()
        with pd.ExcelWriter(output, engine='openpyxl') as writer:
            df.to_excel(writer, index=False, sheet_name='الطلبات')
        output.seek(0)

        return send_file(
            output,
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            as_attachment=True,
            download_name='orders.xlsx'
        )
    except SQLAlchemyError as e:
        app.logger.error(f'Error exporting orders: {str(e)}')
        return jsonify({'message': 'حدث خطأ أثناء تصدير الطلبات'}), 500

# telegram
@admin_api.route('/telegram/test', methods=['POST'])
@admin_required
def telegram_test():
    try:
        telegram_service.send_test_message()
        return jsonify({'success': True, 'message': 'Test message sent successfully'})
    except TelegramError as e:
        app.logger.error(f'Failed to send test message: {str(e)}')
        return jsonify({'success': False, 'message': str(e), 'details': str(e)}), 500

# uploads
@admin_api.route('/upload/image', methods=['POST'])
@admin_required
def upload_image():
    file = request.files.get('image')
    if not file or not file.filename:
        return jsonify({'error': 'لم يتم تحديد أي ملف للرفع'}), 400
    if not (file.mimetype or '').startswith('image/') or not allowed_file(file.filename):
        return jsonify({'error': 'نوع الملف غير مسموح - يجب أن يكون صورة'}), 400

    file.stream.seek(0, os.SEEK_END)
    size = file.stream.tell()
    file.stream.seek(0)
    if size > app.config['MAX_IMAGE_SIZE']:
        return jsonify({'error': 'حجم الصورة يتجاوز 5 ميغابايت'}), 400

    try:
        image_path = save_uploaded_file(file)
    except OSError as e:
        app.logger.error(f'Error uploading image: {str(e)}')
        return jsonify({'error': 'خطأ في رفع الصورة: ' + str(e)}), 500

    app.logger.info(f"Image uploaded successfully by {g.admin['username']}: {image_path}")
    return jsonify({'success': True, 'imagePath': image_path, 'message': 'تم رفع الصورة بنجاح'})


@app.route('/uploads/<path:filename>')
def uploaded_file(filename):
    response = send_from_directory(app.config['UPLOAD_FOLDER'], filename)
    response.headers['Cache-Control'] = 'public, max-age=3600'
    return response


PLACEHOLDER_SVG = """<svg width="100" height="100" viewBox="0 0 100 100" fill="none" xmlns="http://www.w3.org/2000/svg">
  <rect width="100" height="100" fill="#F3F4F6"/>
  <path d="M35 40H65V60H35V40Z" fill="#9CA3AF"/>
  <path d="M45 45H55V55H45V45Z" fill="#6B7280"/>
</svg>"""


@api.route('/placeholder-image')
def placeholder_image():
    return Response(PLACEHOLDER_SVG, mimetype='image/svg+xml')


app.register_blueprint(api, url_prefix='/api')
app.register_blueprint(admin_api, url_prefix='/api')


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    messages = {
        404: 'المورد غير موجود',
        405: 'طريقة الطلب غير مسموحة',
        413: 'حجم الطلب كبير جداً',
        429: 'تم تجاوز عدد الطلبات المسموح. حاول مرة أخرى لاحقاً.',
    }
    return jsonify({'message': messages.get(e.code, e.description)}), e.code


@app.errorhandler(500)
def internal_server_error(e):
    app.logger.error(f'Unhandled error: {str(e)}')
    return jsonify({'message': 'حدث خطأ داخلي في الخادم'}), 500


@app.cli.command('init-db')
def init_db_command():
    """Create all database tables."""
    db.create_all()
    print('Database tables created')


@app.cli.command('seed')
def seed_command():
    """Seed the admin user, categories, sample products and store settings."""
    from seed_data import seed_database
    seed_database()


if __name__ == '__main__':
    with app.app_context():
        db.create_all()
    host = os.getenv('FLASK_HOST', '0.0.0.0')
    port = int(os.getenv('FLASK_PORT', '5000'))
    app.run(debug=is_debug_env, host=host, port=port)
