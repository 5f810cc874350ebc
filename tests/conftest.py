"""
Pytest configuration and fixtures for testing
"""
import pytest
import os
import sys
import tempfile
from decimal import Decimal

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# The engine and the notifier are built at import time, so configure them first
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['SECRET_KEY'] = 'test-secret-key'
os.environ['JWT_SECRET_KEY'] = 'test-jwt-secret-key-that-is-long-enough'
os.environ['RATELIMIT_ENABLED'] = 'true'
os.environ['RATELIMIT_STORAGE_URI'] = 'memory://'
os.environ['UPLOAD_FOLDER'] = tempfile.mkdtemp(prefix='store-uploads-')
os.environ.pop('TELEGRAM_BOT_TOKEN', None)
os.environ.pop('TELEGRAM_CHAT_ID', None)
os.environ.pop('HONEYBADGER_API_KEY', None)

from app import app as flask_app, db, limiter, login_attempts, generate_token
from app import (
    User, Category, Product, CartItem, Order
)
from werkzeug.security import generate_password_hash

@pytest.fixture(scope='session')
def app():
    """Create application for testing"""
    flask_app.config['TESTING'] = True

    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

@pytest.fixture(scope='function')
def client(app):
    """Create test client"""
    return app.test_client()

@pytest.fixture(scope='function')
def db_session(app):
    """Create database session for testing"""
    with app.app_context():
        yield db.session
        db.session.rollback()
        # Clean up all tables
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

@pytest.fixture(autouse=True)
def reset_request_guards():
    """Every test starts without login lockouts or spent rate limits"""
    login_attempts.clear_all()
    limiter.reset()
    yield
    login_attempts.clear_all()
    limiter.reset()

@pytest.fixture
def sample_category(db_session):
    """Create a sample category"""
    category = Category(
        name='Watches',
        name_ar='الساعات',
        slug='watches',
        description='Premium watches collection',
        description_ar='مجموعة الساعات الفاخرة',
    )
    db_session.add(category)
    db_session.commit()
    return category

@pytest.fixture
def sample_product(db_session, sample_category):
    """Create a sample product"""
    product = Product(
        name='Citizen Eco-Drive',
        name_ar='ساعة سيتيزن إيكو درايف',
        description='Solar powered watch',
        description_ar='ساعة تعمل بالطاقة الشمسية',
        price=Decimal('150.00'),
        original_price=Decimal('180.00'),
        category_id=sample_category.id,
        images=['/uploads/citizen.jpg'],
        sku='CIT-TEST-001',
        stock=10,
        is_active=True,
        is_featured=True,
        tags=['solar', 'citizen'],
    )
    db_session.add(product)
    db_session.commit()
    return product

@pytest.fixture
def second_product(db_session, sample_category):
    """Create a second, cheaper product"""
    product = Product(
        name='Casio Classic',
        name_ar='ساعة كاسيو كلاسيك',
        price=Decimal('50.00'),
        category_id=sample_category.id,
        images=[],
        sku='CAS-TEST-001',
        stock=3,
        is_active=True,
        is_featured=False,
        tags=[],
    )
    db_session.add(product)
    db_session.commit()
    return product

@pytest.fixture
def sample_admin(db_session):
    """Create a sample admin user"""
    admin = User(
        username='admin',
        email='admin@example.com',
        password=generate_password_hash('admin123'),
        role='admin',
    )
    db_session.add(admin)
    db_session.commit()
    return admin

@pytest.fixture
def sample_cart(db_session, sample_product):
    """Put two units of the sample product in a cart session"""
    item = CartItem(session_id='test-session-123', product_id=sample_product.id, quantity=2)
    db_session.add(item)
    db_session.commit()
    return item

@pytest.fixture
def sample_order(db_session, sample_product):
    """Create a sample order"""
    order = Order(
        session_id='test-session-123',
        customer_name='أحمد محمد',
        customer_phone='07801234567',
        customer_email='ahmad@example.com',
        shipping_address='حي الأندلس، شارع 20',
        city='الرمادي',
        total_amount=Decimal('300.00'),
        status='pending',
        items=[{
            'productId': sample_product.id,
            'name': sample_product.name,
            'nameAr': sample_product.name_ar,
            'price': '150.00',
            'quantity': 2,
            'image': '/uploads/citizen.jpg',
        }],
    )
    db_session.add(order)
    db_session.commit()
    return order

@pytest.fixture
def auth_headers(sample_admin):
    """Bearer header for the sample admin"""
    return {'Authorization': f'Bearer {generate_token(sample_admin)}'}

@pytest.fixture
def authenticated_client(client, auth_headers):
    """Create an authenticated admin client"""
    client.environ_base['HTTP_AUTHORIZATION'] = auth_headers['Authorization']
    return client
