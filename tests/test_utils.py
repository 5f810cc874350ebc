"""
Tests for utility functions
"""
import pytest
from datetime import datetime
from decimal import Decimal

class TestHelperFunctions:
    """Tests for helper functions"""

    def test_allowed_file(self):
        """Test file extension validation"""
        from app import allowed_file

        assert allowed_file('image.jpg') is True
        assert allowed_file('image.jpeg') is True
        assert allowed_file('image.png') is True
        assert allowed_file('image.webp') is True
        assert allowed_file('document.pdf') is False
        assert allowed_file('vector.svg') is False
        assert allowed_file('noextension') is False

    def test_utc_now(self):
        """Test UTC time function returns naive datetime (tzinfo stripped for SQLite)"""
        from app import utc_now

        now = utc_now()
        assert isinstance(now, datetime)
        assert now.tzinfo is None

    def test_money(self):
        """Test amounts are formatted with two decimals"""
        from app import money

        assert money(Decimal('250000')) == '250000.00'
        assert money('95000.5') == '95000.50'
        assert money(0) == '0.00'
        assert money(None) is None

    def test_parse_decimal(self):
        """Test price parsing"""
        from app import parse_decimal

        assert parse_decimal('120000') == Decimal('120000')
        assert parse_decimal(99.5) == Decimal('99.5')
        assert parse_decimal('-1') is None
        assert parse_decimal('abc') is None
        assert parse_decimal('NaN') is None

    def test_parse_int(self):
        """Test integer parsing for quantities and ids"""
        from app import parse_int

        assert parse_int('3') == 3
        assert parse_int(2, minimum=1) == 2
        assert parse_int(0, minimum=1) is None
        assert parse_int(True) is None
        assert parse_int(1.5) is None
        assert parse_int('x') is None

    def test_detect_location(self):
        """Test local addresses map to the shop's city"""
        from app import detect_location

        assert detect_location('127.0.0.1') == ('العراق', 'الرمادي')
        assert detect_location('192.168.1.20') == ('العراق', 'الرمادي')
        assert detect_location('8.8.8.8') == ('غير معروف', 'غير معروف')
        assert detect_location('garbage') == ('غير معروف', 'غير معروف')

class TestCartCleanup:
    """Tests for expired cart cleanup"""

    def test_cleanup_runs_on_cart_fetch(self, client, sample_product, db_session):
        """Test stale items disappear when a cart is read"""
        from datetime import timedelta
        from app import CartItem, utc_now

        stale = CartItem(session_id='old-session', product_id=sample_product.id, quantity=1,
                         added_at=utc_now() - timedelta(hours=200))
        db_session.add(stale)
        db_session.commit()

        assert client.get('/api/cart/old-session').get_json() == []

class TestSeedData:
    """Tests for the seed script"""

    def test_seed_is_idempotent(self, db_session):
        """Test seeding twice creates rows only once"""
        from seed_data import seed_database
        from app import Category, Product, StoreSetting, User

        first = seed_database()
        second = seed_database()

        assert first == {'users': 1, 'categories': 2, 'products': 4, 'settings': 13}
        assert second == {'users': 0, 'categories': 0, 'products': 0, 'settings': 0}
        assert User.query.filter_by(username='admin', role='admin').count() == 1
        assert Product.query.filter_by(sku='ROL-AUTO-001').one().price == Decimal('250000')
        assert StoreSetting.query.filter_by(key='primary_color').one().value == '#1B365D'
        assert Category.query.count() == 2

    def test_seeded_admin_can_log_in(self, client, db_session):
        """Test the seeded admin credentials work"""
        from seed_data import seed_database

        seed_database()
        response = client.post('/api/admin/login', json={'username': 'admin', 'password': 'admin123'})
        assert response.status_code == 200
