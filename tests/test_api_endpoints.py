"""
Tests for storefront API endpoints
"""
import pytest
import json
from unittest.mock import patch
from app import CartItem, CustomerActivity, Order, Product

class TestCatalogAPI:
    """Tests for categories and products"""

    def test_get_categories(self, client, sample_category):
        """Test categories are listed"""
        response = client.get('/api/categories')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data[0]['slug'] == 'watches'

    def test_get_products(self, client, sample_product, second_product):
        """Test products are listed newest first"""
        response = client.get('/api/products')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert [p['id'] for p in data] == [second_product.id, sample_product.id]

    def test_get_products_with_filters(self, client, sample_product, second_product):
        """Test query string filters"""
        data = client.get('/api/products?featured=true').get_json()
        assert [p['id'] for p in data] == [sample_product.id]

        data = client.get('/api/products?maxPrice=100').get_json()
        assert [p['id'] for p in data] == [second_product.id]

        data = client.get('/api/products?search=Casio').get_json()
        assert [p['id'] for p in data] == [second_product.id]

        data = client.get('/api/products?sort=price-asc').get_json()
        assert data[0]['price'] == '50.00'

    def test_unknown_sort_falls_back(self, client, sample_product):
        """Test an unknown sort value is ignored"""
        response = client.get('/api/products?sort=random')
        assert response.status_code == 200
        assert len(response.get_json()) == 1

    def test_invalid_price_filter_is_ignored(self, client, sample_product):
        """Test invalid price filters do not fail the request"""
        response = client.get('/api/products?minPrice=abc')
        assert response.status_code == 200
        assert len(response.get_json()) == 1

    def test_get_product(self, client, sample_product):
        """Test fetching one product"""
        response = client.get(f'/api/products/{sample_product.id}')
        assert response.status_code == 200
        assert response.get_json()['sku'] == 'CIT-TEST-001'

    def test_get_missing_product(self, client, db_session):
        """Test 404 for a missing product"""
        response = client.get('/api/products/9999')
        assert response.status_code == 404
        assert response.get_json()['message'] == 'المنتج غير موجود'

class TestCartAPI:
    """Tests for cart endpoints"""

    def test_add_to_cart(self, client, sample_product, db_session):
        """Test adding a product to the cart"""
        response = client.post('/api/cart', json={
            'sessionId': 'cart-session', 'productId': sample_product.id, 'quantity': 2
        })
        assert response.status_code == 201
        data = response.get_json()
        assert data['quantity'] == 2
        assert data['product']['id'] == sample_product.id

        activity = CustomerActivity.query.filter_by(session_id='cart-session').one()
        assert activity.action == 'add_to_cart'
        assert activity.details == {'quantity': 2}

    def test_add_to_cart_merges(self, client, sample_product, db_session):
        """Test adding twice merges into one row"""
        client.post('/api/cart', json={'sessionId': 's', 'productId': sample_product.id, 'quantity': 1})
        client.post('/api/cart', json={'sessionId': 's', 'productId': sample_product.id, 'quantity': 1})

        items = client.get('/api/cart/s').get_json()
        assert len(items) == 1
        assert items[0]['quantity'] == 2

    def test_add_to_cart_missing_fields(self, client, db_session):
        """Test missing fields are rejected"""
        response = client.post('/api/cart', json={'sessionId': 's'})
        assert response.status_code == 400

    def test_add_to_cart_invalid_quantity(self, client, sample_product):
        """Test zero and negative quantities are rejected"""
        response = client.post('/api/cart', json={'sessionId': 's', 'productId': sample_product.id, 'quantity': 0})
        assert response.status_code == 400

    def test_add_to_cart_exceeding_stock(self, client, sample_product):
        """Test quantities above stock are rejected"""
        response = client.post('/api/cart', json={'sessionId': 's', 'productId': sample_product.id, 'quantity': 11})
        assert response.status_code == 400
        assert 'المخزون' in response.get_json()['message']

    def test_add_missing_product(self, client, db_session):
        """Test 404 when the product does not exist"""
        response = client.post('/api/cart', json={'sessionId': 's', 'productId': 9999, 'quantity': 1})
        assert response.status_code == 404

    def test_get_cart_only_returns_session_items(self, client, sample_cart):
        """Test carts are keyed by session"""
        assert len(client.get('/api/cart/test-session-123').get_json()) == 1
        assert client.get('/api/cart/someone-else').get_json() == []

    def test_update_cart_item(self, client, sample_cart):
        """Test changing a cart item's quantity"""
        response = client.put(f'/api/cart/{sample_cart.id}', json={'sessionId': 'test-session-123', 'quantity': 5})
        assert response.status_code == 200
        assert response.get_json()['quantity'] == 5

    def test_update_cart_item_invalid(self, client, sample_cart):
        """Test invalid quantities on update"""
        assert client.put(f'/api/cart/{sample_cart.id}', json={'sessionId': 'test-session-123', 'quantity': 0}).status_code == 400
        assert client.put(f'/api/cart/{sample_cart.id}', json={'sessionId': 'test-session-123', 'quantity': 500}).status_code == 400
        assert client.put('/api/cart/9999', json={'sessionId': 'test-session-123', 'quantity': 1}).status_code == 404

    def test_remove_cart_item(self, client, sample_cart, db_session):
        """Test removing an item from the cart"""
        response = client.delete(f'/api/cart/{sample_cart.id}?sessionId=test-session-123')
        assert response.status_code == 200
        assert CartItem.query.count() == 0
        assert CustomerActivity.query.filter_by(action='remove_from_cart').count() == 1

    def test_remove_missing_cart_item(self, client, db_session):
        """Test 404 when removing an unknown item"""
        assert client.delete('/api/cart/9999?sessionId=test-session-123').status_code == 404

    def test_update_cart_item_of_other_session(self, client, sample_cart):
        """Test a cart item cannot be changed from another session"""
        response = client.put(f'/api/cart/{sample_cart.id}', json={'sessionId': 'intruder', 'quantity': 1})
        assert response.status_code == 404
        assert client.put(f'/api/cart/{sample_cart.id}', json={'quantity': 1}).status_code == 404

    def test_remove_cart_item_of_other_session(self, client, sample_cart, db_session):
        """Test a cart item cannot be removed from another session"""
        assert client.delete(f'/api/cart/{sample_cart.id}?sessionId=intruder').status_code == 404
        assert client.delete(f'/api/cart/{sample_cart.id}').status_code == 404
        assert CartItem.query.count() == 1

class TestCheckoutAPI:
    """Tests for order creation"""

    order_payload = {
        'sessionId': 'test-session-123',
        'customerName': 'أحمد محمد',
        'customerPhone': '07801234567',
        'customerEmail': 'ahmad@example.com',
        'shippingAddress': 'حي الأندلس',
        'city': 'الرمادي',
    }

    def test_create_order_from_cart(self, client, sample_cart, sample_product, db_session):
        """Test checkout turns the cart into an order"""
        with patch('app.telegram_service') as mock_telegram:
            response = client.post('/api/orders', json=self.order_payload)

        assert response.status_code == 201
        data = response.get_json()
        assert data['totalAmount'] == '300.00'
        assert data['status'] == 'pending'
        assert data['items'][0]['productId'] == sample_product.id
        mock_telegram.send_order_notification.assert_called_once()

        db_session.refresh(sample_product)
        assert sample_product.stock == 8
        assert CartItem.query.filter_by(session_id='test-session-123').count() == 0
        assert CustomerActivity.query.filter_by(action='place_order').count() == 1

    def test_client_total_is_ignored(self, client, sample_cart, db_session):
        """Test the server computes the total"""
        payload = dict(self.order_payload, totalAmount='1.00')
        response = client.post('/api/orders', json=payload)
        assert response.status_code == 201
        assert response.get_json()['totalAmount'] == '300.00'

    def test_create_order_with_explicit_items(self, client, sample_product, second_product, db_session):
        """Test checkout with an explicit item list"""
        payload = dict(self.order_payload, items=[
            {'productId': sample_product.id, 'quantity': 1},
            {'productId': second_product.id, 'quantity': 2},
        ])
        response = client.post('/api/orders', json=payload)
        assert response.status_code == 201
        assert response.get_json()['totalAmount'] == '250.00'

    def test_create_order_missing_fields(self, client, sample_cart):
        """Test validation errors list the missing fields"""
        response = client.post('/api/orders', json={'sessionId': 'test-session-123'})
        assert response.status_code == 400
        fields = {error['field'] for error in response.get_json()['errors']}
        assert {'customerName', 'customerPhone', 'shippingAddress', 'city'} <= fields

    def test_create_order_empty_cart(self, client, db_session):
        """Test an empty cart cannot be checked out"""
        response = client.post('/api/orders', json=self.order_payload)
        assert response.status_code == 400
        assert Order.query.count() == 0

    def test_create_order_insufficient_stock(self, client, sample_product, db_session):
        """Test an order larger than stock is rejected"""
        payload = dict(self.order_payload, items=[{'productId': sample_product.id, 'quantity': 50}])
        response = client.post('/api/orders', json=payload)
        assert response.status_code == 400
        db_session.refresh(sample_product)
        assert sample_product.stock == 10

    def test_telegram_failure_does_not_fail_order(self, client, sample_cart, db_session):
        """Test a notifier crash still returns the order"""
        with patch('app.telegram_service') as mock_telegram:
            mock_telegram.send_order_notification.side_effect = RuntimeError('boom')
            response = client.post('/api/orders', json=self.order_payload)
        assert response.status_code == 201
        assert Order.query.count() == 1

class TestOrderTrackingAPI:
    """Tests for order tracking endpoints"""

    def test_orders_by_session(self, client, sample_order):
        """Test listing a session's orders"""
        data = client.get('/api/orders/session/test-session-123').get_json()
        assert [o['id'] for o in data] == [sample_order.id]

    def test_get_order_with_matching_session(self, client, sample_order):
        """Test the owning session can read its order"""
        response = client.get(f'/api/orders/{sample_order.id}?sessionId=test-session-123')
        assert response.status_code == 200
        assert response.get_json()['customerName'] == 'أحمد محمد'

    def test_get_order_with_other_session(self, client, sample_order):
        """Test other sessions cannot read the order"""
        assert client.get(f'/api/orders/{sample_order.id}?sessionId=intruder').status_code == 404
        assert client.get(f'/api/orders/{sample_order.id}').status_code == 404

    def test_admin_can_read_any_order(self, client, sample_order, auth_headers):
        """Test admins can read orders without the session"""
        response = client.get(f'/api/orders/{sample_order.id}', headers=auth_headers)
        assert response.status_code == 200

class TestSettingsAndTrackingAPI:
    """Tests for public settings and tracking endpoints"""

    def test_get_settings(self, client, db_session):
        """Test settings are public"""
        from app import storage
        storage.update_store_setting('store_name', 'سنتر المستودع')
        data = client.get('/api/settings').get_json()
        assert data[0]['key'] == 'store_name'
        assert data[0]['value'] == 'سنتر المستودع'

    def test_log_activity(self, client, sample_product, db_session):
        """Test logging a customer activity"""
        response = client.post('/api/activity', json={
            'sessionId': 's1', 'action': 'view_product', 'productId': sample_product.id, 'metadata': {'from': 'home'}
        })
        assert response.status_code == 201
        assert response.get_json()['metadata'] == {'from': 'home'}

    def test_log_activity_invalid(self, client, db_session):
        """Test activity validation"""
        response = client.post('/api/activity', json={'sessionId': 's1'})
        assert response.status_code == 400
        assert response.get_json()['errors'][0]['field'] == 'action'

    def test_track_visitor(self, client, db_session):
        """Test visitor tracking from a local address"""
        client.post('/api/analytics/visitor', json={'sessionId': 'visitor-1'})
        response = client.post('/api/analytics/visitor', json={'sessionId': 'visitor-1'})
        assert response.status_code == 200
        data = response.get_json()
        assert data['pageViews'] == 2
        assert data['country'] == 'العراق'
        assert data['city'] == 'الرمادي'

    def test_track_visitor_session_header(self, client, db_session):
        """Test the session id can come from a header"""
        response = client.post('/api/analytics/visitor', json={}, headers={'X-Session-Id': 'from-header'})
        assert response.get_json()['sessionId'] == 'from-header'

class TestAssetsAPI:
    """Tests for static helpers"""

    def test_placeholder_image(self, client):
        """Test placeholder SVG"""
        response = client.get('/api/placeholder-image')
        assert response.status_code == 200
        assert response.mimetype == 'image/svg+xml'
        assert b'<svg' in response.data

    def test_uploaded_file_served(self, client, app):
        """Test files in the upload folder are served with caching"""
        import os
        path = os.path.join(app.config['UPLOAD_FOLDER'], 'served.txt')
        with open(path, 'w') as f:
            f.write('hello')
        response = client.get('/uploads/served.txt')
        assert response.status_code == 200
        assert response.headers['Cache-Control'] == 'public, max-age=3600'
        response.close()

    def test_unknown_api_route(self, client):
        """Test JSON 404 for unknown routes"""
        response = client.get('/api/does-not-exist')
        assert response.status_code == 404
        assert response.get_json()['message'] == 'المورد غير موجود'
