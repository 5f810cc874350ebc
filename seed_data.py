"""
Seed script: creates the admin account, the Watches / Perfumes categories,
four sample products and the default store settings.

Rows that already exist (same username, slug, SKU or setting key) are left
untouched, so running it twice is harmless.

Run: python3 seed_data.py   (or: flask --app app seed)
"""
import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.dirname(__file__))
from app import app, db, storage, Category, Product, StoreSetting

ADMIN_USERNAME = os.getenv('SEED_ADMIN_USERNAME', 'admin')
ADMIN_PASSWORD = os.getenv('SEED_ADMIN_PASSWORD', 'admin123')
ADMIN_EMAIL = 'admin@centermustaudaa.com'

CATEGORIES = [
    {
        'name': 'Watches',
        'name_ar': 'الساعات',
        'slug': 'watches',
        'description': 'Premium watches collection',
        'description_ar': 'مجموعة الساعات الفاخرة',
    },
    {
        'name': 'Perfumes',
        'name_ar': 'العطور',
        'slug': 'perfumes',
        'description': 'Luxury perfumes collection',
        'description_ar': 'مجموعة العطور الفاخرة',
    },
]

# category slug -> products
PRODUCTS = {
    'watches': [
        {
            'name': 'Rolex Automatic',
            'name_ar': 'ساعة رولكس أوتوماتيك',
            'description': 'Premium automatic watch with steel case',
            'description_ar': 'ساعة أوتوماتيك فاخرة بعلبة من الستانلس ستيل',
            'price': Decimal('250000'),
            'original_price': Decimal('280000'),
            'images': ['https://images.unsplash.com/photo-1522312346375-d1a52e2b99b3?w=500'],
            'sku': 'ROL-AUTO-001',
            'stock': 5,
            'is_featured': True,
            'tags': ['luxury', 'automatic', 'steel'],
        },
        {
            'name': 'Citizen Eco-Drive',
            'name_ar': 'ساعة سيتيزن إيكو درايف',
            'description': 'Solar powered watch with date display',
            'description_ar': 'ساعة تعمل بالطاقة الشمسية مع عرض التاريخ',
            'price': Decimal('180000'),
            'original_price': None,
            'images': ['https://images.unsplash.com/photo-1547996160-81dfa63595aa?w=500'],
            'sku': 'CIT-ECO-001',
            'stock': 8,
            'is_featured': True,
            'tags': ['solar', 'citizen', 'eco-friendly'],
        },
    ],
    'perfumes': [
        {
            'name': 'Chanel No. 5',
            'name_ar': 'عطر شانيل رقم 5',
            'description': 'Classic French perfume for women',
            'description_ar': 'عطر فرنسي كلاسيكي للنساء',
            'price': Decimal('120000'),
            'original_price': Decimal('140000'),
            'images': ['https://images.unsplash.com/photo-1541643600914-78b084683601?w=500'],
            'sku': 'CHA-NO5-100',
            'stock': 12,
            'is_featured': True,
            'tags': ['chanel', 'women', 'classic'],
        },
        {
            'name': 'Dior Sauvage',
            'name_ar': 'عطر ديور سوفاج',
            'description': 'Modern masculine fragrance',
            'description_ar': 'عطر رجالي عصري',
            'price': Decimal('95000'),
            'original_price': None,
            'images': ['https://images.unsplash.com/photo-1595425970377-c9b0c1123b57?w=500'],
            'sku': 'DIO-SAU-100',
            'stock': 15,
            'is_featured': False,
            'tags': ['dior', 'men', 'modern'],
        },
    ],
}

STORE_SETTINGS = {
    'store_name': 'سنتر المستودع للساعات والعطور',
    'store_name_en': 'Center Warehouse for Watches and Perfumes',
    'store_description': 'وجهتك الأولى للساعات والعطور الفاخرة في العراق',
    'store_address': 'الرمادي المستودع قرب مول الستي سنتر',
    'store_city': 'الرمادي',
    'store_country': 'العراق',
    'store_phone1': '07813961800',
    'store_phone2': '07810125388',
    'store_email': 'info@centermustaudaa.com',
    'whatsapp_number': '9647813961800',
    'primary_color': '#1B365D',
    'secondary_color': '#F4A460',
    'accent_color': '#FF6B35',
}


def seed_database():
    """Insert the default data; returns a dict of how many rows were created per entity."""
    created = {'users': 0, 'categories': 0, 'products': 0, 'settings': 0}

    db.create_all()
    print("🌱 بدء تعبئة قاعدة البيانات...")

    if not storage.get_user_by_username(ADMIN_USERNAME):
        storage.create_user(ADMIN_USERNAME, ADMIN_PASSWORD, email=ADMIN_EMAIL, role='admin')
        created['users'] += 1

    categories = {}
    for data in CATEGORIES:
        category = Category.query.filter_by(slug=data['slug']).first()
        if not category:
            category = Category(is_active=True, **data)
            db.session.add(category)
            created['categories'] += 1
        categories[data['slug']] = category
    db.session.commit()

    for slug, products in PRODUCTS.items():
        for data in products:
            if Product.query.filter_by(sku=data['sku']).first():
                continue
            db.session.add(Product(category_id=categories[slug].id, is_active=True, **data))
            created['products'] += 1
    db.session.commit()

    for key, value in STORE_SETTINGS.items():
        if not StoreSetting.query.filter_by(key=key).first():
            db.session.add(StoreSetting(key=key, value=value))
            created['settings'] += 1
    db.session.commit()

    print("✅ تم تعبئة قاعدة البيانات بنجاح!")
    print(f"  users={created['users']} categories={created['categories']} "
          f"products={created['products']} settings={created['settings']}")
    print("📋 بيانات تسجيل الدخول للإدارة:")
    print(f"اسم المستخدم: {ADMIN_USERNAME}")
    return created


def main():
    with app.app_context():
        try:
            seed_database()
        except Exception as e:
            db.session.rollback()
            print(f"❌ خطأ في تعبئة قاعدة البيانات: {e}")
            raise


if __name__ == '__main__':
    main()
