import os
from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))

from app import app, db

with app.app_context():
    db.create_all()

if __name__ == '__main__':
    app.run()
