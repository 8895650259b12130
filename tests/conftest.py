import io
from datetime import datetime

import pytest
from PIL import Image

from app import create_app
from errors import ImageFetchSkipped
from models import db, User, Complaint, ROLE_ADMIN, ROLE_EMPLOYEE


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test',
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'WTF_CSRF_ENABLED': False,
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'PUBLIC_STORAGE_BASE_URL': 'https://storage.test/uploads',
        'REPORT_IMAGE_WORKERS': 1,
        'REPORT_DOWNSCALE_IMAGES': False,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin(app):
    user = User(full_name='Admin User', username='admin', role=ROLE_ADMIN)
    user.password = 'secret'
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def employee(app):
    user = User(full_name='Sam Technician', username='sam', role=ROLE_EMPLOYEE)
    user.password = 'secret'
    db.session.add(user)
    db.session.commit()
    return user


def login(client, user):
    with client.session_transaction() as sess:
        sess['user_id'] = user.id


@pytest.fixture
def make_complaint(app):
    def factory(**overrides):
        values = {
            'customer_name': 'Layla Hassan',
            'customer_phone': '0501234567',
            'customer_email': 'layla@example.com',
            'customer_address': 'Street 4, Al Nahda',
            'building_name': 'Tower A',
            'apartment_number': '101',
            'area': 'Al Nahda - Dubai',
            'description': 'The AC unit in the bedroom is leaking water.',
            'convenient_time': 'EIGHT_AM_TO_TEN_AM',
            'image_paths': [],
            'created_at': datetime(2024, 3, 10, 12, 0, 0),
        }
        values.update(overrides)
        complaint = Complaint(**values)
        db.session.add(complaint)
        db.session.commit()
        return complaint
    return factory


def image_bytes(size=(40, 20), color='red', fmt='PNG'):
    buffer = io.BytesIO()
    Image.new('RGB', size, color).save(buffer, format=fmt)
    return buffer.getvalue()


class FakeFetcher:
    """جلب صور من قاموس في الذاكرة"""

    def __init__(self, images, failing=()):
        self.images = images
        self.failing = set(failing)
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        if url in self.failing or url not in self.images:
            raise ImageFetchSkipped(url, 'HTTP 404')
        return self.images[url]
