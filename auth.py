"""
auth.py - تسجيل الدخول والصلاحيات وحماية CSRF المشتركة بين المسارات
"""

from functools import wraps

from flask import jsonify, session
from flask_wtf import CSRFProtect

from models import db, User, ROLE_ADMIN

# كائن CSRF مشترك (يتم ربطه بالتطبيق في create_app)
csrf = CSRFProtect()


def get_current_user():
    """الحصول على المستخدم الحالي"""
    if 'user_id' in session:
        return db.session.get(User, session['user_id'])
    return None


def login_required(user_type=None):
    """التحقق من تسجيل الدخول والصلاحيات (المدير يتجاوز أي قيد على الدور)"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            if 'user_id' not in session:
                return jsonify({'status': 'error', 'message': 'Please log in first'}), 401

            user = get_current_user()
            if not user:
                session.pop('user_id', None)
                return jsonify({'status': 'error', 'message': 'Please log in again'}), 401

            if user_type and user.role != user_type and user.role != ROLE_ADMIN:
                return jsonify({'status': 'error',
                                'message': 'You do not have permission to access this page'}), 403

            return f(*args, **kwargs)
        return wrapped
    return decorator
