"""
api_routes.py - واجهات برمجة التطبيقات للمباني والإمارات
"""

from flask import Blueprint, jsonify, request, current_app
from models import db, Building, ROLE_ADMIN
from auth import login_required

# إنشاء Blueprint للواجهات البرمجية
api = Blueprint('api', __name__)

# ترتيب الإمارات الأكثر استخداماً
EMIRATE_PRIORITY = ['Ajman', 'Sharjah', 'Dubai']


def capitalize(value):
    """تكبير الحرف الأول فقط"""
    if not value:
        return value
    return value[0].upper() + value[1:]


def sort_emirates(emirates):
    """الإمارات ذات الأولوية أولاً ثم الباقي أبجدياً"""
    def key(name):
        if name in EMIRATE_PRIORITY:
            return (0, EMIRATE_PRIORITY.index(name), '')
        return (1, 0, name)
    return sorted(emirates, key=key)


@api.after_request
def after_request(response):
    response.headers.add('Access-Control-Allow-Headers', 'Content-Type,Authorization,X-Requested-With,X-CSRFToken')
    response.headers.add('Access-Control-Allow-Methods', 'GET,POST,DELETE')
    return response


# API لجلب جميع المباني
@api.route('/buildings', methods=['GET'])
def get_buildings():
    """قائمة جميع المباني"""
    buildings = Building.query.order_by(Building.building_name).all()
    return jsonify([building.to_dict() for building in buildings])


# API لجلب الإمارات الموجودة
@api.route('/emirates', methods=['GET'])
def get_emirates():
    """الإمارات المميزة من جدول المباني"""
    rows = db.session.query(Building.emirate).distinct().all()
    emirates = {capitalize(emirate) for (emirate,) in rows if emirate}
    return jsonify(sort_emirates(emirates))


# API لجلب مباني إمارة معينة
@api.route('/buildings/<emirate>', methods=['GET'])
def get_buildings_by_emirate(emirate):
    """مباني الإمارة (بدون مراعاة حالة الأحرف)"""
    buildings = (Building.query
                 .filter(db.func.lower(Building.emirate) == emirate.lower())
                 .order_by(Building.building_name)
                 .all())
    return jsonify([{
        'building_name': building.building_name,
        'emirate': capitalize(building.emirate),
    } for building in buildings])


# API لإضافة مبنى جديد
@api.route('/buildings', methods=['POST'])
@login_required(ROLE_ADMIN)
def add_building():
    """إضافة مبنى جديد"""
    data = request.get_json(silent=True) or request.form
    name = (data.get('building_name') or '').strip()
    emirate = (data.get('emirate') or '').strip()

    if not name:
        return jsonify({'status': 'error', 'message': 'Building name is required.'}), 400

    building = Building(building_name=name, emirate=capitalize(emirate) or None)
    db.session.add(building)
    db.session.commit()

    current_app.logger.info(f'Building "{name}" added')
    return jsonify({
        'status': 'success',
        'message': 'Building added successfully',
        'building': building.to_dict(),
    }), 201


# API لحذف مبنى
@api.route('/buildings/<int:building_id>', methods=['DELETE'])
@login_required(ROLE_ADMIN)
def delete_building(building_id):
    """حذف مبنى"""
    building = Building.query.get_or_404(building_id)
    db.session.delete(building)
    db.session.commit()

    return jsonify({'status': 'success', 'message': 'Building deleted successfully'})
