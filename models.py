"""
models.py - نماذج قاعدة البيانات لنظام شكاوى صيانة المكيفات
"""

from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timezone

# إنشاء كائن قاعدة البيانات
db = SQLAlchemy()

ROLE_ADMIN = 'ADMIN'
ROLE_EMPLOYEE = 'EMPLOYEE'
ROLES = (ROLE_ADMIN, ROLE_EMPLOYEE)

# الفترات المناسبة للزيارة (12 فترة كل منها ساعتان)
CONVENIENT_TIMES = {
    'EIGHT_AM_TO_TEN_AM': '8:00 AM - 10:00 AM',
    'TEN_AM_TO_TWELVE_PM': '10:00 AM - 12:00 PM',
    'TWELVE_PM_TO_TWO_PM': '12:00 PM - 2:00 PM',
    'TWO_PM_TO_FOUR_PM': '2:00 PM - 4:00 PM',
    'FOUR_PM_TO_SIX_PM': '4:00 PM - 6:00 PM',
    'SIX_PM_TO_EIGHT_PM': '6:00 PM - 8:00 PM',
    'EIGHT_PM_TO_TEN_PM': '8:00 PM - 10:00 PM',
    'TEN_PM_TO_TWELVE_AM': '10:00 PM - 12:00 AM',
    'TWELVE_AM_TO_TWO_AM': '12:00 AM - 2:00 AM',
    'TWO_AM_TO_FOUR_AM': '2:00 AM - 4:00 AM',
    'FOUR_AM_TO_SIX_AM': '4:00 AM - 6:00 AM',
    'SIX_AM_TO_EIGHT_AM': '6:00 AM - 8:00 AM',
}

# الفروع المتاحة في نموذج الشكوى
BRANCH_AREAS = [
    'Al Nuaimia 1 - Ajman', 'Al Jerf - Ajman',
    'Taawun - Sharjah', 'Al Nahda - Sharjah', 'Al Khan - Sharjah',
    'Al Majaz 1 - Sharjah', 'Al Majaz 2 - Sharjah', 'Abu Shagara - Sharjah',
    'Al Qasimia - Sharjah', 'Muwaileh - Sharjah', 'Industrial 15 - Sharjah',
    'Al Nahda - Dubai', 'Al Qusais - Dubai', 'Al Garhoud - Dubai',
    'Warsan - Dubai', 'Silicon - Dubai', 'Ras al Khor - Dubai',
    'Al Barsha - Dubai', 'DIP - Dubai', 'DIC - Dubai',
]


def utcnow():
    """الوقت الحالي بتوقيت UTC بدون منطقة زمنية (كما يُخزن في قاعدة البيانات)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(db.Model):
    """نموذج المستخدم (مدير أو موظف)"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    username = db.Column(db.String(100), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_EMPLOYEE)  # ADMIN, EMPLOYEE
    created_at = db.Column(db.DateTime, default=utcnow)

    assigned_complaints = db.relationship('Complaint', backref='assignee', lazy='dynamic',
                                          foreign_keys='Complaint.assigned_to_id')

    @property
    def password(self):
        raise AttributeError('Password is not readable')

    @password.setter
    def password(self, password):
        self.password_hash = generate_password_hash(password)

    def verify_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN

    def to_dict(self):
        return {
            'id': self.id,
            'full_name': self.full_name,
            'username': self.username,
            'role': self.role,
        }


class Building(db.Model):
    """نموذج المباني (قائمة مرجعية يديرها المدير)"""
    __tablename__ = 'buildings'

    id = db.Column(db.Integer, primary_key=True)
    building_name = db.Column(db.String(100), nullable=False)
    emirate = db.Column(db.String(50))

    def to_dict(self):
        return {
            'id': self.id,
            'building_name': self.building_name,
            'emirate': self.emirate,
        }


class Complaint(db.Model):
    """نموذج الشكوى"""
    __tablename__ = 'complaints'

    id = db.Column(db.Integer, primary_key=True)
    customer_name = db.Column(db.String(100), nullable=False)
    customer_phone = db.Column(db.String(20), nullable=False, index=True)
    customer_email = db.Column(db.String(120))
    customer_address = db.Column(db.String(200), nullable=False)
    building_name = db.Column(db.String(100), nullable=False, index=True)
    apartment_number = db.Column(db.String(20), index=True)
    area = db.Column(db.String(100), nullable=False, default='')
    description = db.Column(db.Text, nullable=False)
    image_paths = db.Column(db.JSON, nullable=False, default=list)
    convenient_time = db.Column(db.String(30))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    assigned_to_id = db.Column(db.Integer, db.ForeignKey('users.id'))

    responses = db.relationship('ComplaintResponse', backref='complaint', lazy='dynamic',
                                cascade='all, delete-orphan',
                                order_by='ComplaintResponse.created_at')
    work_times = db.relationship('WorkTime', backref='complaint', lazy='dynamic',
                                 cascade='all, delete-orphan',
                                 order_by='WorkTime.start_time')

    @property
    def convenient_time_label(self):
        return CONVENIENT_TIMES.get(self.convenient_time)

    def status(self):
        """حالة الشكوى حسب آخر سجل وقت عمل"""
        latest = self.work_times.order_by(WorkTime.start_time.desc()).first()
        if latest is None:
            return 'Incomplete'
        return 'Completed' if latest.end_time else 'In Progress'


class ComplaintResponse(db.Model):
    """نموذج ردود الموظفين على الشكوى"""
    __tablename__ = 'complaint_responses'

    id = db.Column(db.Integer, primary_key=True)
    response = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    image_paths = db.Column(db.JSON, nullable=False, default=list)

    complaint_id = db.Column(db.Integer, db.ForeignKey('complaints.id'), nullable=False)
    responder_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    responder = db.relationship('User', backref='responses')


class WorkTime(db.Model):
    """نموذج سجل وقت العمل على الشكوى"""
    __tablename__ = 'work_times'

    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.DateTime, nullable=False, default=utcnow)
    end_time = db.Column(db.DateTime)  # فارغ = العمل ما زال جارياً

    complaint_id = db.Column(db.Integer, db.ForeignKey('complaints.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    user = db.relationship('User', backref='work_times')

    def is_open(self):
        return self.end_time is None
