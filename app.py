#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
نظام شكاوى صيانة المكيفات - تطبيق Flask مع SQLite
"""

from flask import Flask, current_app, request, redirect, url_for, session, send_from_directory, jsonify
from flask_wtf import FlaskForm
from flask_wtf.csrf import generate_csrf
from wtforms import StringField, PasswordField, BooleanField, TextAreaField, SelectField, MultipleFileField, validators
from datetime import timedelta
import click
import os

from models import (db, User, Complaint, ComplaintResponse, WorkTime,
                    ROLE_ADMIN, ROLE_EMPLOYEE, CONVENIENT_TIMES, BRANCH_AREAS, utcnow)
from auth import csrf, login_required, get_current_user
from api_routes import api
from report_routes import add_report_routes
from report_filters import isoformat_utc
from report_pdf import humanize_duration
from uploads import UploadRejected, directory_slug, public_image_urls, save_uploaded_images

UAE_MOBILE_PATTERN = r'^(?:\+971|00971|0)?5\d{8}$'


def strip_value(value):
    return value.strip() if isinstance(value, str) else value


# تعريف نموذج تسجيل الدخول
class LoginForm(FlaskForm):
    username = StringField('Username', validators=[validators.DataRequired()])
    password = PasswordField('Password', validators=[validators.DataRequired()])
    remember = BooleanField('Remember me')


# نموذج الشكوى العام (بدون تسجيل دخول)
class ComplaintForm(FlaskForm):
    customer_name = StringField('Name', filters=[strip_value], validators=[
        validators.DataRequired(), validators.Length(min=2, max=50)])
    customer_email = StringField('Email', filters=[strip_value], validators=[
        validators.Optional(), validators.Email(message='Invalid email address')])
    customer_phone = StringField('Phone', filters=[strip_value], validators=[
        validators.DataRequired(),
        validators.Regexp(UAE_MOBILE_PATTERN, message='Enter a valid UAE mobile number')])
    customer_address = StringField('Address', filters=[strip_value], validators=[
        validators.DataRequired(), validators.Length(min=5, max=100)])
    building_name = StringField('Building', filters=[strip_value], validators=[
        validators.DataRequired(), validators.Length(min=1, max=20)])
    apartment_number = StringField('Apartment', filters=[strip_value], validators=[
        validators.DataRequired(), validators.Length(min=1)])
    convenient_time = SelectField('Convenient time', choices=list(CONVENIENT_TIMES.items()),
                                  validators=[validators.DataRequired()])
    area = SelectField('Branch', choices=[(area, area) for area in BRANCH_AREAS],
                       validators=[validators.DataRequired()])
    description = TextAreaField('Description', filters=[strip_value], validators=[
        validators.DataRequired(), validators.Length(min=10, max=500)])
    images = MultipleFileField('Images')


def first_form_error(form):
    """أول رسالة خطأ من النموذج"""
    for field_name, messages in form.errors.items():
        if messages:
            return f'{field_name}: {messages[0]}'
    return 'Invalid form data'


def request_data():
    """بيانات الطلب سواء كانت JSON أو نموذج"""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else request.form


#-------------------------
# تحويل الشكاوى إلى JSON
#-------------------------

def complaint_to_dict(complaint, detail=False):
    base_url = current_app.config['PUBLIC_STORAGE_BASE_URL']

    data = {
        'id': complaint.id,
        'customer_name': complaint.customer_name,
        'customer_phone': complaint.customer_phone,
        'customer_email': complaint.customer_email,
        'customer_address': complaint.customer_address,
        'building_name': complaint.building_name,
        'apartment_number': complaint.apartment_number,
        'area': complaint.area,
        'convenient_time': complaint.convenient_time,
        'convenient_time_label': complaint.convenient_time_label,
        'created_at': isoformat_utc(complaint.created_at),
        'status': complaint.status(),
        'assigned_to': complaint.assignee.to_dict() if complaint.assignee else None,
    }
    if not detail:
        return data

    data['description'] = complaint.description
    data['image_urls'] = public_image_urls(complaint.image_paths, base_url)
    data['responses'] = [{
        'id': resp.id,
        'response': resp.response,
        'responder': resp.responder.full_name if resp.responder else None,
        'created_at': isoformat_utc(resp.created_at),
        'started_at': isoformat_utc(resp.started_at),
        'completed_at': isoformat_utc(resp.completed_at),
        'time_spent': humanize_duration(resp.started_at, resp.completed_at)
        if resp.started_at and resp.completed_at else None,
        'image_urls': public_image_urls(resp.image_paths, base_url),
    } for resp in complaint.responses]
    data['work_times'] = [{
        'id': wt.id,
        'user': wt.user.full_name if wt.user else None,
        'date': wt.date.isoformat(),
        'start_time': isoformat_utc(wt.start_time),
        'end_time': isoformat_utc(wt.end_time),
        'duration': humanize_duration(wt.start_time, wt.end_time) if wt.end_time else None,
    } for wt in complaint.work_times]
    return data


def can_access_complaint(user, complaint):
    """المدير يرى كل الشكاوى والموظف يرى الشكاوى المسندة إليه فقط"""
    return user.role == ROLE_ADMIN or complaint.assigned_to_id == user.id


#-------------------------
# مسارات تسجيل الدخول
#-------------------------

def add_auth_routes(app):
    """مسارات تسجيل الدخول والخروج ولوحة التحكم"""

    @app.route('/')
    def index():
        """الصفحة الرئيسية"""
        if 'user_id' in session:
            return redirect(url_for('dashboard'))
        return redirect(url_for('login'))

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        """تسجيل الدخول"""
        if request.method == 'GET':
            return jsonify({'status': 'success', 'csrf_token': generate_csrf()})

        form = LoginForm()
        if not form.validate_on_submit():
            return jsonify({'status': 'error', 'message': first_form_error(form)}), 400

        user = User.query.filter_by(username=form.username.data).first()
        if not user or not user.verify_password(form.password.data):
            app.logger.warning(f'Failed login attempt for "{form.username.data}"')
            return jsonify({'status': 'error', 'message': 'Invalid username or password'}), 401

        session['user_id'] = user.id
        # "تذكرني" يبقي الجلسة PERMANENT_SESSION_LIFETIME وإلا تنتهي بإغلاق المتصفح
        session.permanent = bool(form.remember.data)

        app.logger.info(f'User {user.username} logged in')
        return redirect(url_for('dashboard'))

    @app.route('/logout', methods=['GET', 'POST'])
    def logout():
        """تسجيل الخروج"""
        session.pop('user_id', None)
        session.pop('report_state', None)
        return redirect(url_for('login'))

    @app.route('/dashboard')
    @login_required()
    def dashboard():
        """التوجيه حسب دور المستخدم"""
        user = get_current_user()
        if user.role == ROLE_ADMIN:
            return redirect(url_for('admin_complaints'))
        return redirect(url_for('employee_complaints'))


#-------------------------
# مسارات الشكاوى
#-------------------------

def add_complaint_routes(app):
    """مسارات تقديم الشكاوى ومتابعتها"""

    @app.route('/complaints', methods=['POST'])
    def submit_complaint():
        """تقديم شكوى جديدة من العميل"""
        form = ComplaintForm()
        if not form.validate_on_submit():
            return jsonify({'status': 'error', 'message': first_form_error(form), 'errors': form.errors}), 400

        try:
            image_paths = save_uploaded_images(
                request.files.getlist('images'),
                directory_slug(form.customer_email.data or form.customer_phone.data))
        except UploadRejected as e:
            return jsonify({'status': 'error', 'message': str(e)}), 400

        complaint = Complaint(
            customer_name=form.customer_name.data,
            customer_email=form.customer_email.data or None,
            customer_phone=form.customer_phone.data,
            customer_address=form.customer_address.data,
            building_name=form.building_name.data,
            apartment_number=form.apartment_number.data,
            area=form.area.data,
            convenient_time=form.convenient_time.data,
            description=form.description.data,
            image_paths=image_paths,
        )
        db.session.add(complaint)
        db.session.commit()

        app.logger.info(f'Complaint #{complaint.id} submitted for {complaint.building_name}')
        return jsonify({
            'status': 'success',
            'message': 'Complaint submitted successfully!',
            'complaint': complaint_to_dict(complaint),
        }), 201

    @app.route('/uploads/<path:filename>')
    def uploaded_file(filename):
        """عرض الصور المرفوعة"""
        return send_from_directory(app.config['UPLOAD_FOLDER'], filename)

    @app.route('/dashboard/admin/complaints')
    @login_required(ROLE_ADMIN)
    def admin_complaints():
        """قائمة جميع الشكاوى للمدير"""
        complaints = Complaint.query.order_by(Complaint.created_at.desc(), Complaint.id.desc()).all()
        status = request.args.get('status')
        items = [complaint_to_dict(c) for c in complaints]
        if status:
            items = [item for item in items if item['status'] == status]
        return jsonify({'status': 'success', 'complaints': items})

    @app.route('/dashboard/employee/complaints')
    @login_required(ROLE_EMPLOYEE)
    def employee_complaints():
        """الشكاوى المسندة للموظف الحالي"""
        user = get_current_user()
        complaints = (Complaint.query
                      .filter_by(assigned_to_id=user.id)
                      .order_by(Complaint.created_at.desc(), Complaint.id.desc())
                      .all())
        return jsonify({'status': 'success', 'complaints': [complaint_to_dict(c) for c in complaints]})

    @app.route('/complaints/<int:complaint_id>')
    @login_required()
    def view_complaint(complaint_id):
        """تفاصيل الشكوى مع الردود وأوقات العمل"""
        complaint = Complaint.query.get_or_404(complaint_id)
        if not can_access_complaint(get_current_user(), complaint):
            return jsonify({'status': 'error', 'message': 'Not authorized to view this complaint'}), 403
        return jsonify({'status': 'success', 'complaint': complaint_to_dict(complaint, detail=True)})

    @app.route('/admin/complaints/<int:complaint_id>/assign', methods=['POST'])
    @login_required(ROLE_ADMIN)
    def assign_complaint(complaint_id):
        """إسناد الشكوى لموظف"""
        complaint = Complaint.query.get_or_404(complaint_id)
        employee_id = request_data().get('employee_id')

        if not employee_id:
            return jsonify({'status': 'error', 'message': 'Please select an employee'}), 400

        try:
            employee_id = int(employee_id)
        except (TypeError, ValueError):
            return jsonify({'status': 'error', 'message': 'Invalid employee id'}), 400

        employee = User.query.filter_by(id=employee_id, role=ROLE_EMPLOYEE).first()
        if not employee:
            return jsonify({'status': 'error', 'message': 'Employee not found'}), 404

        complaint.assigned_to_id = employee.id
        db.session.commit()

        app.logger.info(f'Complaint #{complaint.id} assigned to {employee.username}')
        return jsonify({'status': 'success', 'message': 'Complaint assigned successfully',
                        'complaint': complaint_to_dict(complaint)})

    #-------------------------
    # الردود
    #-------------------------

    def _open_response(complaint_id, user_id):
        return (ComplaintResponse.query
                .filter(ComplaintResponse.complaint_id == complaint_id,
                        ComplaintResponse.responder_id == user_id,
                        ComplaintResponse.started_at.isnot(None),
                        ComplaintResponse.completed_at.is_(None))
                .order_by(ComplaintResponse.started_at.desc())
                .first())

    def _save_response_images(complaint_id):
        return save_uploaded_images(request.files.getlist('images'), f'complaint-{complaint_id}-responses')

    @app.route('/complaints/<int:complaint_id>/responses', methods=['POST'])
    @login_required()
    def add_response(complaint_id):
        """إضافة رد على الشكوى مع صور اختيارية"""
        complaint = Complaint.query.get_or_404(complaint_id)
        user = get_current_user()
        if not can_access_complaint(user, complaint):
            return jsonify({'status': 'error', 'message': 'Not authorized to respond to this complaint'}), 403

        text = (request.form.get('response') or '').strip()
        if not text:
            return jsonify({'status': 'error', 'message': 'Response text is required.'}), 400

        try:
            image_paths = _save_response_images(complaint.id)
        except UploadRejected as e:
            return jsonify({'status': 'error', 'message': str(e)}), 400

        response = ComplaintResponse(response=text, complaint_id=complaint.id,
                                     responder_id=user.id, image_paths=image_paths)
        db.session.add(response)
        db.session.commit()

        return jsonify({'status': 'success', 'message': 'Response added successfully!',
                        'response_id': response.id}), 201

    @app.route('/complaints/<int:complaint_id>/responses/start', methods=['POST'])
    @login_required()
    def start_response(complaint_id):
        """بدء جلسة رد مؤقتة (جلسة مفتوحة واحدة لكل موظف وشكوى)"""
        complaint = Complaint.query.get_or_404(complaint_id)
        user = get_current_user()
        if not can_access_complaint(user, complaint):
            return jsonify({'status': 'error', 'message': 'Not authorized to respond to this complaint'}), 403

        if _open_response(complaint.id, user.id):
            return jsonify({'status': 'error', 'message': 'A response session is already in progress'}), 409

        response = ComplaintResponse(response='', complaint_id=complaint.id, responder_id=user.id,
                                     started_at=utcnow(), image_paths=[])
        db.session.add(response)
        db.session.commit()

        return jsonify({'status': 'success', 'message': 'Response session started',
                        'response_id': response.id,
                        'started_at': isoformat_utc(response.started_at)}), 201

    @app.route('/complaints/<int:complaint_id>/responses/finish', methods=['POST'])
    @login_required()
    def finish_response(complaint_id):
        """إنهاء جلسة الرد المفتوحة وحفظ النص والصور"""
        complaint = Complaint.query.get_or_404(complaint_id)
        user = get_current_user()

        response = _open_response(complaint.id, user.id)
        if not response:
            return jsonify({'status': 'error', 'message': 'No active response session found'}), 404

        text = (request.form.get('response') or '').strip()
        if not text:
            return jsonify({'status': 'error', 'message': 'Response text is required.'}), 400

        try:
            image_paths = _save_response_images(complaint.id)
        except UploadRejected as e:
            return jsonify({'status': 'error', 'message': str(e)}), 400

        response.response = text
        response.image_paths = image_paths
        response.completed_at = utcnow()
        db.session.commit()

        return jsonify({'status': 'success', 'message': 'Response completed',
                        'time_spent': humanize_duration(response.started_at, response.completed_at)})

    #-------------------------
    # أوقات العمل
    #-------------------------

    @app.route('/complaints/<int:complaint_id>/work/start', methods=['POST'])
    @login_required()
    def start_work(complaint_id):
        """بدء وقت العمل على الشكوى"""
        complaint = Complaint.query.get_or_404(complaint_id)
        user = get_current_user()
        if not can_access_complaint(user, complaint):
            return jsonify({'status': 'error', 'message': 'Not authorized to work on this complaint'}), 403

        open_entry = WorkTime.query.filter_by(complaint_id=complaint.id, user_id=user.id, end_time=None).first()
        if open_entry:
            return jsonify({'status': 'error', 'message': 'Work is already in progress'}), 409

        now = utcnow()
        work_time = WorkTime(complaint_id=complaint.id, user_id=user.id, date=now.date(), start_time=now)
        db.session.add(work_time)
        db.session.commit()

        return jsonify({'status': 'success', 'message': 'Work time added successfully!',
                        'work_time_id': work_time.id}), 201

    @app.route('/complaints/<int:complaint_id>/work/end', methods=['POST'])
    @login_required()
    def end_work(complaint_id):
        """إنهاء آخر وقت عمل مفتوح"""
        complaint = Complaint.query.get_or_404(complaint_id)
        user = get_current_user()

        work_time = (WorkTime.query
                     .filter_by(complaint_id=complaint.id, user_id=user.id, end_time=None)
                     .order_by(WorkTime.start_time.desc())
                     .first())
        if not work_time:
            return jsonify({'status': 'error', 'message': 'No active work time found for this complaint.'}), 404

        work_time.end_time = utcnow()
        db.session.commit()

        return jsonify({'status': 'success', 'message': 'Work time ended successfully!',
                        'duration': humanize_duration(work_time.start_time, work_time.end_time)})


#-------------------------
# مسارات إدارة الموظفين
#-------------------------

def add_employee_routes(app):
    """مسارات المدير لإدارة الموظفين"""

    @app.route('/admin/employees')
    @login_required(ROLE_ADMIN)
    def admin_employees():
        """قائمة الموظفين"""
        employees = User.query.filter_by(role=ROLE_EMPLOYEE).order_by(User.full_name).all()
        return jsonify({'status': 'success', 'employees': [e.to_dict() for e in employees]})

    @app.route('/admin/employees', methods=['POST'])
    @login_required(ROLE_ADMIN)
    def admin_add_employee():
        """إضافة موظف جديد"""
        data = request_data()
        full_name = (data.get('full_name') or '').strip()
        username = (data.get('username') or '').strip()
        password = data.get('password') or ''

        if not full_name or not username or not password:
            return jsonify({'status': 'error', 'message': 'Name, username and password are required'}), 400

        # التحقق من عدم وجود اسم مستخدم مكرر
        if User.query.filter_by(username=username).first():
            return jsonify({'status': 'error', 'message': 'Username already exists'}), 400

        user = User(full_name=full_name, username=username, role=ROLE_EMPLOYEE)
        user.password = password
        db.session.add(user)
        db.session.commit()

        app.logger.info(f'Employee {username} created')
        return jsonify({'status': 'success', 'message': 'Employee added successfully',
                        'employee': user.to_dict()}), 201

    @app.route('/admin/employees/delete', methods=['POST'])
    @login_required(ROLE_ADMIN)
    def admin_delete_employees():
        """حذف مجموعة موظفين (لا يمكن حذف المدير)"""
        data = request.get_json(silent=True)
        raw_ids = data.get('employee_ids') if isinstance(data, dict) else request.form.getlist('employee_ids')
        try:
            employee_ids = [int(i) for i in raw_ids or []]
        except (TypeError, ValueError):
            return jsonify({'status': 'error', 'message': 'Invalid employee ids'}), 400

        if not employee_ids:
            return jsonify({'status': 'error', 'message': 'No employee IDs provided for deletion.'}), 400

        employees = User.query.filter(User.id.in_(employee_ids), User.role == ROLE_EMPLOYEE).all()
        if not employees:
            return jsonify({'status': 'error', 'message': 'No employees found or deleted.'}), 404

        for employee in employees:
            WorkTime.query.filter_by(user_id=employee.id).delete()
            ComplaintResponse.query.filter_by(responder_id=employee.id).delete()
            Complaint.query.filter_by(assigned_to_id=employee.id).update({'assigned_to_id': None})
            db.session.delete(employee)
        db.session.commit()

        app.logger.info(f'Deleted {len(employees)} employee(s)')
        return jsonify({'status': 'success', 'message': f'{len(employees)} employee(s) deleted successfully.',
                        'deleted': len(employees)})


#-------------------------
# أوامر سطر الأوامر
#-------------------------

def add_cli_commands(app):

    @app.cli.command('seed')
    @click.option('--admin-username', default='admin')
    @click.option('--admin-password', default='admin123')
    @click.option('--employee-username', default='employee')
    @click.option('--employee-password', default='employee123')
    def seed(admin_username, admin_password, employee_username, employee_password):
        """إنشاء مدير وموظف افتراضيين"""
        db.create_all()
        created = 0
        for username, password, full_name, role in (
                (admin_username, admin_password, 'Administrator', ROLE_ADMIN),
                (employee_username, employee_password, 'Service Employee', ROLE_EMPLOYEE)):
            if User.query.filter_by(username=username).first():
                click.echo(f'User {username} already exists')
                continue
            user = User(full_name=full_name, username=username, role=role)
            user.password = password
            db.session.add(user)
            created += 1
        db.session.commit()
        click.echo(f'Seeded {created} user(s)')


def create_app(test_config=None):
    """إنشاء تطبيق Flask"""
    app = Flask(__name__)
    basedir = os.path.abspath(os.path.dirname(__file__))

    app.config.from_mapping(
        SECRET_KEY=os.environ.get('SECRET_KEY', 'dev-secret-key-change-me'),
        SQLALCHEMY_DATABASE_URI=os.environ.get('DATABASE_URL', 'sqlite:///' + os.path.join(basedir, 'complaints.db')),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        UPLOAD_FOLDER=os.environ.get('UPLOAD_FOLDER', os.path.join(basedir, 'uploads')),
        MAX_CONTENT_LENGTH=16 * 1024 * 1024,  # 16 ميجابايت كحد أقصى للطلب
        PUBLIC_STORAGE_BASE_URL=os.environ.get('PUBLIC_STORAGE_BASE_URL', 'http://localhost:5000/uploads'),
        REPORT_IMAGE_TIMEOUT=float(os.environ.get('REPORT_IMAGE_TIMEOUT', '10')),
        REPORT_IMAGE_WORKERS=int(os.environ.get('REPORT_IMAGE_WORKERS', '4')),
        REPORT_DOWNSCALE_IMAGES=os.environ.get('REPORT_DOWNSCALE_IMAGES', '1').lower() not in ('0', 'false', 'no'),
        REPORT_FONT_PATH=os.environ.get('REPORT_FONT_PATH'),
        PERMANENT_SESSION_LIFETIME=timedelta(days=30),
    )
    if test_config:
        app.config.update(test_config)

    # إعداد مسار المرفقات
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    db.init_app(app)
    csrf.init_app(app)

    # واجهات JSON معفاة من CSRF
    app.register_blueprint(api, url_prefix='/api')
    csrf.exempt(api)

    add_auth_routes(app)
    add_complaint_routes(app)
    add_employee_routes(app)
    add_report_routes(app)
    add_cli_commands(app)

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'status': 'error', 'message': 'Not found'}), 404

    @app.errorhandler(413)
    def too_large(error):
        return jsonify({'status': 'error', 'message': 'Uploaded files are too large'}), 413

    with app.app_context():
        db.create_all()

    return app


# تشغيل التطبيق
if __name__ == '__main__':
    create_app().run(debug=True)
