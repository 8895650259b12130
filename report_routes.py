"""
report_routes.py - مسارات Flask لتقارير الشكاوى (خيارات، معاينة، تنزيل PDF)
"""

import io

from flask import Blueprint, current_app, jsonify, request, send_file, session

from auth import login_required
from errors import ReportError
from models import ROLE_ADMIN
from report_controller import ReportController, ReportState
from report_filters import (
    PREVIEW_DEFAULT_LIMIT,
    REPORT_DEFAULT_LIMIT,
    ReportCriterion,
    fetch_preview_rows,
    filter_params_from_args,
    get_unique_options,
)
from report_pdf import generate_report

reports = Blueprint('reports', __name__, url_prefix='/admin/reports')

# مفتاح حالة شاشة التقارير في الجلسة
SESSION_KEY = 'report_state'


def _truthy(value):
    return str(value).lower() in ('1', 'true', 'yes')


def _payload():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else request.form


def _payload_list(name):
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        value = data.get(name) or []
        return value if isinstance(value, list) else [value]
    return request.form.getlist(name)


def _controller():
    """متحكم مبني على الحالة المحفوظة في الجلسة"""
    return ReportController(state=ReportState.from_dict(session.get(SESSION_KEY)))


def _state_response(controller, status_code=200, **extra):
    session[SESSION_KEY] = controller.state.to_dict(compact=True)
    payload = {
        'status': 'success' if status_code < 400 else 'error',
        'state': controller.state.to_dict(),
        'can_preview': controller.can_preview,
        'can_download': controller.can_download,
    }
    payload.update(extra)
    return jsonify(payload), status_code


#-------------------------
# واجهات بدون حالة
#-------------------------

@reports.route('/options/<column>')
@login_required(ROLE_ADMIN)
def report_options(column):
    """القيم المميزة لعمود المعيار"""
    filters = {}
    building_name = request.args.get('building_name') or request.args.get('buildingName')
    if building_name:
        filters[ReportCriterion.BUILDING_NAME.value] = building_name
    apartments = request.args.getlist('apartment_numbers') or request.args.getlist('apartmentNumbers')
    if apartments:
        filters[ReportCriterion.APARTMENT_NUMBER.value] = apartments

    options = get_unique_options(column, filters)
    return jsonify({'status': 'success', 'column': column, 'options': options})


@reports.route('/preview')
@login_required(ROLE_ADMIN)
def report_preview():
    """صفوف المعاينة"""
    limit = request.args.get('limit', PREVIEW_DEFAULT_LIMIT)
    rows = fetch_preview_rows(limit=limit, **filter_params_from_args(request.args))
    return jsonify({'status': 'success', 'count': len(rows), 'rows': rows})


@reports.route('/download')
@login_required(ROLE_ADMIN)
def report_download():
    """تنزيل تقرير PDF (أو JSON بترميز base64)"""
    document = generate_report(
        limit=request.args.get('limit', REPORT_DEFAULT_LIMIT),
        require_rows=_truthy(request.args.get('require_rows')),
        **filter_params_from_args(request.args))

    if request.args.get('encoding') == 'base64':
        return jsonify(document.to_base64_dict())

    return send_file(
        io.BytesIO(document.content),
        mimetype='application/pdf',
        as_attachment=True,
        download_name=document.file_name,
    )


#-------------------------
# واجهات الحالة المحفوظة في الجلسة
#-------------------------

@reports.route('/state')
@login_required(ROLE_ADMIN)
def report_state():
    return _state_response(_controller())


@reports.route('/criterion', methods=['POST'])
@login_required(ROLE_ADMIN)
def report_select_criterion():
    """اختيار المعيار وإعادة ضبط الاختيارات التابعة"""
    controller = _controller()
    controller.select_criterion(_payload().get('criterion'))
    return _state_response(controller)


@reports.route('/value', methods=['POST'])
@login_required(ROLE_ADMIN)
def report_select_value():
    controller = _controller()
    controller.select_value(_payload().get('value'))
    return _state_response(controller)


@reports.route('/building', methods=['POST'])
@login_required(ROLE_ADMIN)
def report_select_building():
    """اختيار المبنى وتحميل شققه"""
    controller = _controller()
    controller.select_building(_payload().get('building_name'))
    return _state_response(controller)


@reports.route('/apartments', methods=['POST'])
@login_required(ROLE_ADMIN)
def report_select_apartments():
    controller = _controller()
    controller.select_apartments(_payload_list('apartment_numbers'))
    return _state_response(controller)


@reports.route('/dates', methods=['POST'])
@login_required(ROLE_ADMIN)
def report_select_dates():
    data = _payload()
    controller = _controller()
    controller.select_dates(data.get('start_date'), data.get('end_date'))
    return _state_response(controller)


@reports.route('/preview', methods=['POST'])
@login_required(ROLE_ADMIN)
def report_run_preview():
    controller = _controller()
    controller.preview(limit=_payload().get('limit', PREVIEW_DEFAULT_LIMIT))
    return _state_response(controller)


@reports.route('/download', methods=['POST'])
@login_required(ROLE_ADMIN)
def report_run_download():
    """إنشاء التقرير من الاختيارات الحالية - الحالة لا تتغير عند الفشل"""
    controller = _controller()
    document = controller.download(limit=_payload().get('limit', REPORT_DEFAULT_LIMIT))
    if document is None:
        return _state_response(controller, status_code=400, message=controller.state.error)
    return _state_response(controller, document=document.to_base64_dict())


def add_report_routes(app):
    """
    إضافة مسارات التقارير إلى تطبيق Flask

    Args:
        app: تطبيق Flask
    """
    app.register_blueprint(reports)

    @app.errorhandler(ReportError)
    def handle_report_error(error):
        if error.status_code >= 500:
            current_app.logger.error(f'Report request failed: {error.message}')
        else:
            current_app.logger.warning(f'Rejected report request: {error.message}')
        return jsonify(error.to_dict()), error.status_code
