"""
report_filters.py - بناء مرشحات تقارير الشكاوى وجلب البيانات والخيارات

جميع المرشحات تُدمج بـ AND فقط. نطاق التاريخ يعتمد أيام UTC كاملة:
البداية شاملة من 00:00:00 والنهاية حصرية عند 00:00:00 من اليوم التالي.
"""

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from errors import InvalidColumn, InvalidFilter, StorageError
from models import db, Complaint
from uploads import public_image_urls

# قيمة خاصة تعني "أي قيمة" ولا تضيف أي قيد
ANY_VALUE = '__all__'

PREVIEW_UPPER_BOUND = 500
REPORT_UPPER_BOUND = 1000
PREVIEW_DEFAULT_LIMIT = 50
REPORT_DEFAULT_LIMIT = 1000


class ReportCriterion(str, enum.Enum):
    """المعيار الأساسي للتقرير"""
    CUSTOMER_PHONE = 'customerPhone'
    BUILDING_NAME = 'buildingName'
    APARTMENT_NUMBER = 'apartmentNumber'
    CREATED_AT = 'createdAt'

    @property
    def label(self):
        return CRITERION_LABELS[self]

    @property
    def is_date(self):
        return self is ReportCriterion.CREATED_AT


CRITERION_LABELS = {
    ReportCriterion.CUSTOMER_PHONE: 'Customer Phone',
    ReportCriterion.BUILDING_NAME: 'Building Name',
    ReportCriterion.APARTMENT_NUMBER: 'Apartment Number',
    ReportCriterion.CREATED_AT: 'Created At (Date Range)',
}

# الأعمدة المسموح بها للتصفية بالمطابقة التامة
SCALAR_COLUMNS = {
    ReportCriterion.CUSTOMER_PHONE: Complaint.customer_phone,
    ReportCriterion.BUILDING_NAME: Complaint.building_name,
    ReportCriterion.APARTMENT_NUMBER: Complaint.apartment_number,
}


def parse_criterion(value, allow_date=True):
    """تحويل اسم المعيار إلى ReportCriterion أو رفض القيم غير المعروفة"""
    if value is None or value == '':
        return None
    if isinstance(value, ReportCriterion):
        criterion = value
    else:
        try:
            criterion = ReportCriterion(str(value).strip())
        except ValueError:
            raise InvalidColumn(value) from None
    if criterion.is_date and not allow_date:
        raise InvalidColumn(value)
    return criterion


def parse_day(value, field_name):
    """قراءة تاريخ بصيغة YYYY-MM-DD"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), '%Y-%m-%d').date()
    except ValueError:
        raise InvalidFilter(f'{field_name} must be a date in YYYY-MM-DD format') from None


def utc_day_start(day):
    """بداية اليوم بتوقيت UTC (بدون منطقة زمنية كما في قاعدة البيانات)"""
    return datetime.combine(day, time.min)


def normalize_apartments(apartment_numbers):
    """إزالة المسافات والقيم الفارغة والمكررة مع الحفاظ على الترتيب"""
    if apartment_numbers is None:
        return ()
    if isinstance(apartment_numbers, str):
        apartment_numbers = [apartment_numbers]
    result = []
    for raw in apartment_numbers:
        if raw is None:
            continue
        value = str(raw).strip()
        if value and value not in result:
            result.append(value)
    return tuple(result)


def _is_blank(value):
    return value is None or str(value).strip() == ''


@dataclass(frozen=True)
class ReportFilter:
    """مرشح التقرير بعد التحقق منه - لا يحتوي أي آثار جانبية"""
    criterion: Optional[ReportCriterion] = None
    value: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    building_name: Optional[str] = None
    apartment_numbers: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def start(self):
        return utc_day_start(self.start_date) if self.start_date else None

    @property
    def end_exclusive(self):
        return utc_day_start(self.end_date + timedelta(days=1)) if self.end_date else None

    def clauses(self):
        """قائمة شروط SQLAlchemy التي تُدمج بـ AND"""
        clauses = []
        if self.criterion is not None and self.criterion.is_date:
            clauses.append(Complaint.created_at >= self.start)
            clauses.append(Complaint.created_at < self.end_exclusive)
        elif self.criterion is not None and self.value is not None:
            clauses.append(SCALAR_COLUMNS[self.criterion] == self.value)

        if self.building_name:
            clauses.append(Complaint.building_name == self.building_name)

        if self.apartment_numbers:
            clauses.append(Complaint.apartment_number.in_(self.apartment_numbers))

        return clauses

    def describe(self):
        """وصف المرشحات بنص مقروء لترويسة التقرير"""
        parts = []
        if self.criterion is not None and self.criterion.is_date:
            parts.append(f'Created between {self.start_date.isoformat()} and {self.end_date.isoformat()}')
        elif self.criterion is not None and self.value is not None:
            parts.append(f'{self.criterion.label}: {self.value}')
        if self.building_name and not (
                self.criterion is ReportCriterion.BUILDING_NAME and self.value == self.building_name):
            parts.append(f'Building: {self.building_name}')
        if self.apartment_numbers:
            parts.append('Apartments: ' + ', '.join(self.apartment_numbers))
        return parts

    @property
    def description(self):
        return '; '.join(self.describe()) or 'All complaints'


def build_report_filter(criterion=None, value=None, start_date=None, end_date=None,
                        building_name=None, apartment_numbers=None):
    """
    بناء مرشح التقرير من اختيارات المستخدم

    Raises:
        InvalidColumn: معيار غير مدعوم
        InvalidFilter: تواريخ ناقصة أو غير صالحة لمعيار التاريخ
    """
    criterion = parse_criterion(criterion)

    start = end = None
    scalar_value = None
    if criterion is not None and criterion.is_date:
        if _is_blank(start_date) or _is_blank(end_date):
            raise InvalidFilter('startDate and endDate are required for createdAt')
        start = parse_day(start_date, 'startDate')
        end = parse_day(end_date, 'endDate')
        if end < start:
            raise InvalidFilter('endDate must not be before startDate')
    elif criterion is not None and not _is_blank(value) and value != ANY_VALUE:
        scalar_value = str(value)

    building = None if _is_blank(building_name) else str(building_name).strip()

    return ReportFilter(
        criterion=criterion,
        value=scalar_value,
        start_date=start,
        end_date=end,
        building_name=building,
        apartment_numbers=normalize_apartments(apartment_numbers),
    )


#-------------------------
# خيارات القوائم المنسدلة
#-------------------------

def _option_filter_clauses(filters):
    """شروط إضافية لقائمة الخيارات: قيمة واحدة = مساواة، قائمة = عضوية"""
    clauses = []
    for key, wanted in (filters or {}).items():
        criterion = parse_criterion(key, allow_date=False)
        if criterion is None:
            continue
        column = SCALAR_COLUMNS[criterion]
        if isinstance(wanted, (list, tuple, set)):
            values = normalize_apartments(list(wanted))
            if values:
                clauses.append(column.in_(values))
        elif not _is_blank(wanted) and wanted != ANY_VALUE:
            clauses.append(column == str(wanted).strip())
    return clauses


def get_unique_options(column, filters=None):
    """
    القيم المميزة لعمود معين مرتبة تصاعدياً بصيغة {value, label}

    أرقام الشقق تُدمج دون مراعاة حالة الأحرف بعد إزالة المسافات،
    ويُعرض أول شكل ظهر منها.
    """
    criterion = parse_criterion(column, allow_date=False)
    if criterion is None:
        raise InvalidColumn(column)
    model_column = SCALAR_COLUMNS[criterion]
    clauses = _option_filter_clauses(filters)

    try:
        rows = (db.session.query(model_column)
                .filter(*clauses)
                .distinct()
                .order_by(model_column.asc())
                .all())
    except SQLAlchemyError as e:
        current_app.logger.error(f'Failed to load options for {criterion.value}: {e}')
        raise StorageError('Failed to load filter options') from e

    case_insensitive = criterion is ReportCriterion.APARTMENT_NUMBER
    seen = set()
    options = []
    for (raw,) in rows:
        if _is_blank(raw):
            continue
        display = str(raw).strip()
        key = display.upper() if case_insensitive else display
        if key in seen:
            continue
        seen.add(key)
        options.append({'value': display, 'label': display})
    # الترتيب على القيمة المعروضة بعد إزالة المسافات
    options.sort(key=lambda option: option['value'])
    return options


#-------------------------
# جلب بيانات المعاينة والتقرير
#-------------------------

def clamp_limit(limit, upper_bound, default):
    """حصر عدد الصفوف بين 1 والحد الأعلى"""
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = default
    return min(max(limit, 1), upper_bound)


def isoformat_utc(value):
    """تنسيق ISO 8601 بتوقيت UTC مثل 2024-03-10T23:59:59.000Z"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f'{value.microsecond // 1000:03d}Z'


def _run_query(report_filter, limit):
    try:
        return (Complaint.query
                .filter(*report_filter.clauses())
                .order_by(Complaint.created_at.desc(), Complaint.id.desc())
                .limit(limit)
                .all())
    except SQLAlchemyError as e:
        current_app.logger.error(f'Complaint query failed ({report_filter.description}): {e}')
        raise StorageError('Failed to query complaints') from e


def _base_row(complaint, base_url):
    return {
        'id': complaint.id,
        'customer_name': complaint.customer_name,
        'customer_email': complaint.customer_email,
        'customer_phone': complaint.customer_phone,
        'customer_address': complaint.customer_address,
        'building_name': complaint.building_name,
        'apartment_number': complaint.apartment_number,
        'area': complaint.area,
        'description': complaint.description,
        'created_at': isoformat_utc(complaint.created_at),
        'image_urls': public_image_urls(complaint.image_paths, base_url),
    }


def fetch_preview_rows(limit=PREVIEW_DEFAULT_LIMIT, report_filter=None, **filter_params):
    """صفوف المعاينة (500 صف كحد أقصى)"""
    if report_filter is None:
        report_filter = build_report_filter(**filter_params)
    limit = clamp_limit(limit, PREVIEW_UPPER_BOUND, PREVIEW_DEFAULT_LIMIT)
    base_url = current_app.config['PUBLIC_STORAGE_BASE_URL']
    return [_base_row(c, base_url) for c in _run_query(report_filter, limit)]


def fetch_report_rows(limit=REPORT_DEFAULT_LIMIT, report_filter=None, **filter_params):
    """صفوف التقرير الكامل (1000 صف كحد أقصى) مع الردود وأوقات العمل"""
    if report_filter is None:
        report_filter = build_report_filter(**filter_params)
    limit = clamp_limit(limit, REPORT_UPPER_BOUND, REPORT_DEFAULT_LIMIT)
    base_url = current_app.config['PUBLIC_STORAGE_BASE_URL']

    rows = []
    try:
        for complaint in _run_query(report_filter, limit):
            row = _base_row(complaint, base_url)
            row['convenient_time'] = complaint.convenient_time
            row['assigned_to'] = complaint.assignee.full_name if complaint.assignee else None
            row['work_times'] = [{
                'user': wt.user.full_name if wt.user else None,
                'date': wt.date.isoformat() if wt.date else None,
                'start_time': isoformat_utc(wt.start_time),
                'end_time': isoformat_utc(wt.end_time),
            } for wt in complaint.work_times]
            row['responses'] = [{
                'responder': resp.responder.full_name if resp.responder else None,
                'response': resp.response,
                'created_at': isoformat_utc(resp.created_at),
                'started_at': isoformat_utc(resp.started_at),
                'completed_at': isoformat_utc(resp.completed_at),
                'image_urls': public_image_urls(resp.image_paths, base_url),
            } for resp in complaint.responses]
            rows.append(row)
    except SQLAlchemyError as e:
        current_app.logger.error(f'Failed to load complaint details: {e}')
        raise StorageError('Failed to load complaint details') from e
    return rows


def filter_params_from_args(args):
    """قراءة معاملات المرشح من request.args"""
    return {
        'criterion': args.get('criterion'),
        'value': args.get('value'),
        'start_date': args.get('start_date') or args.get('startDate'),
        'end_date': args.get('end_date') or args.get('endDate'),
        'building_name': args.get('building_name') or args.get('buildingName'),
        'apartment_numbers': args.getlist('apartment_numbers') or args.getlist('apartmentNumbers'),
    }
