"""
report_controller.py - حالة شاشة التقارير كآلة حالات صريحة

الحالة تُحفظ في جلسة Flask كقاموس بسيط، وكل إجراء من المستخدم
(اختيار معيار، مبنى، معاينة، تنزيل) ينقلها من حالة إلى أخرى.
"""

import enum
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from errors import InvalidColumn, InvalidFilter, ReportError
from report_filters import (
    PREVIEW_DEFAULT_LIMIT,
    REPORT_DEFAULT_LIMIT,
    ReportCriterion,
    fetch_preview_rows,
    get_unique_options,
    normalize_apartments,
    parse_criterion,
)
from report_pdf import generate_report


class Phase(str, enum.Enum):
    IDLE = 'idle'
    OPTIONS_LOADING = 'optionsLoading'
    OPTIONS_READY = 'optionsReady'
    PREVIEW_LOADING = 'previewLoading'
    PREVIEW_READY = 'previewReady'
    DOWNLOAD_LOADING = 'downloadLoading'


@dataclass
class ReportState:
    """اختيارات المستخدم الحالية ونتائج آخر تحميل"""
    phase: Phase = Phase.IDLE
    criterion: Optional[ReportCriterion] = None
    options: List[dict] = field(default_factory=list)
    apartment_options: List[dict] = field(default_factory=list)
    value: Optional[str] = None
    building_name: Optional[str] = None
    apartment_numbers: List[str] = field(default_factory=list)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    preview_rows: List[dict] = field(default_factory=list)
    error: Optional[str] = None

    def filter_params(self):
        """معاملات المرشح بنفس أسماء build_report_filter"""
        return {
            'criterion': self.criterion.value if self.criterion else None,
            'value': self.value,
            'start_date': self.start_date,
            'end_date': self.end_date,
            'building_name': self.building_name,
            'apartment_numbers': list(self.apartment_numbers),
        }

    def to_dict(self, compact=False):
        """compact يحذف القوائم المحمّلة لتبقى الجلسة صغيرة"""
        data = {
            'phase': self.phase.value,
            'criterion': self.criterion.value if self.criterion else None,
            'options': list(self.options),
            'apartment_options': list(self.apartment_options),
            'value': self.value,
            'building_name': self.building_name,
            'apartment_numbers': list(self.apartment_numbers),
            'start_date': self.start_date,
            'end_date': self.end_date,
            'preview_rows': list(self.preview_rows),
            'error': self.error,
        }
        if compact:
            for key in ('options', 'apartment_options', 'preview_rows'):
                data.pop(key)
            # بدون الصفوف المحفوظة لا توجد معاينة جاهزة
            if self.phase is Phase.PREVIEW_READY:
                data['phase'] = Phase.OPTIONS_READY.value
        return data

    @classmethod
    def from_dict(cls, data):
        if not data:
            return cls()
        return cls(
            phase=Phase(data.get('phase') or Phase.IDLE.value),
            criterion=parse_criterion(data.get('criterion')),
            options=list(data.get('options') or []),
            apartment_options=list(data.get('apartment_options') or []),
            value=data.get('value'),
            building_name=data.get('building_name'),
            apartment_numbers=list(data.get('apartment_numbers') or []),
            start_date=data.get('start_date'),
            end_date=data.get('end_date'),
            preview_rows=list(data.get('preview_rows') or []),
            error=data.get('error'),
        )


@dataclass
class ReportBackend:
    """العمليات التي يستدعيها المتحكم (قابلة للاستبدال في الاختبارات)"""
    options: Callable = get_unique_options
    preview: Callable = fetch_preview_rows
    download: Callable = generate_report


class ReportController:
    """تنفيذ إجراءات شاشة التقارير على ReportState"""

    def __init__(self, backend=None, state=None):
        self.backend = backend or ReportBackend()
        self.state = state or ReportState()

    #-------------------------
    # الاختيارات
    #-------------------------

    def select_criterion(self, criterion):
        """اختيار معيار جديد يعيد جميع الاختيارات التابعة إلى حالتها الفارغة"""
        criterion = parse_criterion(criterion)
        if criterion is None:
            self.state = ReportState()
            return self.state
        self.state = ReportState(phase=Phase.OPTIONS_LOADING, criterion=criterion)
        self._load_options()
        return self.state

    def _load_options(self):
        state = self.state
        if state.criterion.is_date:
            state.options = []
        else:
            try:
                state.options = self.backend.options(state.criterion.value, None)
            except ReportError as e:
                state.options = []
                state.error = e.message
        state.phase = Phase.OPTIONS_READY

    def select_value(self, value):
        self.state.value = value or None
        self.state.error = None
        return self.state

    def select_building(self, building_name):
        """اختيار مبنى يحمّل قائمة شقق هذا المبنى فقط"""
        state = self.state
        if state.criterion is not ReportCriterion.BUILDING_NAME:
            raise InvalidFilter('A building can only be selected for the buildingName criterion')
        state.building_name = building_name or None
        state.apartment_numbers = []
        state.apartment_options = []
        state.error = None
        if state.building_name is None:
            return state

        state.phase = Phase.OPTIONS_LOADING
        try:
            state.apartment_options = self.backend.options(
                ReportCriterion.APARTMENT_NUMBER.value,
                {ReportCriterion.BUILDING_NAME.value: state.building_name})
        except ReportError as e:
            state.error = e.message
        state.phase = Phase.OPTIONS_READY
        return state

    def select_apartments(self, apartment_numbers):
        self.state.apartment_numbers = list(normalize_apartments(apartment_numbers))
        self.state.error = None
        return self.state

    def select_dates(self, start_date=None, end_date=None):
        self.state.start_date = start_date or None
        self.state.end_date = end_date or None
        self.state.error = None
        return self.state

    #-------------------------
    # الجاهزية
    #-------------------------

    @property
    def can_preview(self):
        state = self.state
        if state.criterion is None:
            return False
        if state.phase in (Phase.OPTIONS_LOADING, Phase.PREVIEW_LOADING, Phase.DOWNLOAD_LOADING):
            return False
        if state.criterion is ReportCriterion.BUILDING_NAME:
            return bool(state.building_name or state.apartment_numbers)
        if state.criterion.is_date:
            return bool(state.start_date and state.end_date)
        return bool(state.value)

    @property
    def can_download(self):
        return self.can_preview

    #-------------------------
    # المعاينة والتنزيل
    #-------------------------

    def preview(self, limit=PREVIEW_DEFAULT_LIMIT):
        """
        تحميل صفوف المعاينة

        أخطاء شكل الاستعلام تُفرغ القائمة دون رفع خطأ؛ أخطاء التخزين تُسجل في error.
        """
        state = self.state
        if not self.can_preview:
            state.error = 'Complete the selection before previewing'
            return state

        state.phase = Phase.PREVIEW_LOADING
        state.error = None
        try:
            state.preview_rows = self.backend.preview(limit=limit, **state.filter_params())
        except (InvalidFilter, InvalidColumn):
            state.preview_rows = []
        except ReportError as e:
            state.preview_rows = []
            state.error = e.message
        state.phase = Phase.PREVIEW_READY
        return state

    def download(self, limit=REPORT_DEFAULT_LIMIT):
        """
        إنشاء التقرير وإعادته

        عند الفشل تبقى الحالة السابقة كما هي مع رسالة خطأ، ويُعاد None.
        """
        if not self.can_download:
            self.state.error = 'Complete the selection before downloading'
            return None

        previous = ReportState.from_dict(self.state.to_dict())
        self.state.phase = Phase.DOWNLOAD_LOADING
        try:
            document = self.backend.download(limit=limit, **self.state.filter_params())
        except ReportError as e:
            previous.error = e.message
            self.state = previous
            return None
        self.state.phase = Phase.IDLE
        self.state.error = None
        return document
