"""
report_pdf.py - إنشاء تقرير الشكاوى بصيغة PDF

يتم الإنشاء على مرحلتين:
1. تجهيز الصور: جلب كل صورة مرة واحدة وتصغيرها، وتسجيل الصور التي فشل جلبها.
2. التخطيط: رسم الصفحات من البيانات وجدول الصور فقط دون أي اتصال بالشبكة.
"""

import base64
import io
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List

import arabic_reshaper
import requests
from bidi.algorithm import get_display
from flask import current_app
from fpdf import FPDF
from fpdf.enums import XPos, YPos
from PIL import Image, ImageOps

from errors import EmptyDataset, ImageFetchSkipped, RenderError, ReportError
from models import CONVENIENT_TIMES, utcnow
from report_filters import REPORT_DEFAULT_LIMIT, build_report_filter, fetch_report_rows

logger = logging.getLogger(__name__)

EMPTY_PLACEHOLDER = '—'
MAX_IMAGE_SIZE = (900, 900)
ARABIC_RE = re.compile('[؀-ۿݐ-ݿﭐ-﷿ﹰ-﻿]')

# أبعاد الصفحة بالمليمتر (A4)
PAGE_MARGIN = 15
CONTENT_WIDTH = 210 - 2 * PAGE_MARGIN
LINE_HEIGHT = 5
SECTION_HEADER_HEIGHT = 8
SECTION_HEADER_SPACING = 1
LABEL_WIDTH = 38
IMAGE_COLUMNS = 3
IMAGE_GAP = 3
IMAGE_MAX_HEIGHT = 45

# ألوان التصميم
HEADER_BACKGROUND = (24, 116, 205)
TEXT_COLOR = (0, 0, 0)
MUTED_COLOR = (110, 110, 110)
SUMMARY_BACKGROUND = (240, 244, 250)


#-------------------------
# الوقت والمدة
#-------------------------

def parse_timestamp(value):
    """تحويل datetime أو نص ISO إلى datetime بتوقيت UTC بدون منطقة زمنية"""
    if value is None or value == '':
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _plural(count, word):
    return f'{count} {word}' if count == 1 else f'{count} {word}s'


def humanize_duration(start, end):
    """
    المدة بين وقتين بصيغة "H hours and M minutes"

    الدقائق محسوبة بالتقريب للأسفل، والمدة السالبة تُعامل كصفر.
    """
    start = parse_timestamp(start)
    end = parse_timestamp(end)
    total_minutes = int((end - start).total_seconds() // 60)
    total_minutes = max(total_minutes, 0)
    hours, minutes = divmod(total_minutes, 60)
    return f'{_plural(hours, "hour")} and {_plural(minutes, "minute")}'


def convenient_time_label(key):
    """اسم الفترة المناسبة أو شرطة عند عدم التعرف عليها"""
    return CONVENIENT_TIMES.get(key) or EMPTY_PLACEHOLDER


def _format_timestamp(value):
    value = parse_timestamp(value)
    return value.strftime('%Y-%m-%d %H:%M') + ' UTC' if value else EMPTY_PLACEHOLDER


#-------------------------
# تجهيز الصور
#-------------------------

class ImageTranscoder:
    """واجهة تصغير الصور قبل تضمينها"""

    def transcode(self, data):
        raise NotImplementedError


class PassthroughTranscoder(ImageTranscoder):
    """بدون تصغير - تُعاد البيانات كما هي"""

    def transcode(self, data):
        return data


class PillowTranscoder(ImageTranscoder):
    """تصغير الصور إلى 900x900 كحد أقصى وإعادة ترميزها JPEG"""

    def __init__(self, max_size=MAX_IMAGE_SIZE, quality=80):
        self.max_size = max_size
        self.quality = quality

    def transcode(self, data):
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode in ('RGBA', 'LA', 'P'):
                img = img.convert('RGBA')
                background = Image.new('RGB', img.size, (255, 255, 255))
                background.paste(img, mask=img.split()[-1])
                img = background
            elif img.mode != 'RGB':
                img = img.convert('RGB')
            img.thumbnail(self.max_size)
            output = io.BytesIO()
            img.save(output, format='JPEG', quality=self.quality, optimize=True)
            return output.getvalue()


class HttpImageFetcher:
    """جلب الصور عبر HTTP"""

    def __init__(self, timeout=10, session=None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, url):
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ImageFetchSkipped(url, str(e)) from e
        if not 200 <= response.status_code < 300:
            raise ImageFetchSkipped(url, f'HTTP {response.status_code}')
        return response.content


@dataclass
class ImageAsset:
    url: str
    data: bytes
    width: int
    height: int


@dataclass
class AssetTable:
    """جدول الصور الجاهزة: صورة واحدة لكل رابط، مع أسباب فشل الروابط الأخرى"""
    assets: Dict[str, ImageAsset] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    def get(self, url):
        return self.assets.get(url)

    def __len__(self):
        return len(self.assets)


def probe_image_size(data):
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def load_image_asset(url, fetcher, transcoder):
    """جلب صورة واحدة وتصغيرها - يرفع ImageFetchSkipped عند الفشل"""
    original = fetcher.fetch(url)
    try:
        data = transcoder.transcode(original)
    except Exception as e:
        logger.warning('Image downscale failed for %s, embedding original bytes: %s', url, e)
        data = original
    try:
        width, height = probe_image_size(data)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageFetchSkipped(url, 'not a decodable image') from e
    return ImageAsset(url=url, data=data, width=width, height=height)


def collect_image_urls(rows):
    """روابط الصور بالترتيب دون تكرار (صور الشكوى ثم صور الردود)"""
    urls = []
    for row in rows:
        candidates = list(row.get('image_urls') or [])
        for resp in row.get('responses') or []:
            candidates.extend(resp.get('image_urls') or [])
        for url in candidates:
            if url and url not in urls:
                urls.append(url)
    return urls


def prepare_assets(rows, fetcher=None, transcoder=None, max_workers=1):
    """
    المرحلة الأولى: جلب جميع الصور المطلوبة للتقرير

    الصور التي يفشل جلبها تُسجل في failed ولا توقف التقرير.
    """
    fetcher = fetcher or HttpImageFetcher()
    transcoder = transcoder or PassthroughTranscoder()
    urls = collect_image_urls(rows)
    table = AssetTable()

    def attempt(url):
        try:
            return url, load_image_asset(url, fetcher, transcoder), None
        except ImageFetchSkipped as skipped:
            return url, None, skipped.reason

    if max_workers and max_workers > 1 and len(urls) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = list(pool.map(attempt, urls))
    else:
        results = [attempt(url) for url in urls]

    for url, asset, reason in results:
        if asset is None:
            logger.warning('Skipping report image %s: %s', url, reason)
            table.failed[url] = reason
        else:
            table.assets[url] = asset
    return table


#-------------------------
# تقسيم النص إلى أسطر
#-------------------------

def _split_long_word(word, width, measure):
    pieces = []
    current = ''
    for char in word:
        if current and measure(current + char) > width:
            pieces.append(current)
            current = char
        else:
            current += char
    if current:
        pieces.append(current)
    return pieces


def wrap_text(text, width, measure):
    """
    تقسيم النص إلى أسطر لا يتجاوز عرضها width

    measure دالة تُعيد عرض النص بنفس وحدة width. الأسطر الفارغة تبقى.
    """
    if text is None or text == '':
        return []
    lines = []
    for paragraph in str(text).replace('\r\n', '\n').split('\n'):
        words = paragraph.split()
        if not words:
            lines.append('')
            continue
        current = ''
        for word in words:
            candidate = f'{current} {word}' if current else word
            if measure(candidate) <= width:
                current = candidate
                continue
            if current:
                lines.append(current)
            if measure(word) <= width:
                current = word
            else:
                pieces = _split_long_word(word, width, measure)
                lines.extend(pieces[:-1])
                current = pieces[-1]
        lines.append(current)
    return lines


def fit_image(asset, max_width, max_height):
    """أبعاد الصورة داخل مربع مع الحفاظ على النسبة"""
    if not asset.width or not asset.height:
        return max_width, max_height
    scale = min(max_width / asset.width, max_height / asset.height)
    return asset.width * scale, asset.height * scale


#-------------------------
# التخطيط
#-------------------------

@dataclass
class ReportSummary:
    criterion_label: str
    filters: List[str]
    generated_at: datetime


class ComplaintReportPDF(FPDF):
    """مستند PDF لتقرير الشكاوى"""

    def __init__(self, font_path=None):
        super().__init__(orientation='P', unit='mm', format='A4')
        self.set_margins(PAGE_MARGIN, PAGE_MARGIN, PAGE_MARGIN)
        self.set_auto_page_break(True, margin=PAGE_MARGIN)
        self.unicode_font = bool(font_path)
        if font_path:
            # خط يدعم العربية
            self.add_font('ReportFont', '', font_path)
            self.add_font('ReportFont', 'B', font_path)
            self.report_font = 'ReportFont'
        else:
            # النسخ الحديثة من fpdf2 تدعم windows-1252 للخطوط الأساسية
            if hasattr(self, 'core_fonts_encoding'):
                self.core_fonts_encoding = 'windows-1252'
            self.report_font = 'Helvetica'

    def pdf_text(self, value):
        """تجهيز النص للخط المستخدم"""
        if value is None or value == '':
            return ''
        text = str(value)
        if self.unicode_font:
            if ARABIC_RE.search(text):
                return get_display(arabic_reshaper.reshape(text))
            return text
        encoding = getattr(self, 'core_fonts_encoding', None) or 'latin-1'
        return text.encode(encoding, errors='replace').decode(encoding)

    def measure(self, text):
        return self.get_string_width(self.pdf_text(text))

    def footer(self):
        self.set_y(-12)
        self.set_font(self.report_font, '', 8)
        self.set_text_color(*MUTED_COLOR)
        self.cell(0, 8, f'Page {self.page_no()}/{{nb}}', align='C')

    def ensure_space(self, height):
        """صفحة جديدة إذا لم تكف المساحة المتبقية"""
        if self.get_y() + height > self.page_break_trigger:
            self.add_page()
            return True
        return False

    def write_line(self, text, height=LINE_HEIGHT, style='', size=10, color=TEXT_COLOR, x=None, width=0):
        self.ensure_space(height)
        self.set_font(self.report_font, style, size)
        self.set_text_color(*color)
        self.set_x(PAGE_MARGIN if x is None else x)
        self.cell(width, height, self.pdf_text(text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    def write_paragraph(self, text, size=10, indent=0, color=TEXT_COLOR):
        """نص كامل مقسم إلى أسطر (بدون قص)"""
        self.set_font(self.report_font, '', size)
        width = CONTENT_WIDTH - indent
        for line in wrap_text(text, width, self.measure):
            self.write_line(line, size=size, x=PAGE_MARGIN + indent, color=color)

    def write_field(self, label, value):
        """سطر "عنوان: قيمة" مع تقسيم القيمة الطويلة"""
        value_width = CONTENT_WIDTH - LABEL_WIDTH
        self.set_font(self.report_font, '', 10)
        lines = wrap_text(value if value not in (None, '') else EMPTY_PLACEHOLDER,
                          value_width, self.measure) or [EMPTY_PLACEHOLDER]
        for index, line in enumerate(lines):
            self.ensure_space(LINE_HEIGHT)
            self.set_x(PAGE_MARGIN)
            self.set_font(self.report_font, 'B', 10)
            self.set_text_color(*TEXT_COLOR)
            self.cell(LABEL_WIDTH, LINE_HEIGHT, self.pdf_text(label + ':') if index == 0 else '')
            self.set_font(self.report_font, '', 10)
            self.cell(value_width, LINE_HEIGHT, self.pdf_text(line),
                      new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    def summary_block(self, summary, row_count):
        """ترويسة التقرير: المعيار والمرشحات ووقت الإنشاء وعدد الصفوف"""
        self.set_font(self.report_font, 'B', 16)
        self.set_text_color(*HEADER_BACKGROUND)
        self.cell(0, 10, self.pdf_text('Complaints Report'), align='C',
                  new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.ln(2)

        top = self.get_y()
        self.write_field('Report by', summary.criterion_label)
        self.write_field('Filters', '; '.join(summary.filters) if summary.filters else 'All complaints')
        self.write_field('Generated', summary.generated_at.strftime('%Y-%m-%d %H:%M') + ' UTC')
        self.write_field('Complaints', str(row_count))
        bottom = self.get_y()
        self.set_draw_color(200, 200, 200)
        self.rect(PAGE_MARGIN - 2, top - 1, CONTENT_WIDTH + 4, bottom - top + 2, 'D')
        self.ln(6)

    def section_header(self, row):
        # الترويسة لا تنفصل عن أول سطر من المحتوى
        self.ensure_space(SECTION_HEADER_HEIGHT + SECTION_HEADER_SPACING + LINE_HEIGHT)
        y = self.get_y()
        self.set_fill_color(*HEADER_BACKGROUND)
        self.rect(PAGE_MARGIN, y, CONTENT_WIDTH, SECTION_HEADER_HEIGHT, 'F')
        self.set_text_color(255, 255, 255)
        self.set_font(self.report_font, 'B', 11)
        self.set_xy(PAGE_MARGIN + 2, y)
        self.cell(CONTENT_WIDTH / 2, SECTION_HEADER_HEIGHT, self.pdf_text(f'Complaint #{row.get("id")}'))
        self.set_font(self.report_font, '', 9)
        self.cell(CONTENT_WIDTH / 2 - 4, SECTION_HEADER_HEIGHT,
                  self.pdf_text(_format_timestamp(row.get('created_at'))), align='R',
                  new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.ln(SECTION_HEADER_SPACING)

    def image_grid(self, urls, assets):
        """شبكة الصور - الصور غير المتاحة في الجدول يتم تخطيها"""
        available = [assets.get(url) for url in urls if assets.get(url) is not None]
        if not available:
            return
        cell_width = (CONTENT_WIDTH - IMAGE_GAP * (IMAGE_COLUMNS - 1)) / IMAGE_COLUMNS
        for start in range(0, len(available), IMAGE_COLUMNS):
            batch = available[start:start + IMAGE_COLUMNS]
            sizes = [fit_image(asset, cell_width, IMAGE_MAX_HEIGHT) for asset in batch]
            row_height = max(h for _, h in sizes)
            self.ensure_space(row_height + IMAGE_GAP)
            y = self.get_y()
            for column, (asset, (w, h)) in enumerate(zip(batch, sizes)):
                x = PAGE_MARGIN + column * (cell_width + IMAGE_GAP) + (cell_width - w) / 2
                self.image(io.BytesIO(asset.data), x=x, y=y, w=w, h=h)
            self.set_y(y + row_height + IMAGE_GAP)

    def work_time_lines(self, work_times):
        for entry in work_times or []:
            who = entry.get('user') or EMPTY_PLACEHOLDER
            started = _format_timestamp(entry.get('start_time'))
            if entry.get('end_time'):
                duration = humanize_duration(entry.get('start_time'), entry.get('end_time'))
                text = f'{who}: {started} to {_format_timestamp(entry.get("end_time"))} ({duration})'
            else:
                text = f'{who}: started {started} (in progress)'
            self.write_paragraph(text, size=9, indent=4)

    def response_blocks(self, responses, assets):
        for resp in responses or []:
            heading = f'{resp.get("responder") or EMPTY_PLACEHOLDER} on {_format_timestamp(resp.get("created_at"))}'
            if resp.get('started_at') and resp.get('completed_at'):
                heading += ' - time spent: ' + humanize_duration(resp['started_at'], resp['completed_at'])
            self.ensure_space(LINE_HEIGHT * 2)
            self.write_line(heading, style='B', size=9, x=PAGE_MARGIN + 4)
            self.write_paragraph(resp.get('response'), size=9, indent=4)
            self.image_grid(resp.get('image_urls') or [], assets)

    def complaint_section(self, row, assets):
        """قسم شكوى واحدة"""
        self.section_header(row)
        self.write_field('Customer', row.get('customer_name'))
        self.write_field('Phone', row.get('customer_phone'))
        self.write_field('Email', row.get('customer_email'))
        self.write_field('Address', row.get('customer_address'))
        self.write_field('Building', row.get('building_name'))
        self.write_field('Apartment', row.get('apartment_number'))
        self.write_field('Area', row.get('area'))
        self.write_field('Convenient time', convenient_time_label(row.get('convenient_time')))
        if 'assigned_to' in row:
            self.write_field('Assigned to', row.get('assigned_to'))

        self.ensure_space(LINE_HEIGHT * 2)
        self.write_line('Description:', style='B')
        self.write_paragraph(row.get('description') or EMPTY_PLACEHOLDER)

        if row.get('image_urls'):
            self.ln(2)
            self.image_grid(row['image_urls'], assets)

        if row.get('work_times'):
            self.ensure_space(LINE_HEIGHT * 2)
            self.write_line('Work time:', style='B')
            self.work_time_lines(row['work_times'])

        if row.get('responses'):
            self.ensure_space(LINE_HEIGHT * 2)
            self.write_line('Responses:', style='B')
            self.response_blocks(row['responses'], assets)

        self.ln(6)


def render_report(rows, assets, summary, require_rows=False, font_path=None):
    """
    المرحلة الثانية: رسم التقرير وإرجاعه كبايتات

    لا يقوم بأي اتصال بالشبكة؛ الصور غير الموجودة في assets يتم تخطيها.

    Raises:
        EmptyDataset: لا توجد صفوف و require_rows مفعّل
        RenderError: فشل التخطيط - لا يُعاد ملف ناقص
    """
    if require_rows and not rows:
        raise EmptyDataset()
    try:
        pdf = ComplaintReportPDF(font_path=font_path)
        pdf.add_page()
        pdf.summary_block(summary, len(rows))
        if not rows:
            pdf.write_line('No complaints match the selected filters.', color=MUTED_COLOR)
        for row in rows:
            pdf.complaint_section(row, assets)
        return bytes(pdf.output())
    except ReportError:
        raise
    except Exception as e:
        logger.error('Report layout failed: %s', e)
        raise RenderError('Failed to render the report document') from e


#-------------------------
# نقطة التنزيل
#-------------------------

@dataclass
class ReportDocument:
    file_name: str
    content: bytes

    def to_base64_dict(self):
        return {
            'fileName': self.file_name,
            'content': base64.b64encode(self.content).decode('ascii'),
        }


def build_report_filename(report_filter, generated_at):
    """اسم ملف آمن مشتق من وصف المرشحات والتاريخ"""
    slug = re.sub(r'[^A-Za-z0-9]+', '-', report_filter.description).strip('-').lower()
    slug = slug[:60].rstrip('-') or 'all-complaints'
    return f'complaints-report_{slug}_{generated_at.strftime("%Y%m%d-%H%M%S")}.pdf'


def generate_report(limit=REPORT_DEFAULT_LIMIT, require_rows=False, fetcher=None,
                    transcoder=None, **filter_params):
    """
    إنشاء تقرير PDF كامل من معاملات المرشح

    Returns:
        ReportDocument يحتوي اسم الملف والمحتوى
    """
    report_filter = build_report_filter(**filter_params)
    rows = fetch_report_rows(limit=limit, report_filter=report_filter)
    if require_rows and not rows:
        raise EmptyDataset()

    config = current_app.config
    if transcoder is None:
        transcoder = PillowTranscoder() if config.get('REPORT_DOWNSCALE_IMAGES', True) else PassthroughTranscoder()
    if fetcher is None:
        fetcher = HttpImageFetcher(timeout=config.get('REPORT_IMAGE_TIMEOUT', 10))
    try:
        assets = prepare_assets(rows, fetcher=fetcher, transcoder=transcoder,
                                max_workers=config.get('REPORT_IMAGE_WORKERS', 4))
    except ReportError:
        raise
    except Exception as e:
        logger.error('Report image preparation failed: %s', e)
        raise RenderError('Failed to prepare report images') from e

    generated_at = utcnow()
    summary = ReportSummary(
        criterion_label=report_filter.criterion.label if report_filter.criterion else 'All complaints',
        filters=report_filter.describe(),
        generated_at=generated_at,
    )
    content = render_report(rows, assets, summary, require_rows=require_rows,
                            font_path=config.get('REPORT_FONT_PATH'))
    current_app.logger.info(
        f'Generated report "{report_filter.description}" with {len(rows)} complaint(s), '
        f'{len(assets)} image(s), {len(assets.failed)} skipped')
    return ReportDocument(file_name=build_report_filename(report_filter, generated_at), content=content)
