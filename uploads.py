"""
uploads.py - حفظ صور الشكاوى والردود وتحويل مساراتها إلى روابط عامة
"""

import logging
import os
import re
import uuid

from flask import current_app
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {'image/jpeg', 'image/png', 'image/jpg'}
ALLOWED_IMAGE_EXTENSIONS = {'jpg', 'jpeg', 'png'}
MAX_IMAGES = 5
MAX_IMAGE_SIZE = 2 * 1024 * 1024  # 2 ميجابايت


class UploadRejected(ValueError):
    """ملف مرفوض (نوع أو حجم غير مسموح)"""


def public_image_url(path, base_url):
    """تحويل مسار التخزين إلى رابط كامل بإضافة العنوان الأساسي"""
    if not path:
        return None
    if path.startswith('http://') or path.startswith('https://'):
        return path
    return base_url.rstrip('/') + '/' + path.lstrip('/')


def public_image_urls(paths, base_url):
    """تحويل قائمة مسارات إلى روابط مع تجاهل القيم الفارغة"""
    urls = []
    for path in paths or []:
        url = public_image_url(path, base_url)
        if url:
            urls.append(url)
    return urls


def directory_slug(value):
    """اسم مجلد آمن من البريد أو رقم الهاتف"""
    slug = re.sub(r'[^a-zA-Z0-9_-]', '_', value or '')
    return slug or uuid.uuid4().hex


def _file_size(storage):
    storage.stream.seek(0, os.SEEK_END)
    size = storage.stream.tell()
    storage.stream.seek(0)
    return size


def save_uploaded_images(files, directory_name):
    """
    التحقق من الصور المرفوعة وحفظها في مجلد التحميلات

    Args:
        files: قائمة FileStorage من request.files.getlist
        directory_name: اسم المجلد الفرعي داخل مجلد التحميلات

    Returns:
        قائمة المسارات النسبية المحفوظة
    """
    files = [f for f in files if f and f.filename]
    if len(files) > MAX_IMAGES:
        raise UploadRejected(f'You can upload a maximum of {MAX_IMAGES} images.')

    # التحقق من جميع الملفات قبل حفظ أي منها
    for storage in files:
        extension = storage.filename.rsplit('.', 1)[-1].lower() if '.' in storage.filename else ''
        if storage.mimetype not in ALLOWED_IMAGE_TYPES or extension not in ALLOWED_IMAGE_EXTENSIONS:
            raise UploadRejected(f'Invalid file detected: {storage.filename}. Supported types are jpeg, png.')
        if _file_size(storage) > MAX_IMAGE_SIZE:
            raise UploadRejected(f'Invalid file detected: {storage.filename}. Max size is 2MB.')

    if not files:
        return []

    folder = secure_filename(directory_name) or uuid.uuid4().hex
    upload_dir = os.path.join(current_app.config['UPLOAD_FOLDER'], folder)
    os.makedirs(upload_dir, exist_ok=True)

    saved_paths = []
    for storage in files:
        extension = storage.filename.rsplit('.', 1)[-1].lower()
        stored_filename = f'{uuid.uuid4().hex}.{extension}'
        storage.save(os.path.join(upload_dir, stored_filename))
        saved_paths.append(f'{folder}/{stored_filename}')

    logger.info('Saved %d image(s) under %s', len(saved_paths), folder)
    return saved_paths
