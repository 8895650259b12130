"""
errors.py - أخطاء نظام تقارير الشكاوى
"""


class ReportError(Exception):
    """الخطأ الأساسي لجميع أخطاء التقارير"""

    status_code = 500

    def __init__(self, message, error_code=None, details=None):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        return {
            'status': 'error',
            'error_code': self.error_code,
            'message': self.message,
        }


class InvalidColumn(ReportError):
    """عمود غير مدعوم في المرشح"""

    status_code = 400

    def __init__(self, column):
        super().__init__(f'Invalid column: {column!r}', details={'column': column})


class InvalidFilter(ReportError):
    """مرشح ناقص أو غير صالح"""

    status_code = 400


class StorageError(ReportError):
    """فشل تنفيذ الاستعلام على قاعدة البيانات"""


class RenderError(ReportError):
    """فشل إنشاء ملف PDF"""


class EmptyDataset(ReportError):
    """لا توجد نتائج والتقرير يتطلب نتيجة واحدة على الأقل"""

    status_code = 404

    def __init__(self, message='No complaints match the selected filters'):
        super().__init__(message)


class ImageFetchSkipped(ReportError):
    """تعذر جلب صورة - يتم تجاهلها دون إيقاف التقرير"""

    def __init__(self, url, reason):
        self.url = url
        self.reason = reason
        super().__init__(f'Skipped image {url}: {reason}', details={'url': url})
