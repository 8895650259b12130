import io
from datetime import datetime

import pytest
from PIL import Image

import report_pdf
from conftest import FakeFetcher, image_bytes
from errors import EmptyDataset, InvalidFilter, RenderError
from report_filters import build_report_filter
from report_pdf import (
    EMPTY_PLACEHOLDER,
    AssetTable,
    ComplaintReportPDF,
    ImageAsset,
    PassthroughTranscoder,
    PillowTranscoder,
    ReportSummary,
    build_report_filename,
    convenient_time_label,
    generate_report,
    humanize_duration,
    prepare_assets,
    render_report,
    wrap_text,
)

SUMMARY = ReportSummary(criterion_label='Building Name', filters=['Building: Tower A'],
                        generated_at=datetime(2024, 3, 12, 9, 30))


def row(**overrides):
    values = {
        'id': 7,
        'customer_name': 'Layla Hassan',
        'customer_phone': '0501234567',
        'customer_email': None,
        'customer_address': 'Street 4, Al Nahda',
        'building_name': 'Tower A',
        'apartment_number': '101',
        'area': 'Al Nahda - Dubai',
        'description': 'The AC unit in the bedroom is leaking water.',
        'created_at': '2024-03-10T12:00:00.000Z',
        'convenient_time': 'EIGHT_AM_TO_TEN_AM',
        'image_urls': [],
    }
    values.update(overrides)
    return values


class FailingTranscoder:

    def transcode(self, data):
        raise ValueError('resize library unavailable')


class TestHumanizeDuration:

    def test_hours_and_minutes(self):
        assert humanize_duration(datetime(2024, 1, 1, 8, 0), datetime(2024, 1, 1, 10, 5)) == '2 hours and 5 minutes'

    def test_singular_minute(self):
        assert humanize_duration(datetime(2024, 1, 1, 8, 0), datetime(2024, 1, 1, 8, 1)) == '0 hours and 1 minute'

    def test_negative_interval_is_zero(self):
        assert humanize_duration(datetime(2024, 1, 1, 9, 0), datetime(2024, 1, 1, 8, 0)) == '0 hours and 0 minutes'

    def test_partial_minutes_round_down(self):
        assert humanize_duration('2024-01-01T08:00:00.000Z', '2024-01-01T09:00:59.000Z') == '1 hour and 0 minutes'


class TestWrapText:

    def test_lines_fit_width(self):
        lines = wrap_text('the quick brown fox jumps over the lazy dog', 10, len)
        assert all(len(line) <= 10 for line in lines)
        assert ' '.join(lines) == 'the quick brown fox jumps over the lazy dog'

    def test_long_word_is_split(self):
        assert wrap_text('abcdefghij', 4, len) == ['abcd', 'efgh', 'ij']

    def test_keeps_paragraph_breaks(self):
        assert wrap_text('one\n\ntwo', 10, len) == ['one', '', 'two']

    def test_empty_text(self):
        assert wrap_text('', 10, len) == []
        assert wrap_text(None, 10, len) == []


class TestPrepareAssets:

    def test_failed_fetch_is_skipped(self):
        urls = ['https://img.test/1.png', 'https://img.test/2.png', 'https://img.test/3.png']
        fetcher = FakeFetcher({url: image_bytes() for url in urls}, failing=[urls[1]])

        assets = prepare_assets([row(image_urls=urls)], fetcher=fetcher, transcoder=PassthroughTranscoder())

        assert list(assets.assets) == [urls[0], urls[2]]
        assert list(assets.failed) == [urls[1]]

    def test_each_url_fetched_once_in_order(self):
        urls = [f'https://img.test/{i}.png' for i in range(6)]
        fetcher = FakeFetcher({url: image_bytes() for url in urls})
        rows = [row(id=1, image_urls=urls[:4]), row(id=2, image_urls=urls[2:])]

        assets = prepare_assets(rows, fetcher=fetcher, transcoder=PassthroughTranscoder(), max_workers=3)

        assert list(assets.assets) == urls
        assert sorted(fetcher.calls) == sorted(urls)

    def test_response_images_are_collected(self):
        url = 'https://img.test/response.png'
        fetcher = FakeFetcher({url: image_bytes()})

        assets = prepare_assets([row(responses=[{'response': 'done', 'image_urls': [url]}])], fetcher=fetcher)

        assert assets.get(url) is not None

    def test_transcoder_failure_embeds_original(self):
        url = 'https://img.test/1.png'
        original = image_bytes(size=(30, 15))
        fetcher = FakeFetcher({url: original})

        assets = prepare_assets([row(image_urls=[url])], fetcher=fetcher, transcoder=FailingTranscoder())

        asset = assets.get(url)
        assert asset.data == original
        assert (asset.width, asset.height) == (30, 15)

    def test_undecodable_bytes_count_as_failure(self):
        url = 'https://img.test/broken.png'
        fetcher = FakeFetcher({url: b'not an image'})

        assets = prepare_assets([row(image_urls=[url])], fetcher=fetcher, transcoder=PassthroughTranscoder())

        assert len(assets) == 0
        assert url in assets.failed

    def test_oversized_image_is_skipped(self):
        url = 'https://img.test/huge.png'
        buffer = io.BytesIO()
        Image.new('1', (14000, 14000)).save(buffer, format='PNG')
        fetcher = FakeFetcher({url: buffer.getvalue()})

        for transcoder in (PassthroughTranscoder(), PillowTranscoder()):
            assets = prepare_assets([row(image_urls=[url])], fetcher=fetcher, transcoder=transcoder)

            assert len(assets) == 0
            assert url in assets.failed


def test_pillow_transcoder_downscales_to_jpeg():
    data = PillowTranscoder().transcode(image_bytes(size=(2000, 1000), fmt='PNG'))

    with Image.open(io.BytesIO(data)) as img:
        assert img.format == 'JPEG'
        assert img.size == (900, 450)


def test_pillow_transcoder_flattens_transparency():
    buffer = io.BytesIO()
    Image.new('RGBA', (50, 50), (255, 0, 0, 0)).save(buffer, format='PNG')

    data = PillowTranscoder().transcode(buffer.getvalue())

    with Image.open(io.BytesIO(data)) as img:
        assert img.mode == 'RGB'


class TestRenderReport:

    def test_renders_pdf_with_surviving_images(self, monkeypatch):
        urls = ['https://img.test/1.png', 'https://img.test/2.png', 'https://img.test/3.png']
        colors = ['red', 'green', 'blue']
        fetcher = FakeFetcher({url: image_bytes(color=c) for url, c in zip(urls, colors)}, failing=[urls[0]])
        rows = [row(image_urls=urls)]
        assets = prepare_assets(rows, fetcher=fetcher)

        embedded = []
        original_image = ComplaintReportPDF.image

        def recording_image(pdf, name, *args, **kwargs):
            embedded.append(name.getvalue())
            return original_image(pdf, name, *args, **kwargs)

        monkeypatch.setattr(ComplaintReportPDF, 'image', recording_image)
        content = render_report(rows, assets, SUMMARY)

        assert content.startswith(b'%PDF')
        assert embedded == [assets.get(urls[1]).data, assets.get(urls[2]).data]

    def test_layout_needs_no_fetching(self):
        content = render_report([row(image_urls=['https://img.test/missing.png'])], AssetTable(), SUMMARY)
        assert content.startswith(b'%PDF')

    def test_empty_rows_render_notice(self):
        assert render_report([], AssetTable(), SUMMARY).startswith(b'%PDF')

    def test_empty_rows_rejected_when_required(self):
        with pytest.raises(EmptyDataset):
            render_report([], AssetTable(), SUMMARY, require_rows=True)

    def test_long_content_spans_pages(self):
        pdf = ComplaintReportPDF()
        pdf.add_page()
        pdf.complaint_section(row(description='Water leaking from the indoor unit. ' * 300), AssetTable())
        assert pdf.page_no() > 1

    def test_section_header_stays_with_first_line(self):
        pdf = ComplaintReportPDF()
        pdf.add_page()
        pdf.set_y(pdf.page_break_trigger - 13.5)

        pdf.section_header(row())
        header_page = pdf.page_no()
        pdf.write_field('Customer', 'Layla Hassan')

        assert header_page == 2
        assert pdf.page_no() == header_page

    def test_work_times_and_responses_render(self):
        detailed = row(
            assigned_to='Sam Technician',
            work_times=[{'user': 'Sam Technician', 'date': '2024-03-11',
                         'start_time': '2024-03-11T09:00:00.000Z', 'end_time': '2024-03-11T11:05:00.000Z'},
                        {'user': 'Sam Technician', 'date': '2024-03-12',
                         'start_time': '2024-03-12T09:00:00.000Z', 'end_time': None}],
            responses=[{'responder': 'Sam Technician', 'response': 'Cleaned the filter',
                        'created_at': '2024-03-11T11:10:00.000Z',
                        'started_at': '2024-03-11T09:00:00.000Z',
                        'completed_at': '2024-03-11T11:05:00.000Z', 'image_urls': []}],
        )
        assert render_report([detailed], AssetTable(), SUMMARY).startswith(b'%PDF')

    def test_layout_failure_raises_render_error(self):
        url = 'https://img.test/corrupt.png'
        assets = AssetTable(assets={url: ImageAsset(url=url, data=b'garbage', width=10, height=10)})

        with pytest.raises(RenderError):
            render_report([row(image_urls=[url])], assets, SUMMARY)


def test_convenient_time_label_falls_back_to_dash():
    assert convenient_time_label('TWO_PM_TO_FOUR_PM') == '2:00 PM - 4:00 PM'
    assert convenient_time_label('LUNCH') == EMPTY_PLACEHOLDER
    assert convenient_time_label(None) == EMPTY_PLACEHOLDER


def test_report_filename_is_filesystem_safe(app):
    report_filter = build_report_filter(criterion='buildingName', building_name='Tower A/B',
                                        apartment_numbers=['12A'])

    name = build_report_filename(report_filter, datetime(2024, 3, 12, 9, 30, 5))

    assert name == 'complaints-report_building-tower-a-b-apartments-12a_20240312-093005.pdf'


class TestGenerateReport:

    def test_generates_document(self, app, make_complaint):
        make_complaint(building_name='Tower A', image_paths=['layla/a.png'])
        make_complaint(building_name='Tower B')
        fetcher = FakeFetcher({'https://storage.test/uploads/layla/a.png': image_bytes()})

        document = generate_report(criterion='buildingName', building_name='Tower A', fetcher=fetcher)

        assert document.file_name.endswith('.pdf')
        assert document.content.startswith(b'%PDF')
        assert fetcher.calls == ['https://storage.test/uploads/layla/a.png']
        assert document.to_base64_dict()['fileName'] == document.file_name

    def test_empty_dataset_when_required(self, app):
        with pytest.raises(EmptyDataset):
            generate_report(require_rows=True, criterion='customerPhone', value='0500000000')

    def test_invalid_filter_before_rendering(self, app):
        with pytest.raises(InvalidFilter):
            generate_report(criterion='createdAt', start_date='2024-03-10')

    def test_image_phase_failure_raises_render_error(self, app, make_complaint, monkeypatch):
        make_complaint(building_name='Tower A')

        def broken_prepare_assets(*args, **kwargs):
            raise RuntimeError('worker pool died')

        monkeypatch.setattr(report_pdf, 'prepare_assets', broken_prepare_assets)

        with pytest.raises(RenderError):
            generate_report(fetcher=FakeFetcher({}))
