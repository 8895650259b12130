from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError
from werkzeug.datastructures import MultiDict

from errors import InvalidColumn, InvalidFilter, StorageError
from models import db
from report_filters import (
    ANY_VALUE,
    ReportCriterion,
    build_report_filter,
    clamp_limit,
    fetch_preview_rows,
    fetch_report_rows,
    filter_params_from_args,
    get_unique_options,
    isoformat_utc,
)


def ids(rows):
    return {row['id'] for row in rows}


class TestBuildReportFilter:

    def test_unknown_criterion_rejected(self, app):
        with pytest.raises(InvalidColumn):
            build_report_filter(criterion='customerName', value='x')

    def test_date_criterion_requires_both_dates(self, app):
        with pytest.raises(InvalidFilter):
            build_report_filter(criterion='createdAt', start_date='2024-03-10')
        with pytest.raises(InvalidFilter):
            build_report_filter(criterion='createdAt', end_date='2024-03-10')

    def test_end_before_start_rejected(self, app):
        with pytest.raises(InvalidFilter):
            build_report_filter(criterion='createdAt', start_date='2024-03-11', end_date='2024-03-10')

    def test_bad_date_format_rejected(self, app):
        with pytest.raises(InvalidFilter):
            build_report_filter(criterion='createdAt', start_date='10/03/2024', end_date='2024-03-10')

    def test_any_value_adds_no_clause(self, app):
        report_filter = build_report_filter(criterion='customerPhone', value=ANY_VALUE)
        assert report_filter.value is None
        assert report_filter.clauses() == []
        assert report_filter.description == 'All complaints'

    def test_apartments_are_trimmed_and_deduplicated(self, app):
        report_filter = build_report_filter(criterion='buildingName', building_name=' Tower A ',
                                            apartment_numbers=[' 101', '101', '', '102'])
        assert report_filter.building_name == 'Tower A'
        assert report_filter.apartment_numbers == ('101', '102')

    def test_describe(self, app):
        report_filter = build_report_filter(criterion='createdAt', start_date='2024-03-01', end_date='2024-03-10')
        assert report_filter.describe() == ['Created between 2024-03-01 and 2024-03-10']


class TestDateRange:

    def test_single_day_includes_whole_utc_day(self, app, make_complaint):
        inside = make_complaint(created_at=datetime(2024, 3, 10, 23, 59, 59))
        start_of_day = make_complaint(created_at=datetime(2024, 3, 10, 0, 0, 0))
        after = make_complaint(created_at=datetime(2024, 3, 11, 0, 0, 0))
        before = make_complaint(created_at=datetime(2024, 3, 9, 23, 59, 59))

        rows = fetch_preview_rows(criterion='createdAt', start_date='2024-03-10', end_date='2024-03-10')

        assert ids(rows) == {inside.id, start_of_day.id}
        assert after.id not in ids(rows)
        assert before.id not in ids(rows)


class TestAndComposition:

    def test_removing_a_filter_never_shrinks_results(self, app, make_complaint):
        make_complaint(building_name='Tower A', apartment_number='101')
        make_complaint(building_name='Tower A', apartment_number='102')
        make_complaint(building_name='Tower B', apartment_number='101')
        make_complaint(building_name='Tower A', apartment_number='101', customer_phone='0559999999')

        full = {'criterion': 'buildingName', 'building_name': 'Tower A', 'apartment_numbers': ['101']}
        narrowed = fetch_preview_rows(**full)
        assert len(narrowed) == 2

        for dropped in ('building_name', 'apartment_numbers'):
            params = dict(full)
            params.pop(dropped)
            widened = fetch_preview_rows(**params)
            assert ids(narrowed) <= ids(widened)

    def test_every_row_satisfies_every_dimension(self, app, make_complaint):
        make_complaint(customer_phone='0501111111', building_name='Tower A')
        make_complaint(customer_phone='0501111111', building_name='Tower B')
        make_complaint(customer_phone='0502222222', building_name='Tower A')

        rows = fetch_preview_rows(criterion='customerPhone', value='0501111111', building_name='Tower A')

        assert len(rows) == 1
        assert rows[0]['customer_phone'] == '0501111111'
        assert rows[0]['building_name'] == 'Tower A'


class TestUniqueOptions:

    def test_apartments_deduplicated_case_insensitively(self, app, make_complaint):
        for apartment in ['12A', ' 12a ', '12B']:
            make_complaint(building_name='Tower A', apartment_number=apartment)

        options = get_unique_options('apartmentNumber', {'buildingName': 'Tower A'})

        assert len(options) == 2
        assert {o['value'].upper() for o in options} == {'12A', '12B'}
        assert all(o['value'] == o['label'] for o in options)

    def test_options_scoped_by_building(self, app, make_complaint):
        make_complaint(building_name='Tower A', apartment_number='101')
        make_complaint(building_name='Tower B', apartment_number='202')

        options = get_unique_options('apartmentNumber', {'buildingName': 'Tower B'})

        assert [o['value'] for o in options] == ['202']

    def test_options_sorted_ascending(self, app, make_complaint):
        for phone in ['0503333333', '0501111111', '0502222222', '0501111111']:
            make_complaint(customer_phone=phone)

        options = get_unique_options(ReportCriterion.CUSTOMER_PHONE)

        assert [o['value'] for o in options] == ['0501111111', '0502222222', '0503333333']

    def test_padded_values_sorted_by_trimmed_value(self, app, make_complaint):
        for apartment in ['A1', ' Z9']:
            make_complaint(building_name='Tower A', apartment_number=apartment)

        options = get_unique_options('apartmentNumber', {'buildingName': 'Tower A'})

        assert [o['value'] for o in options] == ['A1', 'Z9']

    def test_date_column_has_no_options(self, app):
        with pytest.raises(InvalidColumn):
            get_unique_options('createdAt')

    def test_unknown_column(self, app):
        with pytest.raises(InvalidColumn):
            get_unique_options('password_hash')

    def test_storage_failure_raises_storage_error(self, app, monkeypatch):
        def broken_query(*args, **kwargs):
            raise OperationalError('SELECT', {}, Exception('database is locked'))

        monkeypatch.setattr(db.session, 'query', broken_query)
        with pytest.raises(StorageError):
            get_unique_options('buildingName')


class TestFetchers:

    def test_limits_are_capped(self):
        assert clamp_limit(10000, 500, 50) == 500
        assert clamp_limit(10000, 1000, 1000) == 1000
        assert clamp_limit(0, 500, 50) == 1
        assert clamp_limit('abc', 500, 50) == 50

    def test_never_more_rows_than_exist(self, app, make_complaint):
        for _ in range(50):
            make_complaint()

        assert len(fetch_preview_rows(limit=10000)) == 50
        assert len(fetch_report_rows(limit=10000)) == 50

    def test_newest_first_with_id_tiebreak(self, app, make_complaint):
        same_time = datetime(2024, 3, 10, 8, 0, 0)
        first = make_complaint(created_at=same_time)
        second = make_complaint(created_at=same_time)
        newest = make_complaint(created_at=datetime(2024, 3, 12, 8, 0, 0))

        rows = fetch_preview_rows()

        assert [row['id'] for row in rows] == [newest.id, second.id, first.id]

    def test_preview_row_projection(self, app, make_complaint):
        make_complaint(image_paths=['layla/a.png', 'https://cdn.test/b.png'])

        row = fetch_preview_rows()[0]

        assert row['created_at'] == '2024-03-10T12:00:00.000Z'
        assert row['image_urls'] == ['https://storage.test/uploads/layla/a.png', 'https://cdn.test/b.png']
        assert 'responses' not in row

    def test_report_rows_include_related_records(self, app, make_complaint, employee):
        from models import ComplaintResponse, WorkTime

        complaint = make_complaint(assigned_to_id=employee.id)
        db.session.add(WorkTime(complaint_id=complaint.id, user_id=employee.id,
                                date=datetime(2024, 3, 11).date(),
                                start_time=datetime(2024, 3, 11, 9, 0),
                                end_time=datetime(2024, 3, 11, 11, 5)))
        db.session.add(ComplaintResponse(complaint_id=complaint.id, responder_id=employee.id,
                                         response='Replaced the drain pipe', image_paths=['r/1.png']))
        db.session.commit()

        row = fetch_report_rows()[0]

        assert row['assigned_to'] == 'Sam Technician'
        assert row['convenient_time'] == 'EIGHT_AM_TO_TEN_AM'
        assert row['work_times'][0]['end_time'] == '2024-03-11T11:05:00.000Z'
        assert row['responses'][0]['response'] == 'Replaced the drain pipe'
        assert row['responses'][0]['image_urls'] == ['https://storage.test/uploads/r/1.png']

    def test_validation_happens_before_storage(self, app, monkeypatch):
        def broken_query(*args, **kwargs):
            raise AssertionError('storage must not be touched')

        monkeypatch.setattr(db.session, 'query', broken_query)
        with pytest.raises(InvalidFilter):
            fetch_report_rows(criterion='createdAt')


def test_isoformat_utc_converts_aware_values():
    value = datetime(2024, 3, 10, 23, 59, 59, 123456, tzinfo=timezone.utc)
    assert isoformat_utc(value) == '2024-03-10T23:59:59.123Z'
    assert isoformat_utc(None) is None


def test_filter_params_from_args_accepts_both_spellings():
    args = MultiDict([('criterion', 'buildingName'), ('buildingName', 'Tower A'),
                      ('apartmentNumbers', '101'), ('apartmentNumbers', '102'),
                      ('startDate', '2024-03-01')])

    params = filter_params_from_args(args)

    assert params['building_name'] == 'Tower A'
    assert params['apartment_numbers'] == ['101', '102']
    assert params['start_date'] == '2024-03-01'
    assert params['value'] is None
