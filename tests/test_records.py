from datetime import datetime

from app.lokok.modules.suppliers.records import (
    as_text,
    dedup_key,
    get_country,
    get_name,
    normalize_website,
    parse_record_date,
    record_created_at,
    unwrap,
)


def test_normalize_website_strips_scheme_www_port_and_slash():
    assert normalize_website("HTTPS://WWW.Example.com:8080/") == "example.com"
    assert normalize_website("http://example.com/shop/") == "example.com/shop"
    assert normalize_website("www.example.com") == "example.com"
    assert normalize_website("   ") is None
    assert normalize_website(None) is None


def test_normalize_website_is_idempotent():
    for raw in ("https://www.www.acme.io:443//", "acme.io/a/b/", "HTTP://ACME.IO"):
        once = normalize_website(raw)
        assert normalize_website(once) == once


def test_dedup_key_priority():
    assert dedup_key({"Website": "https://acme.com", "E-Mail": "x@acme.com", "Name": "Acme"}) == "w:acme.com"
    assert dedup_key({"E-Mail": "Sales@Acme.com", "Name": "Acme"}) == "e:sales@acme.com"
    assert dedup_key({"Name": "Acme", "Country": "USA"}) == "n:acme|us"
    assert dedup_key({"Name": "Acme"}, country="Mexico") == "n:acme|mx"
    assert dedup_key({}, row_id=7) == "id:7"


def test_unwrap_and_aliases():
    rec = {"distributor": {"Company Name": "Acme", "COUNTRY": "Canada"}}
    assert unwrap(rec) == {"Company Name": "Acme", "COUNTRY": "Canada"}
    assert get_name(rec) == "Acme"
    assert get_country(rec) == "CA"


def test_as_text():
    assert as_text(None) == ""
    assert as_text(3.0) == "3"
    assert as_text(" x ") == "x"
    assert as_text(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05"


def test_parse_record_date_formats():
    assert parse_record_date("2024-03-05") == datetime(2024, 3, 5)
    assert parse_record_date("2024-03-05T10:11:12.000Z") == datetime(2024, 3, 5, 10, 11, 12)
    assert parse_record_date(45000) == datetime(2023, 3, 15)
    assert parse_record_date("45000") == datetime(2023, 3, 15)
    assert parse_record_date("not a date") is None
    assert parse_record_date(0) is None
    assert parse_record_date(True) is None


def test_record_created_at_prefers_created_at_over_date():
    rec = {"Created_At": "2024-05-01T08:00:00", "DATE": "2020-01-01"}
    assert record_created_at(rec) == datetime(2024, 5, 1, 8, 0, 0)
    assert record_created_at({"DATE": "2020-01-01"}) == datetime(2020, 1, 1)
    assert record_created_at({}) is None
