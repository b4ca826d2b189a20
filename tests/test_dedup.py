from datetime import datetime

from app.lokok.modules.suppliers.dedup import DedupEntry, plan_deduplication


def _e(id, data, created_at=None, country=None):
    return DedupEntry(id=id, data=data, country=country, created_at=created_at)


def test_keeps_newest_per_website():
    entries = [
        _e("1", {"Website": "acme.com"}, datetime(2024, 1, 1)),
        _e("2", {"Website": "https://www.acme.com/"}, datetime(2024, 6, 1)),
        _e("3", {"Website": "acme.com"}, datetime(2023, 1, 1)),
    ]
    res = plan_deduplication(entries)
    assert res.as_dict() == {"total": 3, "deleted": 2, "kept": 1}
    assert sorted(res.delete_ids) == ["1", "3"]


def test_equal_or_missing_timestamps_keep_first_seen():
    entries = [
        _e("1", {"E-Mail": "a@x.com"}, datetime(2024, 1, 1)),
        _e("2", {"E-Mail": "A@X.com"}, datetime(2024, 1, 1)),
        _e("3", {"E-Mail": "a@x.com"}, None),
    ]
    res = plan_deduplication(entries)
    assert res.delete_ids == ["2", "3"]


def test_dated_entry_displaces_undated_keeper():
    entries = [
        _e("1", {"Name": "Acme", "Country": "USA"}, None),
        _e("2", {"Name": "acme", "Country": "US"}, datetime(2022, 1, 1)),
    ]
    assert plan_deduplication(entries).delete_ids == ["1"]


def test_same_name_different_country_is_not_a_duplicate():
    entries = [
        _e("1", {"Name": "Acme"}, country="US"),
        _e("2", {"Name": "Acme"}, country="MX"),
    ]
    res = plan_deduplication(entries)
    assert res.deleted == 0
    assert res.kept == 2


def test_keyless_entries_are_never_grouped():
    res = plan_deduplication([_e("1", {}), _e("2", {})])
    assert res.deleted == 0
    assert res.kept == 2


def test_empty_input():
    assert plan_deduplication([]).as_dict() == {"total": 0, "deleted": 0, "kept": 0}
