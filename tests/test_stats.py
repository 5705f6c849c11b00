from datetime import date, datetime, timezone

from lending import stats


def test_empty_library_overview(lib):
    overview = lib.get_statistics()
    assert overview["books"] == 0
    assert overview["borrowed"] == 0
    assert overview["borrow_rate"] == 0
    assert len(overview["trend"]) == 7
    assert all(point["total"] == 0 for point in overview["trend"])


def test_overview_counts_and_trend(lib):
    first = lib.catalog.create_title("Dune", "Frank Herbert", 3)
    second = lib.catalog.create_title("Emma", "Jane Austen", 1)
    reader = lib.users.create_user("reader")

    lib.loans.clock = lambda: datetime(2024, 5, 8, 10, 0, tzinfo=timezone.utc)
    lib.borrow(first.id, reader.id)
    lib.loans.clock = lambda: datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)
    lib.borrow(first.id, reader.id)
    returned = lib.borrow(second.id, reader.id)
    lib.return_loan(returned)
    lib.loans.clock = lambda: datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)
    lib.borrow(second.id, reader.id)

    overview = stats.get_overview(lib.database, today=date(2024, 5, 10))

    assert overview["books"] == 2
    assert overview["users"] == 1
    assert overview["borrowed"] == 3
    assert overview["in_library"] == 1
    assert overview["borrow_rate"] == 75.0
    assert overview["trend"][0] == {"day": "2024-05-04", "total": 0}
    by_day = {p["day"]: p["total"] for p in overview["trend"]}
    assert by_day["2024-05-08"] == 1
    assert by_day["2024-05-10"] == 2
    assert "2024-04-01" not in by_day


def test_trend_window_follows_utc_day(lib, monkeypatch):
    title = lib.catalog.create_title("Dune", "Frank Herbert", 2)
    reader = lib.users.create_user("reader")
    late = datetime(2024, 5, 10, 23, 30, tzinfo=timezone.utc)
    lib.loans.clock = lambda: late
    lib.borrow(title.id, reader.id)
    monkeypatch.setattr(stats, "utcnow", lambda: late)

    overview = stats.get_overview(lib.database)

    assert overview["trend"][-1] == {"day": "2024-05-10", "total": 1}
