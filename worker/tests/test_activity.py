from mapscrape.pipeline.activity import ActivityLogger


def test_log_appends_entries_and_stats_aggregate(store):
    activity = ActivityLogger(store)

    activity.log("user-1", "cafe", "Austin", 12, False, session_id="s-1", user_email="a@b.test")
    activity.log("user-1", "cafe", "Austin", 12, True, session_id="s-1")
    activity.log("user-2", "gym", "Dallas", 4, False)

    stats = activity.stats("user-1")
    assert stats.total_searches == 2
    assert stats.new_searches == 1
    assert stats.cached_searches == 1
    assert stats.total_records_extracted == 24
    recent = activity.recent("user-1")
    assert len(recent) == 2
    assert {entry.owner for entry in recent} == {"user-1"}
    assert store.logs[0].user_email == "a@b.test"


def test_log_failure_returns_none(store, caplog):
    store.fail_methods.add("insert_search_log")

    with caplog.at_level("ERROR"):
        assert ActivityLogger(store).log("user-1", "cafe", "Austin", 0, False) is None
    assert "Failed to log search" in caplog.text


def test_stats_for_new_owner_are_zero(store):
    stats = ActivityLogger(store).stats("nobody")

    assert stats.total_searches == 0
    assert stats.first_search_date is None
