import json

import pytest

from mapscrape.core.config import ConfigError
from mapscrape.core.errors import SourceFetchError
from mapscrape.jobs import run_search
from mapscrape.pipeline.cache import SearchCache
from mapscrape.pipeline.ingest import IngestionLoop
from mapscrape.pipeline.search import SearchService
from mapscrape.pipeline.session import SessionManager
from mapscrape.pipeline.verify import ListingVerifier

from conftest import StaticSource


def build_service(store, clock, http_session, source):
    sessions = SessionManager(store, clock=clock)
    cache = SearchCache(store, clock=clock)
    verifier = ListingVerifier(store, http_session=http_session)
    ingestion = IngestionLoop(store, sessions, cache, verifier, delay_seconds=0, poll_seconds=0.01)
    return SearchService(store, source, sessions=sessions, cache=cache, verifier=verifier, ingestion=ingestion)


def test_build_location_prefers_explicit_location():
    assert run_search.build_location("Austin", "USA", None) == "Austin, USA"
    assert run_search.build_location("Austin", None, None) == "Austin"
    assert run_search.build_location("Austin", "USA", " Round Rock ") == "Round Rock"
    assert run_search.build_location(None, None, None) == ""


def test_run_search_job_requires_location(store, clock, http_session):
    service = build_service(store, clock, http_session, StaticSource())

    with pytest.raises(ValueError):
        run_search.run_search_job(business_type="cafe", location="", owner="user-1", service=service)


def test_run_search_job_scrapes_then_serves_cache(store, clock, http_session):
    source = StaticSource([{"name": "Acme", "address": "1 Main St", "website": "acme.test"}])
    service = build_service(store, clock, http_session, source)

    first = run_search.run_search_job(business_type="cafe", location="Austin, USA", owner="user-1", service=service)
    second = run_search.run_search_job(business_type="cafe", location="Austin, USA", owner="user-1", service=service)

    assert first["was_cached"] is False
    assert first["result_count"] == 1
    assert first["summary"]["processed"] == 1
    assert second["was_cached"] is True
    assert second["session_id"] == first["session_id"]
    assert len(source.calls) == 1


def test_main_prints_result_json(monkeypatch, capsys, store, clock, http_session):
    service = build_service(store, clock, http_session, StaticSource([{"name": "Acme"}]))
    captured = {}
    original_job = run_search.run_search_job

    def fake_job(**kwargs):
        captured.update(kwargs)
        return original_job(service=service, **kwargs)

    monkeypatch.setattr(run_search, "run_search_job", fake_job)

    code = run_search.main(["--type", "cafe", "--city", "Austin", "--country", "USA", "--owner", "user-1"])

    assert code == 0
    assert captured["location"] == "Austin, USA"
    assert json.loads(capsys.readouterr().out)["result_count"] == 1


@pytest.mark.parametrize(
    "error, expected",
    [(ConfigError("DATABASE_URL is not set"), 2), (SourceFetchError("quota"), 1)],
)
def test_main_maps_errors_to_exit_codes(monkeypatch, error, expected):
    def failing_job(**kwargs):
        raise error

    monkeypatch.setattr(run_search, "run_search_job", failing_job)

    assert run_search.main(["--type", "cafe", "--location", "Austin", "--owner", "user-1"]) == expected
