import pytest

from mapscrape.core.config import ConfigError
from mapscrape.core.errors import SourceFetchError
from mapscrape.vendors import serp_maps


class FakeSearch:
    responses = []
    params = []

    def __init__(self, params):
        FakeSearch.params.append(params)

    def get_dict(self):
        outcome = FakeSearch.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture(autouse=True)
def patch_search(monkeypatch):
    FakeSearch.responses = []
    FakeSearch.params = []
    monkeypatch.setattr(serp_maps, "GoogleSearch", FakeSearch)
    monkeypatch.setattr(serp_maps.time, "sleep", lambda _: None)
    return FakeSearch


def test_build_query_requires_both_parts():
    assert serp_maps.build_query(" cafe ", " Austin, USA ") == "cafe in Austin, USA"
    with pytest.raises(ValueError):
        serp_maps.build_query("cafe", " ")


def test_source_requires_api_key():
    with pytest.raises(ConfigError):
        serp_maps.SerpMapsSource("")


def test_fetch_parses_local_results(patch_search):
    patch_search.responses = [{"local_results": [{"title": "Acme", "address": "1 Main St"}, {"title": "Bean"}]}]

    records = serp_maps.SerpMapsSource("key").fetch("cafe", "Austin")

    assert [record.name for record in records] == ["Acme", "Bean"]
    params = patch_search.params[0]
    assert params["engine"] == "google_maps"
    assert params["q"] == "cafe in Austin"
    assert params["api_key"] == "key"


def test_fetch_retries_then_succeeds(patch_search):
    patch_search.responses = [RuntimeError("socket closed"), {"local_results": []}]

    assert serp_maps.SerpMapsSource("key").fetch("cafe", "Austin") == []
    assert len(patch_search.params) == 2


def test_fetch_raises_source_error_after_retries(patch_search):
    patch_search.responses = [{"error": "Invalid API key."}] * 3

    with pytest.raises(SourceFetchError):
        serp_maps.SerpMapsSource("key").fetch("cafe", "Austin")
    assert len(patch_search.params) == 3


def test_fetch_wraps_transport_errors(patch_search):
    patch_search.responses = [ConnectionError("down")]

    with pytest.raises(SourceFetchError):
        serp_maps.SerpMapsSource("key", retry_limit=0).fetch("cafe", "Austin")
