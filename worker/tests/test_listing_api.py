import pytest
import requests

from mapscrape.core.errors import SourceFetchError
from mapscrape.vendors.listing_api import ListingApiSource


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummySession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append((url, json, headers, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def test_fetch_posts_query_and_maps_listings():
    session = DummySession(
        DummyResponse(
            payload={
                "success": True,
                "listings": [
                    {"name": "Acme", "type": "Cafe", "latitude": 1.0, "opening_hours": {"mon": "9-5"}},
                    "not-a-listing",
                ],
            }
        )
    )
    source = ListingApiSource("https://listings.test/scrape", token="t0k", session=session)

    records = source.fetch("cafe", "Austin, USA")

    assert [record.name for record in records] == ["Acme"]
    assert records[0].category == "Cafe"
    url, body, headers, timeout = session.calls[0]
    assert body == {"businessType": "cafe", "location": "Austin, USA"}
    assert headers["Authorization"] == "Bearer t0k"
    assert timeout == 30


@pytest.mark.parametrize(
    "session",
    [
        DummySession(error=requests.ConnectionError("refused")),
        DummySession(DummyResponse(status_code=500, text="boom")),
        DummySession(DummyResponse(payload={"success": False, "error": "quota"})),
        DummySession(DummyResponse(payload=None)),
    ],
)
def test_fetch_failures_raise_source_fetch_error(session):
    with pytest.raises(SourceFetchError):
        ListingApiSource("https://listings.test/scrape", session=session).fetch("cafe", "Austin")
