# chaoscanvas/tests/test_collaborators.py
import httpx
import pytest

from chaoscanvas.collaborators import HttpCheckoutClient, StockImageGenerator
from chaoscanvas.errors import UpstreamUnavailable


def _generator(handler, **keys):
    return StockImageGenerator(
        unsplash_key=keys.get("unsplash", ""),
        pexels_key=keys.get("pexels", ""),
        transport=httpx.MockTransport(handler),
    )


def test_unsplash_first():
    seen = []

    def handler(request):
        seen.append(request.url.host)
        return httpx.Response(200, json={"urls": {"regular": "https://u.example/a.jpg"}})

    out = _generator(handler, unsplash="u-key", pexels="p-key").generate("cat", "pixel", "u1")
    assert out.source == "unsplash"
    assert out.url == "https://u.example/a.jpg"
    assert seen == ["api.unsplash.com"]


def test_query_carries_style_keywords():
    queries = []

    def handler(request):
        queries.append(request.url.params["query"])
        return httpx.Response(200, json={"urls": {"small": "https://u.example/s.jpg"}})

    _generator(handler, unsplash="k").generate("dog", "anime", "u1")
    assert queries == ["dog anime style, detailed, vibrant"]


def test_falls_back_to_pexels_on_upstream_error():
    def handler(request):
        if request.url.host == "api.unsplash.com":
            return httpx.Response(503)
        assert request.headers["Authorization"] == "p-key"
        return httpx.Response(200, json={"photos": [{"src": {"small": "https://p.example/b.jpg"}}]})

    out = _generator(handler, unsplash="u-key", pexels="p-key").generate("cat", "meme", "u1")
    assert out.source == "pexels"
    assert out.url == "https://p.example/b.jpg"


def test_placeholder_when_no_source_answers():
    def handler(request):
        return httpx.Response(200, json={"photos": []})

    out = _generator(handler, pexels="p-key").generate("  very long prompt about chaos  ", "meme", "u1")
    assert out.source == "placeholder"
    assert out.url.startswith("https://placeholder.co/320x320?text=")
    assert out.prompt == "very long prompt about chaos"


def test_no_keys_never_touches_network():
    def handler(request):
        raise AssertionError("unexpected request")

    out = _generator(handler).generate("cat", "meme", "u1")
    assert out.source == "placeholder"


def test_checkout_session_created():
    def handler(request):
        assert request.method == "POST"
        return httpx.Response(200, json={"sessionId": "cs_1", "url": "https://pay.example/cs_1"})

    client = HttpCheckoutClient("https://checkout.example/sessions", transport=httpx.MockTransport(handler))
    session = client.create_session("price_500", "u1")
    assert session.session_id == "cs_1"
    assert session.session_url == "https://pay.example/cs_1"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500),
        httpx.Response(200, json={"sessionId": "cs_1"}),
        httpx.Response(200, content=b"not json"),
    ],
)
def test_checkout_failures_are_upstream_unavailable(response):
    client = HttpCheckoutClient(
        "https://checkout.example/sessions",
        transport=httpx.MockTransport(lambda request: response),
    )
    with pytest.raises(UpstreamUnavailable):
        client.create_session("price_500", "u1")
