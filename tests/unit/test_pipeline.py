"""
Unit tests for the resolution pipeline.
"""

import asyncio

import httpx
import pytest

from edgeserver.handlers import RedirectGuard, StaticFileHandler, StaticResolver, ProxyForwarder, ProxyError
from edgeserver.http import HTTPResponse
from edgeserver.pipeline import ResolutionPipeline, StageResult, Outcome


class FakeStage:
    """Stage returning a fixed result and recording its calls."""

    def __init__(self, name: str, result: StageResult):
        self.name = name
        self.result = result
        self.calls = 0

    async def resolve(self, request) -> StageResult:
        self.calls += 1
        return self.result


@pytest.fixture
def chain(make_config, static_root, upstream):
    """Build the real redirect → static → proxy chain."""

    def factory(**overrides) -> ResolutionPipeline:
        config = make_config(**overrides)
        return ResolutionPipeline([
            RedirectGuard(config),
            StaticResolver(StaticFileHandler(str(static_root))),
            ProxyForwarder(config, client=upstream.client()),
        ])

    return factory


class TestResolutionPipeline:
    """Tests for ResolutionPipeline.resolve() with stand-in stages."""

    def test_needs_stages(self):
        """Test that an empty chain is rejected."""
        with pytest.raises(ValueError):
            ResolutionPipeline([])

    def test_first_handled_wins(self, make_request):
        """Test that later stages never run after a HANDLED."""
        first = FakeStage("first", StageResult.handled(HTTPResponse(status=200)))
        second = FakeStage("second", StageResult.handled(HTTPResponse(status=500)))

        response = asyncio.run(ResolutionPipeline([first, second]).resolve(make_request()))

        assert response.status == 200
        assert response.source == "first"
        assert second.calls == 0

    def test_not_applicable_falls_through(self, make_request):
        """Test that stages are tried in order."""
        skip = FakeStage("skip", StageResult.not_applicable())
        answer = FakeStage("answer", StageResult.handled(HTTPResponse(status=204)))

        response = asyncio.run(ResolutionPipeline([skip, answer]).resolve(make_request()))

        assert response.status == 204
        assert (skip.calls, answer.calls) == (1, 1)

    def test_source_not_overwritten(self, make_request):
        """Test that a response that names its source keeps it."""
        stage = FakeStage("stage", StageResult.handled(HTTPResponse(source="custom")))

        response = asyncio.run(ResolutionPipeline([stage]).resolve(make_request()))

        assert response.source == "custom"

    def test_error_before_last_falls_through(self, make_request):
        """Test that a failing middle stage is treated as not applicable."""
        broken = FakeStage("broken", StageResult.error(OSError("disk")))
        answer = FakeStage("answer", StageResult.handled(HTTPResponse()))

        response = asyncio.run(ResolutionPipeline([broken, answer]).resolve(make_request()))

        assert response.source == "answer"

    def test_error_from_last_is_raised(self, make_request):
        """Test that the last stage's exception reaches the caller."""
        skip = FakeStage("skip", StageResult.not_applicable())
        broken = FakeStage("broken", StageResult.error(ProxyError("down", "http://x")))

        with pytest.raises(ProxyError):
            asyncio.run(ResolutionPipeline([skip, broken]).resolve(make_request()))

    def test_unhandled_is_runtime_error(self, make_request):
        """Test that a chain where nobody answers is a bug."""
        stage = FakeStage("skip", StageResult.not_applicable())

        with pytest.raises(RuntimeError):
            asyncio.run(ResolutionPipeline([stage]).resolve(make_request()))

    def test_stage_names(self):
        """Test the stage order report."""
        stages = [FakeStage(name, StageResult.not_applicable()) for name in ("a", "b")]
        assert ResolutionPipeline(stages).stage_names == ["a", "b"]


class TestEdgeChain:
    """Tests for the real redirect → static → proxy chain."""

    def test_static_hit_never_calls_upstream(self, chain, upstream, make_request, read_body):
        """Test that files present locally are served without proxying."""
        async def scenario():
            response = await chain().resolve(make_request("/style.css"))
            return response, await read_body(response)

        response, body = asyncio.run(scenario())

        assert response.source == "static"
        assert body == b"body { color: black; }"
        assert upstream.calls == 0

    def test_static_miss_proxies_once(self, chain, upstream, make_request, read_body):
        """Test that a missing file is fetched from upstream exactly once."""
        async def scenario():
            response = await chain().resolve(make_request("/blog/post?page=2"))
            return response, await read_body(response)

        response, body = asyncio.run(scenario())

        assert response.source == "proxy"
        assert body == b"upstream"
        assert upstream.calls == 1
        assert str(upstream.requests[0].url) == "http://upstream.test/blog/post?page=2"

    def test_directory_without_slash_is_proxied(self, chain, upstream, make_request):
        """Test that "/blog" goes upstream even though blog/ exists locally."""
        response = asyncio.run(chain().resolve(make_request("/blog")))
        asyncio.run(response.aclose())

        assert response.source == "proxy"
        assert upstream.calls == 1

    def test_redirect_short_circuits(self, chain, upstream, make_request):
        """Test that production plain-HTTP requests never reach the file system or upstream."""
        response = asyncio.run(chain(production=True).resolve(make_request("/style.css")))

        assert response.status == 301
        assert response.source == "redirect"
        assert upstream.calls == 0

    def test_production_https_is_served(self, chain, make_request, read_body):
        """Test that HTTPS requests in production pass the guard."""
        request = make_request("/style.css", headers={"Host": "example.com", "X-Forwarded-Proto": "https"})

        async def scenario():
            response = await chain(production=True).resolve(request)
            await read_body(response)
            return response

        assert asyncio.run(scenario()).source == "static"

    def test_traversal_goes_upstream(self, chain, upstream, make_request):
        """Test that an escaping path is never served locally."""
        response = asyncio.run(chain().resolve(make_request("/../secret.txt")))
        asyncio.run(response.aclose())

        assert response.source == "proxy"
        assert upstream.calls == 1

    def test_unreachable_upstream_raises(self, chain, upstream, make_request):
        """Test that an upstream failure surfaces as ProxyError."""
        upstream.error = httpx.ConnectError("refused")

        with pytest.raises(ProxyError):
            asyncio.run(chain().resolve(make_request("/missing")))

    def test_static_failure_falls_back_to_proxy(self, chain, upstream, make_request, monkeypatch):
        """Test that an exception in the static stage still reaches the proxy."""
        pipeline = chain()
        static_stage = pipeline.stages[1]

        async def broken(request):
            raise PermissionError("denied")

        monkeypatch.setattr(static_stage.handler, "lookup", broken)
        response = asyncio.run(pipeline.resolve(make_request("/style.css")))
        asyncio.run(response.aclose())

        assert response.source == "proxy"
        assert upstream.calls == 1
