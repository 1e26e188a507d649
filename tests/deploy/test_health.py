"""Tests for sol_deploy.deploy.health — probes run against httpx.MockTransport."""

import asyncio

import httpx
import pytest

from sol_deploy.core.errors import ErrorKind, ProbeError
from sol_deploy.deploy.health import (
    HealthChecker,
    ProbeTarget,
    classify_status,
    parse_target,
    raise_for_probes,
    targets_from_hostnames,
    targets_from_ports,
)
from sol_deploy.deploy.results import ProbeResult, ProbeStatus


def transport_by_host(responses):
    """MockTransport answering per host: an int status or an exception."""

    def handler(request: httpx.Request) -> httpx.Response:
        answer = responses[request.url.host]
        if isinstance(answer, Exception):
            raise answer
        return httpx.Response(answer)

    return httpx.MockTransport(handler)


class TestClassifyStatus:
    @pytest.mark.parametrize(
        ("code", "status"),
        [
            (200, ProbeStatus.REACHABLE),
            (204, ProbeStatus.REACHABLE),
            (302, ProbeStatus.REACHABLE),
            (401, ProbeStatus.UNAUTHENTICATED),
            (403, ProbeStatus.UNAUTHENTICATED),
            (404, ProbeStatus.UNHEALTHY),
            (502, ProbeStatus.UNHEALTHY),
        ],
    )
    def test_mapping(self, code, status):
        assert classify_status(code) == status

    def test_unauthenticated_counts_as_up(self):
        assert ProbeStatus.UNAUTHENTICATED.is_up
        assert not ProbeStatus.UNHEALTHY.is_up


class TestTargets:
    def test_from_ports(self):
        assert targets_from_ports({"grafana": 3000}) == [ProbeTarget("grafana", "http://127.0.0.1:3000")]

    def test_from_hostnames(self):
        assert targets_from_hostnames(["plex.example.com"]) == [
            ProbeTarget("plex.example.com", "https://plex.example.com")
        ]

    def test_parse_target(self):
        assert parse_target("nas=http://10.0.0.5:5000") == ProbeTarget("nas", "http://10.0.0.5:5000")
        assert parse_target("http://x/?a=b") == ProbeTarget("http://x/?a=b", "http://x/?a=b")


class TestHealthChecker:
    def test_four_way_classification_in_input_order(self):
        transport = transport_by_host(
            {
                "ok.local": 200,
                "auth.local": 401,
                "broken.local": 500,
                "down.local": httpx.ConnectError("connection refused"),
            }
        )
        targets = [
            ProbeTarget("down", "http://down.local"),
            ProbeTarget("ok", "http://ok.local"),
            ProbeTarget("auth", "http://auth.local"),
            ProbeTarget("broken", "http://broken.local"),
        ]
        results = HealthChecker(transport=transport).probe(targets)

        assert [r.name for r in results] == ["down", "ok", "auth", "broken"]
        assert [r.status for r in results] == [
            ProbeStatus.UNREACHABLE,
            ProbeStatus.REACHABLE,
            ProbeStatus.UNAUTHENTICATED,
            ProbeStatus.UNHEALTHY,
        ]
        assert results[0].http_status is None
        assert "refused" in results[0].error
        assert results[2].http_status == 401
        assert results[1].latency_ms is not None

    def test_timeout_is_unreachable(self):
        transport = transport_by_host({"slow.local": httpx.ReadTimeout("slow")})
        [result] = HealthChecker(timeout_ms=50, transport=transport).probe([ProbeTarget("slow", "http://slow.local")])
        assert result.status == ProbeStatus.UNREACHABLE
        assert "timed out" in result.error

    def test_slow_async_handler_hits_timeout(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200)

        checker = HealthChecker(timeout_ms=50, transport=httpx.MockTransport(handler))
        [result] = checker.probe([ProbeTarget("slow", "http://slow.local")])
        assert result.status == ProbeStatus.UNREACHABLE

    def test_slow_first_target_keeps_input_order(self):
        finished = []

        async def handler(request):
            if request.url.host == "slow.local":
                await asyncio.sleep(0.2)
            finished.append(request.url.host)
            return httpx.Response(200 if request.url.host == "slow.local" else 503)

        checker = HealthChecker(transport=httpx.MockTransport(handler))
        results = checker.probe([ProbeTarget("slow", "http://slow.local"), ProbeTarget("fast", "http://fast.local")])

        assert finished == ["fast.local", "slow.local"]
        assert [r.name for r in results] == ["slow", "fast"]
        assert [r.status for r in results] == [ProbeStatus.REACHABLE, ProbeStatus.UNHEALTHY]

    def test_redirects_are_not_followed(self):
        transport = transport_by_host({"login.local": 302})
        [result] = HealthChecker(transport=transport).probe([ProbeTarget("ui", "http://login.local")])
        assert result.status == ProbeStatus.REACHABLE
        assert result.http_status == 302

    def test_no_targets(self):
        assert HealthChecker().probe([]) == []

    def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200)

        checker = HealthChecker(max_concurrency=2, transport=httpx.MockTransport(handler))
        targets = [ProbeTarget(f"s{i}", f"http://s{i}.local") for i in range(6)]
        results = checker.probe(targets)
        assert all(r.is_up for r in results)
        assert peak <= 2


class TestRaiseForProbes:
    def test_all_up(self):
        raise_for_probes([ProbeResult(name="a", url="u", status=ProbeStatus.UNAUTHENTICATED)])

    def test_lists_every_down_target(self):
        results = [
            ProbeResult(name="a", url="http://a", status=ProbeStatus.REACHABLE, http_status=200),
            ProbeResult(name="b", url="http://b", status=ProbeStatus.UNREACHABLE, error="refused"),
            ProbeResult(name="c", url="http://c", status=ProbeStatus.UNHEALTHY, http_status=502),
        ]
        with pytest.raises(ProbeError) as exc_info:
            raise_for_probes(results)
        err = exc_info.value
        assert err.kind == ErrorKind.UNREACHABLE
        assert err.message == "2/3 services not responding"
        assert err.problems[0].startswith("b (http://b): UNREACHABLE")
        assert "HTTP 502" in err.problems[1]

    def test_only_unhealthy_is_server_error(self):
        results = [ProbeResult(name="c", url="http://c", status=ProbeStatus.UNHEALTHY, http_status=500)]
        with pytest.raises(ProbeError) as exc_info:
            raise_for_probes(results)
        assert exc_info.value.kind == ErrorKind.SERVER_ERROR
