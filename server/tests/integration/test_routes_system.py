"""Integration tests for system routes: health."""
from orderbean_realtime import __version__


class BrokenPingLog:
    async def ping(self):
        return False


class TestHealthEndpoint:
    """GET /health -- no auth required."""

    async def test_health_returns_200(self, http):
        response = await http.get("/health")
        assert response.status_code == 200

    async def test_health_fields(self, http, server_config):
        data = (await http.get("/health")).json()
        assert data["version"] == __version__
        assert data["name"] == server_config.server.name
        assert data["uptime_seconds"] >= 0
        assert data["log_backend"] == "sqlite"
        assert data["log_reachable"] is True
        assert data["open_streams"] == 0

    async def test_health_reports_unreachable_log(self, app, http):
        from orderbean_realtime.api.deps import get_event_log

        async def broken():
            return BrokenPingLog()

        app.dependency_overrides[get_event_log] = broken
        data = (await http.get("/health")).json()
        assert data["log_reachable"] is False

    async def test_health_counts_open_streams(self, app, http, make_session):
        from helpers import finish_stream, open_stream

        headers = await make_session("u1")
        task, stream = await open_stream(http, app, "/api/sse/orders/user/u1", headers)
        data = (await http.get("/health")).json()
        await finish_stream(task, stream)
        assert data["open_streams"] == 1
