"""HTTP surface tests using FastAPI's TestClient against a fake OS layer."""

import pytest
from fastapi.testclient import TestClient

from order_coffee.api import create_app
from order_coffee.app_state import AppState
from order_coffee.config import Config
from order_coffee.logs import logger


@pytest.fixture
def fake(control):
    return control


@pytest.fixture
def state(tmp_path, fake):
    config = Config(
        db_path=tmp_path / "events.db",
        crash_log_path=None,
        settle_delay_s=0,
        step_timeout_s=1,
    )
    return AppState(config, control=fake)


@pytest.fixture
def client(state):
    app = create_app(state.config, state=state)
    with TestClient(app) as c:
        yield c


class TestStartup:
    def test_fresh_server_is_counting_down(self, client, state):
        data = client.get("/status").json()
        assert data["states"]["flags"] == {"coffee": False, "ollama": False}
        assert data["states"]["errors"] == []
        assert data["busy"] is False
        assert data["timer_active"] is True
        assert 0 < data["timer_remaining_seconds"] <= 600
        assert data["port"] == 20553
        assert data["last_action"] is None

    def test_startup_logs_bind_address(self, client):
        logs = client.get("/api/logs/recent", params={"limit": 100}).json()["logs"]
        assert any("address=0.0.0.0:20553" in entry["message"] for entry in logs)

    def test_startup_stops_running_service(self, fake, state):
        fake.active_units.add("ollama.service")
        with TestClient(create_app(state.config, state=state)):
            assert "ollama.service" not in fake.active_units
            assert fake.count("stop_service") == 1

    @pytest.mark.asyncio
    async def test_startup_fails_without_systemctl(self, fake, state):
        fake.available = False
        with pytest.raises(RuntimeError, match="requires systemd"):
            await state.startup()
        assert not state.scheduler.running


class TestCoffee:
    def test_coffee_cancels_countdown(self, client):
        resp = client.post("/coffee")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "active"
        assert data["message"] == "Coffee state enabled"
        assert data["states"]["flags"]["coffee"] is True

        status = client.get("/status").json()
        assert status["timer_active"] is False
        assert status["timer_remaining_seconds"] is None
        assert status["last_action"] == "coffee"

    def test_chill_rearms_countdown(self, client):
        client.post("/coffee")
        data = client.post("/chill").json()
        assert data["status"] == "inactive"
        assert data["states"]["flags"]["coffee"] is False

        status = client.get("/status").json()
        assert status["timer_active"] is True
        assert status["last_action"] == "chill"

    def test_coffee_is_idempotent(self, client):
        client.post("/coffee")
        client.post("/coffee")
        status = client.get("/status").json()
        assert status["states"]["flags"]["coffee"] is True
        assert status["timer_active"] is False


class TestOllama:
    def test_ollama_on_starts_service(self, client, fake):
        resp = client.post("/ollama-on")
        assert resp.status_code == 200
        assert resp.json()["states"]["flags"]["ollama"] is True
        assert "ollama.service" in fake.active_units

    def test_ollama_on_recovers_via_ladder(self, client, fake):
        fake.fail("start_service", times=2)
        resp = client.post("/ollama-on")
        assert resp.status_code == 200
        assert resp.json()["states"]["errors"] == []
        assert fake.count("restart_service") == 1

    def test_ollama_on_failure_leaves_flag_clear(self, client, fake):
        fake.fail("start_service", times=2)
        fake.fail("restart_service")
        resp = client.post("/ollama-on")
        assert resp.status_code == 503
        data = resp.json()
        assert data["status"] == "error"
        assert data["states"]["flags"]["ollama"] is False
        assert data["states"]["errors"][0].startswith("ollama service failed to start")

        status = client.get("/status").json()
        assert status["timer_active"] is True

    def test_ollama_off_failure_keeps_flag_set(self, client, fake):
        client.post("/ollama-on")
        fake.fail("stop_service", times=3)
        resp = client.post("/ollama-off")
        assert resp.status_code == 503
        assert resp.json()["states"]["flags"]["ollama"] is True
        assert client.get("/status").json()["busy"] is True

    def test_errors_clear_after_later_success(self, client, fake):
        fake.fail("start_service", times=2)
        fake.fail("restart_service")
        client.post("/ollama-on")
        resp = client.post("/ollama-on")
        assert resp.status_code == 200
        assert resp.json()["states"]["errors"] == []


class TestGenericToggle:
    def test_on_and_off(self, client):
        assert client.post("/api/activities/coffee/on").json()["states"]["flags"]["coffee"] is True
        assert client.post("/api/activities/coffee/OFF").json()["states"]["flags"]["coffee"] is False
        assert client.get("/status").json()["last_action"] == "coffee-off"

    def test_unknown_activity_is_404(self, client):
        resp = client.post("/api/activities/tea/on")
        assert resp.status_code == 404
        assert "tea" in resp.json()["detail"]
        assert client.get("/status").json()["last_action"] is None

    def test_bad_switch_is_400(self, client):
        resp = client.post("/api/activities/coffee/maybe")
        assert resp.status_code == 400


class TestReporting:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert "version" in data

    def test_root(self, client):
        assert client.get("/").json()["name"] == "order-coffee"

    def test_recent_logs(self, client):
        logger.info("marker line for log buffer")
        data = client.get("/api/logs/recent", params={"limit": 100}).json()
        assert data["count"] == len(data["logs"])
        assert any("marker line" in entry["message"] for entry in data["logs"])

    def test_events_record_toggles(self, client, state):
        client.post("/coffee")
        client.post("/chill")
        events = client.get("/api/events", params={"limit": 20}).json()
        types = [e["event_type"] for e in events]
        assert "server_started" in types
        # Newest first
        assert types.index("flag_cleared") < types.index("flag_set")
        flag_set = next(e for e in events if e["event_type"] == "flag_set")
        assert flag_set["activity"] == "coffee"
        assert flag_set["details"] == {"busy": True}
