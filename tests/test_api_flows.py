"""
HTTP gateway tests.

Strategy:
  - Build the app with create_app() over in-memory collaborators
  - Drive it through fastapi.testclient.TestClient (httpx) inside its lifespan
  - Each test class maps to one group of endpoints

Flows covered:
  1. Health / System     - service is up, collaborators reported
  2. Indicator runs      - run, artifacts, logs, rerun, delete
  3. Error handling      - 404 for unknown instances, 422 for bad input
  4. Attachments         - upload and list CSVs
  5. Built-in indicators - host-side math over provider bars
"""
import pytest

from conftest import make_bars

pytestmark = pytest.mark.slow

SMA_SCRIPT = """
async def default(env):
    bars = await env.get_bars()
    closes = [b["close"] for b in bars]
    values = env.utils.sma(closes, 5)
    await env.plot.line("sma", [{"time": b["time"], "value": v} for b, v in zip(bars[4:], values)])
"""


@pytest.fixture(scope="module")
def client():
    from fastapi.testclient import TestClient
    from api.main import create_app
    from providers.memory import InMemoryBarProvider

    bars = InMemoryBarProvider({("SPY", "1d"): make_bars([100.0 + i for i in range(30)])})
    with TestClient(create_app(bar_provider=bars)) as c:
        yield c


# ══════════════════════════════════════════════════════════════════════════
# 1. Health
# ══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_health_ok(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "ok"
        assert body["services"]["bars"] == "InMemoryBarProvider"


# ══════════════════════════════════════════════════════════════════════════
# 2. Indicator runs
# ══════════════════════════════════════════════════════════════════════════

class TestIndicatorRuns:

    def test_run_commits_artifacts(self, client):
        r = client.post("/indicators/c1/run", json={"source_code": SMA_SCRIPT})
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "completed", body["error"]
        assert body["done"] == {"type": "done"}
        assert body["artifacts"] == ["c1::sma"]
        assert any(line["text"] == "Running on SPY 1d" for line in body["logs"])

        artifacts = client.get("/indicators/c1/artifacts").json()
        assert list(artifacts["line"]) == ["c1::sma"]
        assert len(artifacts["line"]["c1::sma"]["data"]) == 26
        assert artifacts["boxes"] == {}

    def test_no_export_is_reported(self, client):
        body = client.post("/indicators/c2/run", json={"source_code": "x = 1\n"}).json()
        assert body["status"] == "failed"
        assert body["done"] == {"type": "done", "error": "no callable export"}
        assert client.get("/indicators/c2/artifacts").json()["line"] == {}
        logs = client.get("/indicators/c2/logs").json()
        assert logs[-1]["level"] == "error"

    def test_editor_run_times_out(self, client):
        body = client.post(
            "/indicators/c3/run",
            json={"source_code": "async def default(env):\n    await sleep(5)\n", "editor": True},
        ).json()
        assert body["status"] == "timed_out"
        assert body["done"] == {"type": "done", "timedOut": True}
        assert body["logs"][-1]["text"] == "Runtime timed out"

    def test_rerun_and_delete(self, client):
        client.post("/indicators/c4/run", json={"source_code": SMA_SCRIPT})
        rerun = client.post("/indicators/c4/rerun").json()
        assert rerun["artifacts"] == ["c4::sma"]

        r = client.delete("/indicators/c4")
        assert r.status_code == 200
        assert r.json() == {"instance_id": "c4", "removed": True}
        assert client.get("/indicators/c4/artifacts").status_code == 404


# ══════════════════════════════════════════════════════════════════════════
# 3. Error handling
# ══════════════════════════════════════════════════════════════════════════

class TestErrorHandling:

    def test_unknown_instance_404(self, client):
        assert client.get("/indicators/ghost/artifacts").status_code == 404
        assert client.post("/indicators/ghost/rerun").status_code == 404
        assert client.delete("/indicators/ghost").status_code == 404

    def test_empty_source_422(self, client):
        r = client.post("/indicators/c5/run", json={"source_code": "   "})
        assert r.status_code == 422

    def test_bad_timeout_422(self, client):
        r = client.post("/indicators/c5/run", json={"source_code": SMA_SCRIPT, "timeout_ms": 0})
        assert r.status_code == 422

    def test_missing_body_422(self, client):
        assert client.post("/indicators/c5/run", json={}).status_code == 422


# ══════════════════════════════════════════════════════════════════════════
# 4. Attachments
# ══════════════════════════════════════════════════════════════════════════

class TestAttachments:

    def test_upload_and_list(self, client):
        r = client.post("/attachments/levels.csv", content="time,price\n1700000000,101.5\n")
        assert r.status_code == 200
        manifest = r.json()
        assert manifest["columns"] == ["time", "price"]
        assert manifest["row_count"] == 1
        assert "levels.csv" in client.get("/attachments").json()

    def test_manifest_of_uploaded_csv(self, client):
        client.post("/attachments/levels.csv", content="time,price\n1700000000,101.5\n")
        r = client.get("/attachments/levels.csv")
        assert r.status_code == 200
        assert r.json()["row_count"] == 1
        assert r.json()["name"] == "levels.csv"

    def test_manifest_of_unknown_csv_404(self, client):
        r = client.get("/attachments/missing.csv")
        assert r.status_code == 404
        assert "missing.csv" in r.json()["detail"]


# ══════════════════════════════════════════════════════════════════════════
# 5. Built-in indicators
# ══════════════════════════════════════════════════════════════════════════

class TestBuiltins:

    def test_builtin_sma(self, client):
        r = client.get("/builtin/sma", params={"period": 5})
        assert r.status_code == 200
        points = r.json()
        assert len(points) == 26
        assert points[0]["value"] == pytest.approx(102.0)

    def test_builtin_macd_short_history_is_empty(self, client):
        body = client.get("/builtin/macd").json()
        assert body == {"macd": [], "signal": [], "histogram": []}

    def test_builtin_unknown_kind_404(self, client):
        assert client.get("/builtin/ichimoku").status_code == 404

    def test_builtin_over_async_provider(self):
        from fastapi.testclient import TestClient
        from api.main import create_app

        class AsyncBars:
            async def get_bars(self, symbol, timeframe):
                return make_bars([100.0 + i for i in range(30)])

        with TestClient(create_app(bar_provider=AsyncBars())) as c:
            r = c.get("/builtin/sma", params={"period": 5})
        assert r.status_code == 200
        points = r.json()
        assert len(points) == 26
        assert points[0]["value"] == pytest.approx(102.0)
