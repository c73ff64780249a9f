from unittest.mock import Mock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from dualwrite.api.router import get_flag_store, get_recorder, router
from dualwrite.core.errors import ConfigUnavailable
from dualwrite.core.types import DiffOp, DiffRecord
from dualwrite.utils.time import days_ago


@pytest.fixture
def app(flag_store, recorder):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_flag_store] = lambda: flag_store
    app.dependency_overrides[get_recorder] = lambda: recorder
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _record(recorder, endpoint="budget", severity="error", created_at=None):
    rec = DiffRecord(
        api_endpoint=endpoint,
        operation="update",
        severity=severity,
        diff=[DiffOp("replace", "/amount", 2)],
        primary_result_status="fulfilled",
        secondary_result_status="fulfilled",
    )
    if created_at is not None:
        rec.created_at = created_at
    recorder.record(rec)
    return rec


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


class TestFlags:
    def test_missing_flags_is_404(self, client):
        assert client.get("/admin/dual_write/flags").status_code == 404

    def test_toggle_and_read(self, client):
        r = client.put("/admin/dual_write/flags", json={"dualWrite": "on", "primary": "new"})
        assert r.status_code == 200
        assert r.json()["value"] == {"enableDualWrite": True, "enableSupabasePrimary": True}

        r = client.get("/admin/dual_write/flags")
        body = r.json()
        assert body["mode"] == "dual-write-new-authoritative"
        assert body["authoritativeBackend"] == "secondary"

    def test_bad_toggle_is_400(self, client):
        assert client.put("/admin/dual_write/flags", json={"dualWrite": "sometimes"}).status_code == 400
        assert client.put("/admin/dual_write/flags", json={}).status_code == 400

    def test_patch(self, client):
        r = client.patch("/admin/dual_write/flags", json={"value": {"enableDualWrite": True, "rollout": "budget"}})
        assert r.status_code == 200
        assert r.json()["value"]["rollout"] == "budget"

        assert client.patch("/admin/dual_write/flags", json={"value": {"enableDualWrite": "x"}}).status_code == 400
        assert client.patch("/admin/dual_write/flags", json={"value": {}}).status_code == 400

    def test_store_unavailable_is_503(self, app):
        store = Mock()
        store.get.side_effect = ConfigUnavailable("down")
        app.dependency_overrides[get_flag_store] = lambda: store
        with TestClient(app) as c:
            assert c.get("/admin/dual_write/flags").status_code == 503


class TestDiffs:
    def test_list_and_filter(self, client, recorder):
        _record(recorder, "budget", "error")
        _record(recorder, "budget", "info")
        _record(recorder, "spending", "warning")

        body = client.get("/admin/dual_write/diffs").json()
        assert body["count"] == 3

        body = client.get("/admin/dual_write/diffs", params={"severity": "error"}).json()
        assert [i["severity"] for i in body["items"]] == ["error"]

        body = client.get("/admin/dual_write/diffs", params={"endpoint": "budget", "severity": "info"}).json()
        assert body["count"] == 1
        assert body["items"][0]["apiEndpoint"] == "budget"

    def test_endpoint_filters_apply_before_limit(self, client, recorder):
        _record(recorder, "budget", "error", created_at=days_ago(2))
        for _ in range(3):
            _record(recorder, "budget", "info")

        params = {"endpoint": "budget", "severity": "error", "limit": 1}
        body = client.get("/admin/dual_write/diffs", params=params).json()
        assert body["count"] == 1
        assert body["items"][0]["severity"] == "error"

        params = {"endpoint": "budget", "end": days_ago(1).isoformat(), "limit": 1}
        body = client.get("/admin/dual_write/diffs", params=params).json()
        assert [i["severity"] for i in body["items"]] == ["error"]

    def test_time_range(self, client, recorder):
        _record(recorder, created_at=days_ago(3))
        _record(recorder)
        body = client.get("/admin/dual_write/diffs", params={"start": days_ago(1).isoformat()}).json()
        assert body["count"] == 1

    def test_bad_query_is_400(self, client):
        assert client.get("/admin/dual_write/diffs", params={"severity": "fatal"}).status_code == 400
        assert client.get("/admin/dual_write/diffs", params={"start": "yesterday"}).status_code == 400

    def test_get_one(self, client, recorder):
        rec = _record(recorder)
        r = client.get(f"/admin/dual_write/diffs/{rec.id}")
        assert r.status_code == 200
        assert r.json()["diff"] == [{"op": "replace", "path": "/amount", "value": 2}]
        assert client.get("/admin/dual_write/diffs/nope").status_code == 404

    def test_summary(self, client, recorder):
        _record(recorder, "budget", "error")
        _record(recorder, "budget", "warning")
        body = client.get("/admin/dual_write/diffs/summary", params={"hours": 1}).json()
        assert body["endpoints"]["budget"]["total"] == 2
        assert body["totals"]["error"] == 1

    def test_cleanup(self, client, recorder):
        _record(recorder, severity="info", created_at=days_ago(40))
        _record(recorder, severity="error", created_at=days_ago(40))

        r = client.post("/admin/dual_write/diffs/cleanup", json={"retentionDays": 30})
        assert r.status_code == 200
        assert r.json()["deleted"] == 1

        r = client.post("/admin/dual_write/diffs/cleanup", json={"retentionDays": 30, "severity": ["error"]})
        assert r.json()["deleted"] == 1

        assert client.post("/admin/dual_write/diffs/cleanup", json={"severity": "fatal"}).status_code == 400
