"""
Integration tests for the HTTP API.

The full application runs against a temporary SQLite database with a
recording runtime in place of Docker.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from instancer.infrastructure.orchestrator import ContainerRuntimeError
from instancer.main import create_app
from tests.fixtures.instance_fixtures import (
    ADMIN,
    ALICE,
    AWDF_BOX,
    AWDF_CONTEST,
    BOB,
    CAROL,
    CONTEST,
    DAVE,
    PWN,
    TEAM_ALPHA,
    WEB,
    build_harness,
    make_settings,
)

pytestmark = pytest.mark.integration

API = "/api/v1"


def instance_url(contest_id=CONTEST, challenge_id=WEB):
    return f"{API}/contests/{contest_id}/challenges/{challenge_id}/instance"


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


def seed_database(db_path):
    async def main():
        harness = await build_harness(db_path)
        await harness.close()

    asyncio.run(main())


@pytest.fixture
def make_client(db_path, fake_runtime):
    seed_database(db_path)
    clients = []

    def factory(**overrides):
        app = create_app(make_settings(db_path, **overrides), runtime=fake_runtime)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


class TestInstanceEndpoints:
    """Test the team-facing instance lifecycle."""

    def test_create(self, client):
        response = client.post(instance_url(), headers=as_user(ALICE))

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "Instance started"
        assert data["ports"] == {"80": "50000"}
        assert data["ttl"] > 7100
        assert data["container_name"].startswith(f"sbx_team_{TEAM_ALPHA}_{WEB}_")

    def test_requires_identity(self, client):
        assert client.post(instance_url()).status_code == 401
        assert client.post(instance_url(), headers={"X-User-Id": "nope"}).status_code == 401

    def test_duplicate_create(self, client):
        first = client.post(instance_url(), headers=as_user(ALICE)).json()
        response = client.post(instance_url(), headers=as_user(ALICE))

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "INSTANCE_EXISTS"
        assert body["retryable"] is False
        assert body["instance_id"] == first["instance_id"]

    def test_teammate_create(self, client):
        client.post(instance_url(), headers=as_user(ALICE))
        response = client.post(instance_url(), headers=as_user(BOB))

        assert response.status_code == 409
        assert response.json()["error"] == "INSTANCE_BY_TEAMMATE"
        assert response.json()["creator_name"] == "alice"

    @pytest.mark.parametrize(
        "user_id,contest_id,challenge_id,status_code,error",
        [
            (DAVE, CONTEST, WEB, 400, "NO_TEAM"),
            (ALICE, 999, WEB, 404, "CONTEST_NOT_FOUND"),
            (ALICE, CONTEST, 999, 404, "CHALLENGE_NOT_FOUND"),
            (ALICE, AWDF_CONTEST, AWDF_BOX, 403, "MANUAL_DEPLOY_FORBIDDEN"),
        ],
    )
    def test_rejected_create(self, client, user_id, contest_id, challenge_id, status_code, error):
        response = client.post(instance_url(contest_id, challenge_id), headers=as_user(user_id))
        assert response.status_code == status_code
        assert response.json()["error"] == error

    def test_runtime_failure(self, client, fake_runtime):
        fake_runtime.fail_start = ContainerRuntimeError("Docker error: image not found")
        response = client.post(instance_url(), headers=as_user(ALICE))

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "CONTAINER_CREATE_FAILED"
        assert body["retryable"] is True
        assert "image not found" in body["diagnostics"]

    def test_force_replace(self, client):
        client.post(instance_url(challenge_id=WEB), headers=as_user(ALICE))

        response = client.post(instance_url(challenge_id=PWN), headers=as_user(ALICE))
        assert response.status_code == 409
        assert response.json()["error"] == "NEED_DESTROY_OWN"
        assert response.json()["old_challenge_id"] == WEB

        response = client.post(
            instance_url(challenge_id=PWN),
            params={"force": "true"},
            headers=as_user(ALICE),
        )
        assert response.status_code == 201
        assert client.get(instance_url(challenge_id=WEB), headers=as_user(ALICE)).status_code == 404

    def test_get(self, client):
        client.post(instance_url(), headers=as_user(ALICE))

        own = client.get(instance_url(), headers=as_user(ALICE)).json()
        teammate = client.get(instance_url(), headers=as_user(BOB)).json()

        assert own["is_owner"] is True
        assert own["status"] == "running"
        assert teammate["is_owner"] is False
        assert teammate["creator_name"] == "alice"

        response = client.get(instance_url(), headers=as_user(CAROL))
        assert response.status_code == 404
        assert response.json()["error"] == "NO_INSTANCE"

    def test_destroy(self, client, fake_runtime):
        created = client.post(instance_url(), headers=as_user(ALICE)).json()

        response = client.delete(instance_url(), headers=as_user(BOB))
        assert response.status_code == 403
        assert response.json()["error"] == "NOT_OWNER"

        response = client.delete(instance_url(), headers=as_user(ALICE))
        assert response.status_code == 200
        assert response.json()["instance_id"] == created["instance_id"]
        assert fake_runtime.stopped == [created["container_id"]]

        assert client.get(instance_url(), headers=as_user(ALICE)).status_code == 404

    def test_extend_outside_window(self, client):
        client.post(instance_url(), headers=as_user(ALICE))
        response = client.post(instance_url() + "/extend", headers=as_user(ALICE))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "NOT_IN_WINDOW"
        assert body["remaining_minutes"] in (119, 120)
        assert body["window_minutes"] == 15

    def test_extend_inside_window(self, make_client):
        client = make_client(container_extend_window_minutes=180)
        created = client.post(instance_url(), headers=as_user(ALICE)).json()
        response = client.post(instance_url() + "/extend", headers=as_user(BOB))

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Extended by 120 minutes"
        assert body["ttl"] > created["ttl"]


class TestAdminEndpoints:
    """Test administrator oversight."""

    def test_requires_admin(self, client):
        response = client.get(f"{API}/admin/instances", headers=as_user(ALICE))
        assert response.status_code == 403

    def test_list_and_stats(self, client):
        client.post(instance_url(), headers=as_user(ALICE))
        client.post(instance_url(), headers=as_user(CAROL))

        listing = client.get(f"{API}/admin/instances", headers=as_user(ADMIN)).json()
        assert listing["total"] == 2

        filtered = client.get(
            f"{API}/admin/instances",
            params={"search": "carol"},
            headers=as_user(ADMIN),
        ).json()
        assert [i["team_name"] for i in filtered["instances"]] == ["Bravo"]

        stats = client.get(f"{API}/admin/instances/stats", headers=as_user(ADMIN)).json()
        assert stats["running_count"] == 2
        assert stats["contest_stats"][0]["count"] == 2

    def test_clean_expired(self, client):
        client.post(instance_url(), headers=as_user(ALICE))
        response = client.post(f"{API}/admin/instances/clean-expired", headers=as_user(ADMIN))

        assert response.status_code == 200
        assert response.json()["cleaned"] == 0

    def test_batch_destroy(self, client):
        created = client.post(instance_url(), headers=as_user(ALICE)).json()
        response = client.post(
            f"{API}/admin/instances/batch-destroy",
            json={"ids": [created["instance_id"], 999]},
            headers=as_user(ADMIN),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["cleaned"] == 1
        assert body["skipped"] == 1

    def test_batch_destroy_requires_ids(self, client):
        response = client.post(
            f"{API}/admin/instances/batch-destroy",
            json={"ids": []},
            headers=as_user(ADMIN),
        )
        assert response.status_code == 422

    def test_admin_destroy(self, client):
        created = client.post(instance_url(), headers=as_user(ALICE)).json()
        url = f"{API}/admin/instances/{created['instance_id']}"

        assert client.delete(url, headers=as_user(ADMIN)).status_code == 200
        assert client.delete(url, headers=as_user(ADMIN)).status_code == 404

    @pytest.mark.parametrize("lines,expected", [("abc", 100), ("25", 25), ("9999", 500)])
    def test_logs(self, client, lines, expected):
        created = client.post(instance_url(), headers=as_user(ALICE)).json()
        response = client.get(
            f"{API}/admin/instances/{created['instance_id']}/logs",
            params={"lines": lines},
            headers=as_user(ADMIN),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["lines"] == expected
        assert body["container_id"] == created["container_id"]
        assert "ready" in body["logs"]

    def test_flags(self, client):
        response = client.get(
            f"{API}/admin/contests/{CONTEST}/challenges/{WEB}/flags",
            headers=as_user(ADMIN),
        )
        assert response.status_code == 200
        assert response.json()["total"] == 2

        response = client.post(
            f"{API}/admin/contests/{CONTEST}/teams/{TEAM_ALPHA}/flags",
            headers=as_user(ADMIN),
        )
        assert response.status_code == 200
        assert response.json()["count"] == 5


class TestHealth:
    """Test health probes."""

    def test_health(self, client):
        response = client.get(f"{API}/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["database"]["status"] == "healthy"

    def test_liveness(self, client):
        assert client.get(f"{API}/health/live").json() == {"status": "alive"}
