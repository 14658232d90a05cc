from datetime import timedelta

import httpx
import pytest

from securevote.client import CredentialStore, SecureVoteClient, remote_publisher
from securevote.engine import PaillierEngine
from securevote.errors import ConflictError, EngineError, StateError
from securevote.keyholder import KeyHolder, KeyState
from securevote.models import utcnow

from conftest import ADMIN_PASSWORD, CANDIDATES, TEST_KEY_SIZE


def election_body(start=None, lasts=timedelta(hours=1), candidates=CANDIDATES):
    start = start or utcnow() - timedelta(minutes=1)
    return {
        "name": "E1",
        "start_time": start.isoformat(),
        "end_time": (start + lasts).isoformat(),
        "candidates": candidates,
    }


@pytest.fixture
def api(client, tmp_path):
    voter_api = SecureVoteClient(
        "http://testserver",
        session=client,
        credentials=CredentialStore(str(tmp_path / "wallet" / "tokens.json")),
        engine=PaillierEngine(TEST_KEY_SIZE),
        backoff=0,
    )
    return voter_api


@pytest.fixture
def admin_api(client):
    admin = SecureVoteClient("http://testserver", session=client, engine=PaillierEngine(TEST_KEY_SIZE), backoff=0)
    admin.login("admin", ADMIN_PASSWORD)
    return admin


def test_root(client):
    assert client.get("/").json() == {"message": "API active"}


def test_scenario_a_open_election_is_not_closed(client, admin_headers):
    res = client.post("/admin/elections", json=election_body(), headers=admin_headers)
    assert res.status_code == 200
    election_id = res.json()["election_id"]

    election = client.get(f"/elections/{election_id}").json()
    assert election["closed"] is False
    assert election["state"] == "Open"
    assert election["has_server_key"] is True
    assert election["candidates"] == CANDIDATES

    listed = client.get("/elections").json()
    assert [e["id"] for e in listed] == [election_id]


def test_admin_routes_require_a_bearer_token(client):
    assert client.post("/admin/elections", json=election_body()).status_code == 401
    assert client.post("/admin/elections", json=election_body(), headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/admin/logs").status_code == 401


def test_admin_login_rejects_bad_password(client):
    res = client.post("/auth/admin/login", json={"username": "admin", "password": "wrong"})
    assert res.status_code == 401


def test_invalid_time_range_is_a_validation_error(client, admin_headers):
    res = client.post("/admin/elections", json=election_body(lasts=timedelta(0)), headers=admin_headers)
    assert res.status_code == 422
    assert res.json()["error"] == "validation_error"
    assert client.get("/elections").json() == []


def test_empty_candidates_is_a_validation_error(client, admin_headers):
    res = client.post("/admin/elections", json=election_body(candidates=[]), headers=admin_headers)
    assert res.status_code == 422
    assert res.json()["error"] == "validation_error"


def test_unknown_election_is_404(client):
    res = client.get("/elections/missing")
    assert res.status_code == 404
    assert res.json()["error"] == "not_found"


def test_token_issuance_is_idempotent(client):
    first = client.post("/auth/token", json={"voter_id": "v1"}).json()["token"]
    second = client.post("/auth/token", json={"voter_id": "v1"}).json()["token"]
    assert first == second
    res = client.post("/auth/token", json={"voter_id": "  "})
    assert res.status_code == 422


def test_scenario_b_double_vote_is_a_conflict(api, admin_api):
    election_id = admin_api.create_election("E1", utcnow() - timedelta(minutes=1), utcnow() + timedelta(hours=1), CANDIDATES)

    receipt = api.cast_vote("v1", election_id, 1)
    assert receipt["status"] == "accepted"

    with pytest.raises(ConflictError):
        api.cast_vote("v1", election_id, 2)

    ledger = api.ledger(election_id)
    assert ledger["total"] == 1
    assert ledger["items"][0]["ballot_hash"] == receipt["ballot_hash"]


def test_rejections_carry_kind_and_state(client, admin_headers, paillier):
    start = utcnow() + timedelta(hours=1)
    election_id = client.post("/admin/elections", json=election_body(start=start), headers=admin_headers).json()["election_id"]
    token = client.post("/auth/token", json={"voter_id": "v1"}).json()["token"]
    server_key = client.get(f"/elections/{election_id}/server-key").json()["server_key"]
    ciphertext = paillier.encrypt(server_key, 1, [1, 2])

    res = client.post(f"/elections/{election_id}/ballots", json={"token": token, "ciphertext": ciphertext})
    assert res.status_code == 409
    assert res.json() == {"error": "state_error", "detail": res.json()["detail"], "state": "Draft"}


def test_scenario_c_ballot_after_end_is_a_state_error(api, admin_api):
    start = utcnow() - timedelta(hours=2)
    election_id = admin_api.create_election("E1", start, start + timedelta(hours=1), CANDIDATES)
    with pytest.raises(StateError) as excinfo:
        api.cast_vote("v1", election_id, 1)
    assert excinfo.value.state == "Closed"


def test_forged_token_is_an_auth_error(client, admin_headers, paillier):
    election_id = client.post("/admin/elections", json=election_body(), headers=admin_headers).json()["election_id"]
    server_key = client.get(f"/elections/{election_id}/server-key").json()["server_key"]
    res = client.post(f"/elections/{election_id}/ballots", json={
        "token": "tok_forged",
        "ciphertext": paillier.encrypt(server_key, 1, [1, 2]),
    })
    assert res.status_code == 401
    assert res.json()["error"] == "auth_error"


def test_scenario_d_and_result_idempotence(api, admin_api):
    election_id = admin_api.create_election("E1", utcnow() - timedelta(minutes=1), utcnow() + timedelta(hours=1), CANDIDATES)
    for voter, choice in (("v1", 1), ("v2", 1), ("v3", 2)):
        api.cast_vote(voter, election_id, choice)

    assert api.result(election_id) == {"message": "pending", "state": "Open"}

    closed = admin_api.close_election(election_id)
    assert closed["closed"] is True

    first = api.result(election_id)
    second = api.result(election_id)
    assert first == second
    assert first["winner_label"] == "Alice"
    assert first["ballot_count"] == 3
    assert [c["count"] for c in first["counts"]] == [2, 1]
    assert api.election(election_id)["state"] == "Tallied"


def test_scenario_e_no_votes(api, admin_api):
    election_id = admin_api.create_election("E1", utcnow() - timedelta(minutes=1), utcnow() + timedelta(hours=1), CANDIDATES)
    admin_api.close_election(election_id)

    result = api.result(election_id)
    assert result["winner_label"] is None
    assert result["message"] == "no votes cast"
    assert result["ballot_count"] == 0


def test_credentials_stay_in_the_voter_store(api, admin_api, tmp_path):
    token = api.obtain_token("v1")
    store = CredentialStore(str(tmp_path / "wallet" / "tokens.json"))
    assert store.get("v1") == token
    assert api.obtain_token("v1") == token


def test_server_key_publication_is_idempotent(client, admin_headers, paillier):
    res = client.post("/admin/elections", json=election_body(), headers=admin_headers)
    election_id = res.json()["election_id"]
    published = client.get(f"/elections/{election_id}/server-key").json()["server_key"]

    again = client.post(f"/elections/{election_id}/server-key", json={"server_key": published}, headers=admin_headers)
    assert again.status_code == 200
    assert again.json()["status"] == "already_published"

    other = paillier.generate_key_bundle().evaluation_key
    conflict = client.post(f"/elections/{election_id}/server-key", json={"server_key": other}, headers=admin_headers)
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "conflict"


def test_external_key_holder_publishes_over_http(app, client, admin_headers, gateway, tmp_path):
    app.state.settings.auto_provision_keys = False
    election_id = client.post("/admin/elections", json=election_body(), headers=admin_headers).json()["election_id"]
    assert client.get(f"/elections/{election_id}").json()["state"] == "Draft"
    assert client.get(f"/elections/{election_id}/server-key").status_code == 404

    holder_api = SecureVoteClient("http://testserver", session=client, backoff=0)
    holder_api.login("admin", ADMIN_PASSWORD)
    holder = KeyHolder(str(tmp_path / "laptop"), gateway, remote_publisher(holder_api))
    assert holder.provision(election_id) == KeyState.PUBLISHED

    assert client.get(f"/elections/{election_id}").json()["state"] == "Open"
    assert client.get(f"/elections/{election_id}/server-key").json()["server_key"] == holder.evaluation_key(election_id)


def test_audit_log_records_lifecycle(api, admin_api, client, admin_headers):
    election_id = admin_api.create_election("E1", utcnow() - timedelta(minutes=1), utcnow() + timedelta(hours=1), CANDIDATES)
    api.cast_vote("v1", election_id, 2)
    admin_api.close_election(election_id)
    api.result(election_id)

    page = client.get("/admin/logs", params={"page_size": 50}, headers=admin_headers).json()
    actions = [item["action"] for item in page["items"]]
    for action in ("election_created", "key_published", "ballot_accepted", "election_closed", "tally_computed"):
        assert action in actions


def test_client_retries_engine_errors(client, admin_headers, app):
    calls = {"n": 0}
    real_request = client.request

    def flaky(method, url, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(503, json={"error": "engine_error", "detail": "timed out"})
        return real_request(method, url, **kwargs)

    client.request = flaky
    voter = SecureVoteClient("http://testserver", session=client, backoff=0)
    assert voter.obtain_token("v1").startswith("tok_")
    assert calls["n"] == 2


def test_admin_can_provision_keys_later(app, client, admin_headers):
    app.state.settings.auto_provision_keys = False
    election_id = client.post("/admin/elections", json=election_body(), headers=admin_headers).json()["election_id"]

    res = client.post(f"/admin/elections/{election_id}/keys", headers=admin_headers)
    assert res.json() == {"election_id": election_id, "key_state": "Published"}
    assert client.get(f"/elections/{election_id}").json()["state"] == "Open"
    assert client.post("/admin/elections/missing/keys", headers=admin_headers).status_code == 404


def test_publishing_a_server_key_requires_admin(app, client, admin_headers, paillier):
    app.state.settings.auto_provision_keys = False
    election_id = client.post("/admin/elections", json=election_body(), headers=admin_headers).json()["election_id"]
    rogue_key = paillier.generate_key_bundle().evaluation_key

    res = client.post(f"/elections/{election_id}/server-key", json={"server_key": rogue_key})
    assert res.status_code == 401
    res = client.post(
        f"/elections/{election_id}/server-key", json={"server_key": rogue_key},
        headers={"Authorization": "Bearer forged"},
    )
    assert res.status_code == 401

    election = client.get(f"/elections/{election_id}").json()
    assert election["has_server_key"] is False
    assert election["state"] == "Draft"


def test_key_generation_failure_during_create_keeps_a_single_election(app, admin_api, monkeypatch):
    engine = app.state.engine.engine
    real_generate = engine.generate_key_bundle
    calls = {"n": 0}

    def flaky_generate():
        calls["n"] += 1
        if calls["n"] == 1:
            raise EngineError("engine timed out")
        return real_generate()

    monkeypatch.setattr(engine, "generate_key_bundle", flaky_generate)

    election_id = admin_api.create_election("E1", utcnow() - timedelta(minutes=1), utcnow() + timedelta(hours=1), CANDIDATES)

    assert [e["id"] for e in admin_api.elections()] == [election_id]
    assert admin_api.election(election_id)["state"] == "Draft"
    assert admin_api.provision_keys(election_id) == "Published"
    assert admin_api.election(election_id)["state"] == "Open"
    assert calls["n"] == 2


def test_create_reports_the_key_state(app, client, admin_headers):
    body = client.post("/admin/elections", json=election_body(), headers=admin_headers).json()
    assert body["key_state"] == "Published"

    app.state.settings.auto_provision_keys = False
    body = client.post("/admin/elections", json=election_body(), headers=admin_headers).json()
    assert body["key_state"] == "Unkeyed"


@pytest.mark.parametrize("params", [{"page": 0}, {"page_size": 0}, {"page_size": 501}])
def test_bad_ledger_pagination_is_a_validation_error(client, admin_headers, params):
    election_id = client.post("/admin/elections", json=election_body(), headers=admin_headers).json()["election_id"]
    res = client.get(f"/elections/{election_id}/ledger", params=params)
    assert res.status_code == 422
    assert res.json()["error"] == "validation_error"
