from datetime import datetime, timedelta, timezone

import app as app_module
from errors import permission_error
from receipts import parse_receipt, vote_doc_id
from schemas import NidaVerificationOutput

from conftest import NATIONAL_ID


def test_home_reports_login_state(client):
    assert client.get("/").get_json()["logged_in"] is False


def test_otp_login_flow(client, ballot):
    resp = client.post("/api/request-otp", json={"nationalId": NATIONAL_ID})
    assert resp.status_code == 200

    resp = client.post("/api/verify-otp", json={"otp": "000000"})
    assert resp.status_code == 401

    resp = client.post("/api/verify-otp", json={"otp": "123456"})
    assert resp.status_code == 200
    assert resp.get_json()["redirect"] == "/vote"
    with client.session_transaction() as sess:
        assert sess["national_id"] == NATIONAL_ID
        assert "pending_national_id" not in sess


def test_request_otp_requires_sixteen_digits(client):
    resp = client.post("/api/request-otp", json={"nationalId": "12345"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "National ID must be 16 digits."


def test_expired_otp_is_rejected(client):
    with client.session_transaction() as sess:
        sess["pending_national_id"] = NATIONAL_ID
        sess["otp_timestamp"] = (datetime.now(timezone.utc) - timedelta(minutes=10)).timestamp()
    resp = client.post("/api/verify-otp", json={"otp": "123456"})
    assert resp.status_code == 400
    assert "expired" in resp.get_json()["error"]


def test_request_otp_blocks_voter_who_voted_everywhere(client, store, ballot):
    for group_id in (ballot["presidential"], ballot["senate"]):
        store.create("votes", vote_doc_id(NATIONAL_ID, group_id), {"candidateId": "x", "groupId": group_id})
    resp = client.post("/api/request-otp", json={"nationalId": NATIONAL_ID})
    assert resp.status_code == 409


def test_logout_clears_session(voter_client):
    voter_client.get("/logout")
    assert voter_client.get("/vote").status_code == 401


def test_ballot_requires_login(client):
    resp = client.get("/vote")
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "National ID not found. Please log in again."


def test_ballot_lists_groups_with_candidates(voter_client, ballot):
    data = voter_client.get("/vote").get_json()

    assert data["electionStatus"] == "active"
    assert data["votingOpen"] is True
    assert [g["name"] for g in data["groups"]] == ["Presidential", "Senate"]
    assert [c["name"] for c in data["groups"][0]["candidates"]] == ["Alice", "Bob"]
    assert data["votedGroups"] == []


def test_cast_vote_writes_keyed_document_and_returns_receipt(voter_client, store, ballot):
    resp = voter_client.post("/api/vote", json={"candidateId": ballot["alice"]})

    assert resp.status_code == 201
    body = resp.get_json()
    assert parse_receipt(body["receipt"]) == (NATIONAL_ID, ballot["presidential"])
    vote = store.get("votes", vote_doc_id(NATIONAL_ID, ballot["presidential"]))
    assert vote["candidateId"] == ballot["alice"]
    assert vote["candidateName"] == "Alice"
    assert vote["nationalId"] == NATIONAL_ID
    assert vote["timestamp"]

    ballot_view = voter_client.get("/vote").get_json()
    assert ballot_view["votedGroups"] == [ballot["presidential"]]


def test_one_vote_per_group(voter_client, store, ballot):
    assert voter_client.post("/api/vote", json={"candidateId": ballot["alice"]}).status_code == 201

    resp = voter_client.post("/api/vote", json={"candidateId": ballot["bob"]})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "You have already cast a vote in this group."

    # A different group is still open to the same voter.
    assert voter_client.post("/api/vote", json={"candidateId": ballot["carol"]}).status_code == 201
    assert len(store.list("votes")) == 2


def test_write_collision_emits_permission_error(voter_client, store, ballot, monkeypatch):
    received = []

    def record(error):
        received.append(error)

    permission_error.connect(record)
    # Simulate a concurrent write landing between the check and the create.
    monkeypatch.setattr(store, "exists", lambda collection, doc_id: collection == "groups")
    store.create("votes", vote_doc_id(NATIONAL_ID, ballot["presidential"]), {"candidateId": ballot["bob"]})
    try:
        resp = voter_client.post("/api/vote", json={"candidateId": ballot["alice"]})
    finally:
        permission_error.disconnect(record)

    assert resp.status_code == 403
    assert resp.get_json()["error"] == "Your vote could not be submitted. Please try again."
    assert received and received[0].operation == "create"
    assert received[0].path == f"votes/{vote_doc_id(NATIONAL_ID, ballot['presidential'])}"


def test_vote_rejected_when_election_ended(voter_client, store, ballot):
    store.set_path("settings/election", {"status": "ended"})
    resp = voter_client.post("/api/vote", json={"candidateId": ballot["alice"]})
    assert resp.status_code == 403
    assert store.list("votes") == []


def test_vote_rejected_before_start_date(voter_client, store, ballot):
    store.set_path("settings/election", {"status": "active", "startDate": "2099-01-01T00:00:00+00:00"})
    resp = voter_client.post("/api/vote", json={"candidateId": ballot["alice"]})
    assert resp.status_code == 403
    assert resp.get_json()["error"].startswith("Voting opens at")
    assert store.list("votes") == []


def test_vote_restricted_to_active_group(voter_client, store, ballot):
    store.set_path("settings/election", {"status": "active", "activeGroupId": ballot["senate"]})

    assert voter_client.post("/api/vote", json={"candidateId": ballot["alice"]}).status_code == 403
    assert voter_client.post("/api/vote", json={"candidateId": ballot["carol"]}).status_code == 201


def test_vote_for_unknown_candidate(voter_client, ballot):
    assert voter_client.post("/api/vote", json={"candidateId": "nope"}).status_code == 404
    assert voter_client.post("/api/vote", json={}).status_code == 400


def test_verify_vote_round_trip(voter_client, ballot):
    receipt = voter_client.post("/api/vote", json={"candidateId": ballot["alice"]}).get_json()["receipt"]

    resp = voter_client.post("/api/verify-vote", json={"receipt": receipt})
    assert resp.status_code == 200
    assert resp.get_json() == {"success": True}

    assert voter_client.get(f"/confirmation?receipt={receipt}").get_json()["receipt"] == receipt


def test_verify_vote_accepts_any_well_formed_receipt_for_existing_vote(client, store, ballot):
    store.create("votes", vote_doc_id(NATIONAL_ID, ballot["senate"]), {"candidateId": ballot["carol"]})
    forged = f"receipt-{NATIONAL_ID}-{ballot['senate']}-1"
    assert client.post("/api/verify-vote", json={"receipt": forged}).get_json()["success"] is True


def test_verify_vote_failures(client, ballot):
    resp = client.post("/api/verify-vote", json={"receipt": "not-a-receipt"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Invalid receipt format."

    resp = client.post("/api/verify-vote", json={"receipt": f"receipt-{NATIONAL_ID}-{ballot['senate']}-1"})
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Vote not found."


def test_verify_identity_success_remembers_name(voter_client, monkeypatch):
    monkeypatch.setattr(
        app_module.ai_flows, "verify_national_id",
        lambda national_id, dob, district=None: NidaVerificationOutput(
            isValid=True, fullName="Uwamahoro Marie", reason="VALID"),
    )
    resp = voter_client.post("/api/verify-identity", json={"dob": "1990-05-14"})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["fullName"] == "Uwamahoro Marie"
    assert voter_client.get("/").get_json()["full_name"] == "Uwamahoro Marie"


def test_verify_identity_invalid_and_unavailable(voter_client, monkeypatch):
    monkeypatch.setattr(
        app_module.ai_flows, "verify_national_id",
        lambda national_id, dob, district=None: NidaVerificationOutput(isValid=False, reason="ID_DOB_MISMATCH"),
    )
    resp = voter_client.post("/api/verify-identity", json={"dob": "1970-01-01"})
    assert resp.get_json() == {
        "success": False,
        "error": "Invalid or unregistered National ID.",
        "reason": "ID_DOB_MISMATCH",
    }

    def unavailable(national_id, dob, district=None):
        raise ConnectionError("no route to host")

    monkeypatch.setattr(app_module.ai_flows, "verify_national_id", unavailable)
    resp = voter_client.post("/api/verify-identity", json={"dob": "1990-05-14"})
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "Could not connect to verification service."


def test_translate_endpoint(client, monkeypatch):
    from schemas import TranslationOutput

    monkeypatch.setattr(
        app_module.ai_flows, "translate_text",
        lambda text, language: TranslationOutput(translatedText="Muraho"),
    )
    resp = client.post("/api/translate", json={"text": "Hello", "language": "kin"})
    assert resp.get_json() == {"success": True, "data": {"translatedText": "Muraho"}}

    assert client.post("/api/translate", json={"text": "Hello", "language": "de"}).status_code == 400
    assert client.post("/api/translate", json={"text": "", "language": "fr"}).status_code == 400


def test_translate_endpoint_failure(client, monkeypatch):
    def broken(text, language):
        raise RuntimeError("quota exceeded")

    monkeypatch.setattr(app_module.ai_flows, "translate_text", broken)
    resp = client.post("/api/translate", json={"text": "Hello", "language": "fr"})
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "Failed to translate text."


def test_public_results_only_after_election_ends(client, store, ballot):
    store.create("votes", vote_doc_id(NATIONAL_ID, ballot["presidential"]), {
        "candidateId": ballot["alice"], "candidateName": "Alice", "groupId": ballot["presidential"],
    })
    assert client.get("/results").status_code == 403

    store.set_path("settings/election", {"status": "ended"})
    data = client.get("/results").get_json()
    assert data["totalVotes"] == 1
    assert data["groups"][0]["winners"] == ["Alice"]


def test_unknown_route_returns_json_404(client):
    resp = client.get("/no-such-page")
    assert resp.status_code == 404
    assert resp.get_json()["success"] is False
