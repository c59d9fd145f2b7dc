import pytest
from fastapi.testclient import TestClient

from conftest import RecordingSender
from portal.main import app
from portal.routes import deps
from portal.services import events
from portal.services.auth import get_auth_provider
from portal.services.engagement import IdeaBoard, VoteLedger
from portal.services.fraud_signals import FraudSignalCollector
from portal.services.ledger import CreditLedger
from portal.services.mailer import Mailer
from portal.services.onboarding import Onboarding
from portal.services.store import C_IDEAS

TARGETS = {"verse-hotel": "Verse Hotel", "western-leone": "Western Leone", "rio-texaco": "Rio Texaco"}


@pytest.fixture
def client(db, bus, provider, bucket):
    ledger = CreditLedger(db, bus)
    onboarding = Onboarding(provider, FraudSignalCollector(db, bus, recaptcha_secret=""), ledger,
                            Mailer(api_key="", sender=RecordingSender()))
    app.dependency_overrides[get_auth_provider] = lambda: provider
    app.dependency_overrides[deps.get_bus] = lambda: bus
    app.dependency_overrides[deps.get_ledger] = lambda: ledger
    app.dependency_overrides[deps.get_onboarding] = lambda: onboarding
    app.dependency_overrides[deps.get_votes] = lambda: VoteLedger(db, bus, TARGETS)
    app.dependency_overrides[deps.get_ideas] = lambda: IdeaBoard(db, bucket, bus)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _signed_in(client, provider, email="pioneer@example.com"):
    r = client.post("/api/auth/signup", json={"email": email, "password": "hunter22"})
    assert r.status_code == 200, r.text
    uid = r.json()["userId"]
    provider.verify_email(uid)
    r = client.post("/api/auth/firebase", json={"idToken": provider.token_for(uid)})
    assert r.status_code == 200, r.text
    body = r.json()
    return uid, {"Authorization": f"Bearer {body['token']}"}, body


def test_healthz(client):
    r = client.get("/api/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_signup_returns_link_in_dev(client):
    r = client.post("/api/auth/signup", json={"email": "a@example.com", "password": "hunter22"})
    body = r.json()
    assert body["ok"] is True
    assert body["redirect"] == "login?verify=pending"
    assert body["verificationLink"].startswith("https://auth.example.test/verify")


def test_signup_rejects_disposable(client):
    r = client.post("/api/auth/signup", json={"email": "a@yopmail.com", "password": "hunter22"})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "disposable_email"


def test_unverified_sign_in_gets_no_session(client, provider):
    uid = client.post("/api/auth/signup", json={"email": "a@example.com", "password": "hunter22"}).json()["userId"]
    r = client.post("/api/auth/firebase", json={"idToken": provider.token_for(uid)})
    body = r.json()
    assert body["needsVerification"] is True
    assert "token" not in body


def test_bad_id_token(client):
    r = client.post("/api/auth/firebase", json={"idToken": "forged"})
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "auth/invalid-credential"


def test_first_verified_sign_in_grants_bonus(client, provider):
    uid, headers, body = _signed_in(client, provider)
    assert body["bonusGranted"] is True
    assert body["balance"] == 25

    again = client.post("/api/auth/firebase", json={"idToken": provider.token_for(uid)}).json()
    assert again["bonusGranted"] is False

    r = client.get("/api/account/balance", headers=headers)
    assert r.json() == {"userId": uid, "balance": 25}
    items = client.get("/api/account/history", headers=headers).json()["items"]
    assert [i["reason"] for i in items] == ["signup_bonus"]


def test_member_routes_require_session(client):
    r = client.get("/api/account/balance")
    assert r.status_code == 401
    assert r.json()["detail"]["redirect"] == "login"

    r = client.get("/api/account/balance", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_session_and_display_name(client, provider):
    uid, headers, _ = _signed_in(client, provider)
    r = client.put("/api/auth/display-name", json={"displayName": "El Lobo"}, headers=headers)
    assert r.status_code == 200

    s = client.get("/api/auth/session", headers=headers).json()
    assert s["authenticated"] and s["verified"]
    assert s["userId"] == uid
    assert s["displayName"] == "El Lobo"

    anon = client.get("/api/auth/session").json()
    assert anon["authenticated"] is False


def test_vote_once(client, provider, bus):
    _, headers, _ = _signed_in(client, provider)
    r = client.post("/api/votes", json={"targetId": "rio-texaco"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["votes"] == 1

    r = client.post("/api/votes", json={"targetId": "rio-texaco"}, headers=headers)
    assert r.status_code == 409

    r = client.post("/api/votes", json={"targetId": "atlantis"}, headers=headers)
    assert r.status_code == 404

    listing = client.get("/api/votes", headers=headers).json()
    rio = next(t for t in listing["targets"] if t["id"] == "rio-texaco")
    assert rio["votes"] == 1 and rio["hasVoted"] is True
    assert listing["totalVotes"] == 1
    assert len(bus.of(events.VOTE_CAST)) == 1


def test_ideas_submit_and_support(client, provider, db, bucket):
    _, headers, _ = _signed_in(client, provider)
    r = client.post(
        "/api/community/ideas",
        data={"title": "Sombra de Lobo", "logline": "A wolf in the desert", "genre": "Mystery"},
        files={"image": ("poster.png", b"\x89PNG\r\n", "image/png")},
        headers=headers,
    )
    assert r.status_code == 200, r.text
    idea_id = r.json()["id"]
    assert len(bucket.uploads) == 1

    r = client.post(f"/api/community/ideas/{idea_id}/support", headers=headers)
    assert r.json() == {"ok": True, "supported": True, "supportCount": 1}

    items = client.get("/api/community/ideas", headers=headers).json()["items"]
    assert items[0]["supported"] is True
    assert "supporters" not in items[0]
    assert items[0]["statusLabel"] == "Gathering Support"

    stats = client.get("/api/community/stats").json()
    assert stats == {"totalIdeas": 1, "totalSupport": 1, "greenlitCount": 0}

    r = client.post(f"/api/community/ideas/{idea_id}/support", headers=headers)
    assert r.json()["supported"] is False
    assert db.docs(C_IDEAS)[idea_id]["supportCount"] == 0


def test_support_missing_idea(client, provider):
    _, headers, _ = _signed_in(client, provider)
    assert client.post("/api/community/ideas/nope/support", headers=headers).status_code == 404


def test_wallet_balance_emits_event(client, provider, bus):
    _, headers, _ = _signed_in(client, provider)
    r = client.post("/api/wallet/balance", json={"walletType": "eternl", "address": "addr1" + "q" * 40, "utxos": []},
                    headers=headers)
    assert r.status_code == 200
    assert r.json()["pasoBalance"] == 0
    assert len(bus.of(events.WALLET_CONNECTED)) == 1

    r = client.post("/api/wallet/balance", json={"walletType": "metamask"})
    assert r.status_code == 400


def test_logout_clears_cookie(client):
    r = client.post("/api/auth/logout")
    assert r.status_code == 200
    assert "elPasoUserId" in r.headers.get("set-cookie", "")


def test_session_survives_account_read_outage(client, provider, db):
    uid, headers, _ = _signed_in(client, provider)
    db.fail.add("get")
    r = client.get("/api/auth/session", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["authenticated"] is True
    assert body["userId"] == uid


def test_ideas_listing_survives_store_outage(client, provider, db):
    _, headers, _ = _signed_in(client, provider)
    db.fail.add("query")
    assert client.get("/api/community/ideas", headers=headers).json() == {"items": []}
    assert client.get("/api/community/stats").json()["totalIdeas"] == 0


def test_vote_in_flight_has_its_own_message(client, provider, db, bus):
    uid, headers, _ = _signed_in(client, provider)
    votes = VoteLedger(db, bus, TARGETS)
    app.dependency_overrides[deps.get_votes] = lambda: votes
    votes._voting.claim((uid, "rio-texaco"))

    r = client.post("/api/votes", json={"targetId": "rio-texaco"}, headers=headers)
    assert r.status_code == 409
    detail = r.json()["detail"]
    assert detail["code"] == "in_flight"
    assert detail["error"] == "Your vote is still being recorded"
