from fastapi.testclient import TestClient

ALICE = {"Authorization": "Bearer alice"}
BOB = {"Authorization": "Bearer bob"}
CAROL = {"x-supabase-auth": "carol"}


def test_partner_routes_require_token(client: TestClient):
    assert client.get("/api/partners").status_code == 401
    assert client.post("/api/partners", json={"partner_id": "bob"}).status_code == 401
    assert client.delete("/api/partners").status_code == 401


def test_link_is_symmetric_and_exclusive(client: TestClient):
    assert client.get("/api/partners", headers=ALICE).json() == {"partner_id": None}

    response = client.post("/api/partners", json={"partner_id": "bob"}, headers=ALICE)
    assert response.status_code == 200
    assert response.json() == {"ok": True, "partner_id": "bob"}

    assert client.get("/api/partners", headers=ALICE).json() == {"partner_id": "bob"}
    assert client.get("/api/partners", headers=BOB).json() == {"partner_id": "alice"}

    response = client.post("/api/partners", json={"partner_id": "carol"}, headers=ALICE)
    assert response.status_code == 400
    assert response.json()["detail"] == "You already have a partner"

    response = client.post("/api/partners", json={"partner_id": "bob"}, headers=CAROL)
    assert response.status_code == 400
    assert response.json()["detail"] == "Partner already linked"
    assert client.get("/api/partners", headers=CAROL).json() == {"partner_id": None}


def test_link_rejects_missing_or_self_partner(client: TestClient):
    response = client.post("/api/partners", json={}, headers=ALICE)
    assert response.status_code == 400
    assert response.json()["detail"] == "Missing partner_id"

    response = client.post("/api/partners", json={"partner_id": "  "}, headers=ALICE)
    assert response.status_code == 400

    response = client.post("/api/partners", json={"partner_id": "alice"}, headers=ALICE)
    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot partner with yourself"


def test_unlink_clears_both_sides(client: TestClient):
    client.post("/api/partners", json={"partner_id": "bob"}, headers=ALICE)

    response = client.delete("/api/partners", headers=BOB)
    assert response.status_code == 200
    assert response.json()["ok"] is True

    assert client.get("/api/partners", headers=ALICE).json() == {"partner_id": None}
    assert client.get("/api/partners", headers=BOB).json() == {"partner_id": None}

    # Unlinking without a partner is a no-op.
    assert client.delete("/api/partners", headers=CAROL).status_code == 200
    assert client.post("/api/partners", json={"partner_id": "carol"}, headers=ALICE).status_code == 200
