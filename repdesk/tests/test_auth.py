from repdesk.models import ApiKey

def test_register_creates_owned_workspace(client):
    resp = client.post("/auth/register", json={"name": "Sam Rivera", "email": "sam@corner.test", "password": "pw-123456"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["email"] == "sam@corner.test"
    assert me["orgs"] == [{"id": me["orgs"][0]["id"], "name": "Sam Rivera's Workspace", "role": "owner"}]

def test_register_rejects_duplicate_email(client, user):
    resp = client.post("/auth/register", json={"name": "Dup", "email": "OWNER@harbordental.test", "password": "x"})
    assert resp.status_code == 400

def test_login_with_form(client, user):
    resp = client.post("/auth/login", data={"username": "owner@harbordental.test", "password": "s3cret-pass"})
    assert resp.status_code == 200
    assert resp.json()["token_type"] == "bearer"

    bad = client.post("/auth/login", data={"username": "owner@harbordental.test", "password": "wrong"})
    assert bad.status_code == 401

def test_unauthenticated_requests_are_rejected(client, location):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/locations").status_code == 401
    assert client.get("/reputation/reviews", params={"location_id": location.id}).status_code == 401

def test_api_key_lifecycle(client, db, auth_headers, org, location):
    created = client.post("/orgs/api-keys", json={"name": "zapier"}, headers=auth_headers).json()
    raw_key = created["api_key"]
    assert raw_key.startswith("rd_")

    listed = client.get("/orgs/api-keys", headers=auth_headers).json()
    assert [k["name"] for k in listed] == ["zapier"]
    assert "api_key" not in listed[0]

    resp = client.get("/locations", headers={"X-API-Key": raw_key})
    assert resp.status_code == 200
    assert [l["id"] for l in resp.json()] == [location.id]
    assert db.get(ApiKey, created["id"]).last_used_at is not None

    assert client.delete(f"/orgs/api-keys/{created['id']}", headers=auth_headers).json() == {"ok": True}
    assert client.get("/locations", headers={"X-API-Key": raw_key}).status_code == 401

def test_org_header_must_be_a_membership(client, auth_headers, other_location):
    headers = dict(auth_headers, **{"X-Org-Id": str(other_location.org_id)})
    assert client.get("/orgs/me", headers=headers).status_code == 403

def test_orgs_me(client, auth_headers, org):
    assert client.get("/orgs/me", headers=auth_headers).json()["name"] == "Harbor Dental Group"
