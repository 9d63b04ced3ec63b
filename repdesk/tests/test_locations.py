def test_location_crud(client, auth_headers, org):
    assert client.get("/locations/primary", headers=auth_headers).status_code == 404

    created = client.post(
        "/locations",
        json={"name": "Corner Bakery", "city": "Ann Arbor", "service_highlights": ["Sourdough"]},
        headers=auth_headers,
    )
    assert created.status_code == 200
    location = created.json()
    assert location["org_id"] == org.id
    assert location["google_location_name"] is None

    second = client.post("/locations", json={"name": "Corner Bakery Downtown"}, headers=auth_headers).json()
    assert client.get("/locations/primary", headers=auth_headers).json()["id"] == location["id"]

    patched = client.patch(f"/locations/{location['id']}", json={"phone": "(734) 555-0199"}, headers=auth_headers).json()
    assert patched["phone"] == "(734) 555-0199"
    assert patched["city"] == "Ann Arbor"

    assert client.delete(f"/locations/{second['id']}", headers=auth_headers).json() == {"ok": True}
    assert [l["id"] for l in client.get("/locations", headers=auth_headers).json()] == [location["id"]]

def test_location_name_cannot_be_cleared(client, auth_headers, location):
    for name in (None, "", "   "):
        resp = client.patch(f"/locations/{location.id}", json={"name": name}, headers=auth_headers)
        assert resp.status_code == 422
    assert client.get(f"/locations/{location.id}", headers=auth_headers).json()["name"] == "Harbor Dental"

def test_foreign_location_looks_missing(client, auth_headers, user, other_location):
    assert client.get(f"/locations/{other_location.id}", headers=auth_headers).status_code == 404
    assert client.patch(f"/locations/{other_location.id}", json={"name": "mine"}, headers=auth_headers).status_code == 404
    assert client.delete(f"/locations/{other_location.id}", headers=auth_headers).status_code == 404

def test_deleting_location_removes_connections(client, db, auth_headers, location, ig_connection):
    from repdesk.models import InstagramConnection

    assert client.delete(f"/locations/{location.id}", headers=auth_headers).status_code == 200
    db.expire_all()
    assert db.query(InstagramConnection).count() == 0
