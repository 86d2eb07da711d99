from conftest import ADMIN_HEADERS, WEDDING_BODY

BASE = "/api/admin/contract-templates"


def test_create_and_get_template(client, wedding_template):
    assert wedding_template["version"] == 1
    assert wedding_template["is_active"] is True
    assert wedding_template["is_published"] is False
    assert wedding_template["variables_schema"][0]["fields"][0]["name"] == "event_type"

    resp = client.get(f"{BASE}/{wedding_template['id']}", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["body_html"] == WEDDING_BODY

    assert client.get(f"{BASE}/999", headers=ADMIN_HEADERS).status_code == 404


def test_duplicate_active_name_rejected(client, wedding_template):
    resp = client.post(BASE, json={"name": "Wedding Agreement", "body_html": "<p>x</p>"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 409
    assert resp.json()["reason"] == "invalid_state"

    client.delete(f"{BASE}/{wedding_template['id']}", headers=ADMIN_HEADERS)
    resp = client.post(BASE, json={"name": "Wedding Agreement", "body_html": "<p>x</p>"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 201


def test_unbalanced_body_rejected(client):
    resp = client.post(BASE, json={"name": "Broken", "body_html": "{{#if x}}open"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 422
    assert resp.json()["reason"] == "validation_error"


def test_schema_validation(client):
    duplicate = [{"title": "A", "fields": [{"name": "x", "type": "text"}, {"name": "x", "type": "date"}]}]
    resp = client.post(BASE, json={"name": "Dup", "body_html": "{{x}}", "variables_schema": duplicate},
                       headers=ADMIN_HEADERS)
    assert resp.status_code == 422

    no_options = [{"title": "A", "fields": [{"name": "pkg", "type": "select", "options": []}]}]
    resp = client.post(BASE, json={"name": "NoOpts", "body_html": "{{pkg}}", "variables_schema": no_options},
                       headers=ADMIN_HEADERS)
    assert resp.status_code == 422

    bad_range = [{"title": "A", "fields": [{"name": "n", "type": "number", "min": 10, "max": 1}]}]
    resp = client.post(BASE, json={"name": "Range", "body_html": "{{n}}", "variables_schema": bad_range},
                       headers=ADMIN_HEADERS)
    assert resp.status_code == 422


def test_list_filters(client, wedding_template):
    client.post(BASE, json={"name": "Portrait Session", "event_type": "Portrait", "body_html": "<p>hi</p>"},
                headers=ADMIN_HEADERS)
    client.post(f"{BASE}/{wedding_template['id']}/publish", headers=ADMIN_HEADERS)

    names = [t["name"] for t in client.get(BASE, headers=ADMIN_HEADERS).json()]
    assert names == ["Portrait Session", "Wedding Agreement"]

    published = client.get(BASE, params={"published": True}, headers=ADMIN_HEADERS).json()
    assert [t["name"] for t in published] == ["Wedding Agreement"]

    portrait = client.get(BASE, params={"event_type": "Portrait"}, headers=ADMIN_HEADERS).json()
    assert [t["name"] for t in portrait] == ["Portrait Session"]

    search = client.get(BASE, params={"search": "Wed"}, headers=ADMIN_HEADERS).json()
    assert len(search) == 1


def test_published_body_is_frozen(client, wedding_template):
    tid = wedding_template["id"]
    client.post(f"{BASE}/{tid}/publish", headers=ADMIN_HEADERS)

    resp = client.patch(f"{BASE}/{tid}", json={"body_html": "<p>changed</p>"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 409

    resp = client.patch(f"{BASE}/{tid}", json={"description": "Standard wedding terms"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["description"] == "Standard wedding terms"

    client.post(f"{BASE}/{tid}/unpublish", headers=ADMIN_HEADERS)
    resp = client.patch(f"{BASE}/{tid}", json={"body_html": "<p>changed</p>"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["body_html"] == "<p>changed</p>"


def test_create_version_clones_as_draft(client, wedding_template):
    tid = wedding_template["id"]
    client.post(f"{BASE}/{tid}/publish", headers=ADMIN_HEADERS)

    resp = client.post(f"{BASE}/{tid}/versions", headers=ADMIN_HEADERS)
    assert resp.status_code == 201
    v2 = resp.json()
    assert v2["name"] == "Wedding Agreement (v2)"
    assert v2["version"] == 2
    assert v2["parent_id"] == tid
    assert v2["is_published"] is False
    assert v2["body_html"] == WEDDING_BODY
    assert v2["variables_schema"] == wedding_template["variables_schema"]

    v3 = client.post(f"{BASE}/{v2['id']}/versions", headers=ADMIN_HEADERS).json()
    assert v3["name"] == "Wedding Agreement (v3)"


def test_versioning_an_older_template_continues_the_lineage(client, wedding_template):
    tid = wedding_template["id"]
    v2 = client.post(f"{BASE}/{tid}/versions", headers=ADMIN_HEADERS).json()
    again = client.post(f"{BASE}/{tid}/versions", headers=ADMIN_HEADERS)
    assert again.status_code == 201
    assert again.json()["version"] == 3
    assert again.json()["name"] == "Wedding Agreement (v3)"
    assert again.json()["parent_id"] == tid

    from_v2 = client.post(f"{BASE}/{v2['id']}/versions", headers=ADMIN_HEADERS).json()
    assert from_v2["version"] == 4

    names = [t["name"] for t in client.get(BASE, headers=ADMIN_HEADERS).json()]
    assert len(names) == len(set(names)) == 4


def test_version_name_clash_is_rejected(client, wedding_template):
    client.post(BASE, json={"name": "Wedding Agreement (v2)", "body_html": "<p>Hand made</p>"}, headers=ADMIN_HEADERS)
    resp = client.post(f"{BASE}/{wedding_template['id']}/versions", headers=ADMIN_HEADERS)
    assert resp.status_code == 409
    assert resp.json()["reason"] == "invalid_state"


def test_deactivate_hides_template(client, wedding_template):
    tid = wedding_template["id"]
    client.post(f"{BASE}/{tid}/publish", headers=ADMIN_HEADERS)
    resp = client.delete(f"{BASE}/{tid}", headers=ADMIN_HEADERS)
    assert resp.json()["is_active"] is False
    assert resp.json()["is_published"] is False
    assert client.get(BASE, headers=ADMIN_HEADERS).json() == []
    assert len(client.get(BASE, params={"include_inactive": True}, headers=ADMIN_HEADERS).json()) == 1

    assert client.post(f"{BASE}/{tid}/publish", headers=ADMIN_HEADERS).status_code == 409


def test_render_preview_applies_defaults(client, wedding_template):
    resp = client.post(
        f"{BASE}/{wedding_template['id']}/render",
        json={"variables": {"total_amount": 2500.0, "deposit_paid": True}},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["html"].startswith("<h1>Wedding Photography Agreement</h1>")
    assert "Total: 2500" in body["html"]
    assert "deposit is due" not in body["html"]
    assert body["warnings"] == ["Missing required field: Event date"]


def test_render_rejects_disallowed_option(client, wedding_template):
    resp = client.post(
        f"{BASE}/{wedding_template['id']}/render",
        json={"variables": {"event_type": "Birthday"}},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 422
    assert "Event type must be one of" in resp.json()["detail"]


def test_render_rejects_out_of_range(client, wedding_template):
    resp = client.post(
        f"{BASE}/{wedding_template['id']}/render",
        json={"variables": {"total_amount": -5}},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 422
    assert resp.json()["detail"] == "Total must be at least 0"
