import os

import pytest


@pytest.fixture()
def project(make_project):
    return make_project()


@pytest.fixture()
def scenario(make_scenario, project):
    return make_scenario(project)


def _clone(client, project, source, name="Clone"):
    return client.post(
        f"/projects/{project}/scenarios",
        json={"name": name, "roadNetworkSource": "clone", "roadNetworkSourceScenario": source},
    )


def test_create_scenario_by_cloning(client, project, scenario):
    resp = _clone(client, project, scenario)
    assert resp.status_code == 201
    created = resp.json()
    assert created["name"] == "Clone"
    assert created["status"] == "pending"

    resp = client.get(f"/projects/{project}/scenarios/{created['id']}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["gen_analysis"] is None
    assert body["scen_create"]["status"] == "running"
    assert [entry["code"] for entry in body["scen_create"]["logs"]] == ["start"]


def test_create_scenario_errors(client, make_project, project, scenario):
    resp = _clone(client, 99, scenario)
    assert resp.status_code == 404

    pending = make_project("Pending", status="pending")
    resp = _clone(client, pending, scenario)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Project setup not completed"

    resp = _clone(client, project, 99)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Source scenario for cloning not found"

    resp = _clone(client, project, scenario, name="Main scenario")
    assert resp.status_code == 409


def test_create_scenario_validation(client, project):
    resp = client.post(f"/projects/{project}/scenarios", json={"name": "x", "roadNetworkSource": "clone"})
    assert resp.status_code == 422

    resp = client.post(f"/projects/{project}/scenarios", json={"name": "x", "roadNetworkSource": "osm"})
    assert resp.status_code == 422


def test_road_network_upload(client, settings, project):
    resp = client.post(f"/projects/{project}/scenarios", json={"name": "New", "roadNetworkSource": "new"})
    assert resp.status_code == 201
    created = resp.json()
    upload = created["roadNetworkUpload"]

    resp = client.post(upload["uploadUrl"], files={"file": ("roads.osm", b"<osm></osm>")})
    assert resp.status_code == 200
    assert resp.json()["id"] == created["id"]

    path = os.path.join(settings.storage_dir, f"scenario-{created['id']}", upload["fileName"])
    with open(path, "rb") as f:
        assert f.read() == b"<osm></osm>"

    body = client.get(f"/projects/{project}/scenarios/{created['id']}").json()
    codes = [entry["code"] for entry in body["scen_create"]["logs"]]
    assert codes == ["start", "awaiting-upload", "road-network-upload"]

    resp = client.post(upload["uploadUrl"], files={"file": ("roads.osm", b"again")})
    assert resp.status_code == 409


def test_road_network_upload_needs_a_waiting_scenario(client, project, scenario):
    created = _clone(client, project, scenario).json()
    resp = client.post(
        f"/projects/{project}/scenarios/{created['id']}/road-network",
        files={"file": ("roads.osm", b"<osm></osm>")},
    )
    assert resp.status_code == 409

    resp = client.post(
        f"/projects/{project}/scenarios/99/road-network",
        files={"file": ("roads.osm", b"<osm></osm>")},
    )
    assert resp.status_code == 404


def test_duplicate_scenario(client, project, scenario):
    resp = client.post(f"/projects/{project}/scenarios/{scenario}/duplicate")
    assert resp.status_code == 201
    assert resp.json()["name"] == "Main scenario (2)"


def test_generate_twice_conflicts(client, project, scenario):
    resp = client.post(f"/projects/{project}/scenarios/{scenario}/generate")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Result generation started"

    resp = client.post(f"/projects/{project}/scenarios/{scenario}/generate")
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Result generation already running"


def test_dry_run_operation_finished_by_the_job(client, project, scenario):
    op_id = client.post(f"/projects/{project}/scenarios/{scenario}/generate").json()["operationId"]

    resp = client.get(f"/operations/{op_id}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "running"

    resp = client.post(f"/operations/{op_id}/logs", json={"event": "progress", "data": {"step": 1}})
    assert resp.json()["status"] == "running"

    resp = client.post(f"/operations/{op_id}/logs", json={"event": "finish"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "complete"
    assert [entry["code"] for entry in body["logs"]] == ["start", "progress", "finish"]

    body = client.get(f"/projects/{project}/scenarios/{scenario}").json()
    assert body["gen_analysis"]["status"] == "complete"

    resp = client.post(f"/projects/{project}/scenarios/{scenario}/generate")
    assert resp.status_code == 200


def test_operation_endpoints_errors(client, project, scenario):
    assert client.get("/operations/99").status_code == 404

    op_id = client.post(f"/projects/{project}/scenarios/{scenario}/generate").json()["operationId"]
    resp = client.post(f"/operations/{op_id}/logs", json={"event": "start"})
    assert resp.status_code == 409


def test_get_unknown_scenario(client, project):
    assert client.get(f"/projects/{project}/scenarios/99").status_code == 404


def test_upload_after_job_logged_bare_awaiting_entry(client, project, scenario):
    created = _clone(client, project, scenario).json()
    op_id = client.get(f"/projects/{project}/scenarios/{created['id']}").json()["scen_create"]["id"]
    client.post(f"/operations/{op_id}/logs", json={"event": "awaiting-upload"})

    resp = client.post(
        f"/projects/{project}/scenarios/{created['id']}/road-network",
        files={"file": ("roads.osm", b"<osm></osm>")},
    )
    assert resp.status_code == 409
