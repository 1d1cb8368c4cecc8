"""
HTTP contract tests: status codes and response shapes.

Run with: pytest tests/test_api.py -v
"""
import mongomock
from bson import ObjectId
from fastapi.testclient import TestClient

from conftest import bin_payload, collector_payload, request_payload, truck_payload
from main import create_app


def _create_truck(client, **overrides):
    response = client.post("/trucks", json=truck_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


def _create_collector(client, **overrides):
    truck = _create_truck(client)
    response = client.post("/collectors", json=collector_payload(truck_id=truck["id"], **overrides))
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    assert client.get("/").status_code == 200
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["connection_status"] == "Connected"


def test_request_id_is_echoed(client):
    response = client.get("/", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/").headers["X-Request-ID"]


class TestRequests:
    def test_submit_returns_201_with_total(self, client):
        response = client.post("/requests", json=request_payload())
        assert response.status_code == 201
        body = response.json()
        assert body["total_price"] == 250
        assert body["status"] == "pending"
        assert ObjectId.is_valid(body["id"])

    def test_submit_validation_is_400_with_every_field(self, client):
        response = client.post("/requests", json=request_payload(email="nope", delivery_fee=-3, description=""))
        assert response.status_code == 400
        body = response.json()
        assert body["detail"] == "Validation failed"
        fields = {e["field"] for e in body["errors"]}
        assert {"email", "delivery_fee", "description"} <= fields

    def test_approve_returns_request_and_bin(self, client):
        rid = client.post("/requests", json=request_payload()).json()["id"]
        response = client.put(f"/requests/{rid}/approve", json={"notes": "ok"})
        assert response.status_code == 200
        body = response.json()
        assert body["request"]["status"] == "confirmed"
        assert body["bin"] == {**body["bin"], "city": "Galle", "bin_type": "recycling", "status": "Pending",
                               "request_id": rid}

    def test_approve_without_body(self, client):
        rid = client.post("/requests", json=request_payload()).json()["id"]
        assert client.put(f"/requests/{rid}/approve").status_code == 200

    def test_approve_missing_is_404(self, client):
        assert client.put(f"/requests/{ObjectId()}/approve").status_code == 404
        assert client.put("/requests/garbage/approve").status_code == 404

    def test_approve_twice_is_409(self, client):
        rid = client.post("/requests", json=request_payload()).json()["id"]
        client.put(f"/requests/{rid}/approve")
        assert client.put(f"/requests/{rid}/approve").status_code == 409

    def test_reject_deletes(self, client):
        rid = client.post("/requests", json=request_payload()).json()["id"]
        response = client.put(f"/requests/{rid}/reject")
        assert response.status_code == 200
        assert response.json() == {"deleted_request_id": rid}
        assert client.get(f"/requests/{rid}").status_code == 404
        assert client.put(f"/requests/{rid}/reject").status_code == 404

    def test_reject_after_approval_is_409(self, client):
        rid = client.post("/requests", json=request_payload()).json()["id"]
        bin_id = client.put(f"/requests/{rid}/approve").json()["bin"]["id"]
        assert client.put(f"/requests/{rid}/reject").status_code == 409
        assert client.get(f"/requests/{rid}").json()["status"] == "confirmed"
        assert client.get(f"/bins/{bin_id}").json()["request_id"] == rid

    def test_submit_with_overlong_city_is_400(self, client):
        response = client.post("/requests", json=request_payload(address="1 Road, " + "X" * 150))
        assert response.status_code == 400
        assert [e["field"] for e in response.json()["errors"]] == ["address"]

    def test_list_filters_by_status(self, client):
        first = client.post("/requests", json=request_payload()).json()["id"]
        client.post("/requests", json=request_payload())
        client.put(f"/requests/{first}/approve")
        body = client.get("/requests", params={"status": "confirmed"}).json()
        assert [r["id"] for r in body["items"]] == [first]
        assert body["pagination"]["total"] == 1

    def test_list_rejects_bad_query(self, client):
        assert client.get("/requests", params={"status": "lost"}).status_code == 400
        assert client.get("/requests", params={"limit": 500}).status_code == 400

    def test_status_and_feedback_flow(self, client):
        rid = client.post("/requests", json=request_payload()).json()["id"]
        assert client.patch(f"/requests/{rid}", json={"rating": 5}).status_code == 409
        client.put(f"/requests/{rid}/approve")
        assert client.put(f"/requests/{rid}/status", json={"status": "in-progress"}).status_code == 200
        assert client.put(f"/requests/{rid}/status", json={"status": "completed"}).status_code == 200
        response = client.patch(f"/requests/{rid}", json={"rating": 5, "feedback": "Great"})
        assert response.status_code == 200
        assert response.json()["rating"] == 5


class TestBins:
    def test_assign_and_outcome(self, client):
        collector = _create_collector(client)
        bin_id = client.post("/bins", json=bin_payload()).json()["id"]

        response = client.put(f"/bins/{bin_id}/assign", json={"collector_id": collector["id"]})
        assert response.status_code == 200
        assert response.json()["status"] == "Assigned"

        response = client.put(f"/bins/{bin_id}/outcome", json={"outcome": "Collected"})
        assert response.status_code == 200
        assert response.json()["status"] == "Collected"

        perf = client.get(f"/collectors/{collector['id']}/performance").json()
        assert perf["total_collections"] == 1
        assert perf["success_rate"] == 100
        stored = client.get(f"/collectors/{collector['id']}").json()
        assert stored["performance"]["total_collections"] == 1

    def test_assign_conflicts_and_missing(self, client):
        collector = _create_collector(client)
        bin_id = client.post("/bins", json=bin_payload()).json()["id"]
        client.put(f"/bins/{bin_id}/assign", json={"collector_id": collector["id"]})

        assert client.put(f"/bins/{bin_id}/assign", json={"collector_id": collector["id"]}).status_code == 409
        assert client.put(f"/bins/{ObjectId()}/assign", json={"collector_id": collector["id"]}).status_code == 404
        other_bin = client.post("/bins", json=bin_payload()).json()["id"]
        assert client.put(f"/bins/{other_bin}/assign", json={"collector_id": str(ObjectId())}).status_code == 404

    def test_outcome_on_pending_is_409(self, client):
        bin_id = client.post("/bins", json=bin_payload()).json()["id"]
        assert client.put(f"/bins/{bin_id}/outcome", json={"outcome": "Skipped"}).status_code == 409

    def test_outcome_must_be_terminal_status(self, client):
        bin_id = client.post("/bins", json=bin_payload()).json()["id"]
        assert client.put(f"/bins/{bin_id}/outcome", json={"outcome": "Pending"}).status_code == 400

    def test_created_bin_ignores_client_status(self, client):
        body = client.post("/bins", json=bin_payload(status="Collected", assigned_to=str(ObjectId()))).json()
        assert body["status"] == "Pending"
        assert body["assigned_to"] is None

    def test_list_search_and_summary(self, client):
        client.post("/bins", json=bin_payload(location="Near the old market", city="Galle"))
        client.post("/bins", json=bin_payload(location="Lake Road", city="Kandy"))
        found = client.get("/bins", params={"search": "market"}).json()
        assert [b["city"] for b in found["items"]] == ["Galle"]
        summary = client.get("/bins/summary").json()
        assert summary["total_bins"] == 2

    def test_patch_and_delete(self, client):
        bin_id = client.post("/bins", json=bin_payload()).json()["id"]
        response = client.patch(f"/bins/{bin_id}", json={"priority": "urgent"})
        assert response.status_code == 200
        assert response.json()["priority"] == "urgent"
        assert response.json()["city"] == "Matara"
        assert client.delete(f"/bins/{bin_id}").json() == {"deleted_bin_id": bin_id}
        assert client.get(f"/bins/{bin_id}").status_code == 404


class TestCollectorsAndTrucks:
    def test_register_without_trucks_is_400(self, client):
        response = client.post("/collectors", json=collector_payload())
        assert response.status_code == 400
        assert response.json()["errors"] == [
            {"field": "truck_id", "message": "No available trucks. Please add a truck first."}
        ]

    def test_register_binds_truck(self, client):
        collector = _create_collector(client)
        truck = client.get(f"/trucks/{collector['truck']}").json()
        assert truck["assigned_to"] == collector["id"]
        assert client.get("/trucks/available").json()["items"] == []

    def test_bind_conflict_and_unbind(self, client):
        a = _create_collector(client)
        b = _create_collector(client)
        response = client.put(f"/collectors/{b['id']}/truck", json={"truck_id": a["truck"]})
        assert response.status_code == 409

        response = client.delete(f"/collectors/{a['id']}/truck")
        assert response.status_code == 200
        assert response.json()["collector"]["truck"] is None

        client.delete(f"/collectors/{b['id']}/truck")
        response = client.put(f"/collectors/{b['id']}/truck", json={"truck_id": a["truck"]})
        assert response.status_code == 200
        assert response.json()["truck"]["assigned_to"] == b["id"]

    def test_duplicate_plate_is_409(self, client):
        _create_truck(client, plate_number="CAB-1234")
        assert client.post("/trucks", json=truck_payload(plate_number="cab-1234")).status_code == 409

    def test_truck_patch_cannot_touch_pairing(self, client):
        collector = _create_collector(client)
        response = client.patch(f"/trucks/{collector['truck']}", json={"assigned_to": None, "mileage": 99})
        assert response.status_code == 200
        assert response.json()["assigned_to"] == collector["id"]
        assert response.json()["mileage"] == 99

    def test_location_and_bins(self, client):
        collector = _create_collector(client)
        response = client.put(f"/collectors/{collector['id']}/location", json={"current_location": "Unawatuna"})
        assert response.status_code == 200
        assert client.get(f"/trucks/{collector['truck']}").json()["current_location"] == "Unawatuna"

        bin_id = client.post("/bins", json=bin_payload()).json()["id"]
        client.put(f"/bins/{bin_id}/assign", json={"collector_id": collector["id"]})
        bins = client.get(f"/collectors/{collector['id']}/bins").json()
        assert [b["id"] for b in bins["items"]] == [bin_id]

    def test_delete_collector_with_open_bin_is_409(self, client):
        collector = _create_collector(client)
        bin_id = client.post("/bins", json=bin_payload()).json()["id"]
        client.put(f"/bins/{bin_id}/assign", json={"collector_id": collector["id"]})
        assert client.delete(f"/collectors/{collector['id']}").status_code == 409
        client.put(f"/bins/{bin_id}/outcome", json={"outcome": "Collected"})
        assert client.delete(f"/collectors/{collector['id']}").status_code == 200
        assert client.get(f"/trucks/{collector['truck']}").json()["assigned_to"] is None

    def test_summaries(self, client):
        _create_collector(client, city="Galle")
        assert client.get("/collectors/summary").json()["total_collectors"] == 1
        assert client.get("/trucks/summary").json()["paired"] == 1

    def test_performance_missing_collector_is_404(self, client):
        assert client.get(f"/collectors/{ObjectId()}/performance").status_code == 404


def test_indexes_are_created_at_startup_not_on_build():
    database = mongomock.MongoClient()["swm_startup"]
    app = create_app(database=database, use_transactions=False)
    assert "plate_number_1" not in database["truck"].index_information()
    with TestClient(app):
        assert database["truck"].index_information()["plate_number_1"]["unique"] is True
