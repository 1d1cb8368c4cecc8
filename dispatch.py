"""
Dispatch engine: waste request lifecycle and bin tasks.

Request:  pending --approve--> confirmed --> in-progress --> completed
          pending --reject--> (deleted)
          confirmed | in-progress --> cancelled

Bin:      Pending --assign--> Assigned --outcome--> Collected | Skipped

Approval is the only place a bin is minted from a request, and it happens in
the same atomic unit that moves the request out of ``pending``, so every
approved request has exactly one bin.
"""
import logging
from typing import Any, Dict, Optional

from errors import Conflict, ValidationFailed
from schemas import city_from_address
from store import utcnow, validate_document

logger = logging.getLogger(__name__)

OUTCOMES = ("Collected", "Skipped")

# moves allowed through the admin status endpoint; pending -> confirmed is approve()
REQUEST_TRANSITIONS = {
    "confirmed": ("in-progress", "cancelled"),
    "in-progress": ("completed", "cancelled"),
}

READ_ONLY_BIN_FIELDS = ("status", "assigned_to", "request_id", "assigned_at", "collected_at", "skipped_at")


def bin_type_for(category: Optional[str]) -> str:
    return "recycling" if category == "Recyclable" else "household"


def compute_total_price(type_price, delivery_fee):
    return type_price + delivery_fee


def append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    if not existing:
        return note
    return f"{existing}\n{note}"


class DispatchEngine:
    def __init__(self, store, performance) -> None:
        self.store = store
        self.performance = performance

    # ------------------------
    # Requests
    # ------------------------
    def submit_request(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        data.update({"status": "pending", "completed_date": None, "rating": None, "feedback": None})
        try:
            data["total_price"] = compute_total_price(data["type_price"], data["delivery_fee"])
        except (KeyError, TypeError):
            data.pop("total_price", None)
        request = self.store.create("wasterequest", data)
        logger.info("Waste request %s submitted (%s, total %.2f)",
                    request["_id"], request["category"], request["total_price"])
        return request

    def update_request(self, request_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Requester-side edits: notes at any time, rating/feedback once completed."""
        with self.store.atomic():
            request = self.store.get_by_id("wasterequest", request_id)
            if ("rating" in patch or "feedback" in patch) and request.get("status") != "completed":
                raise Conflict("Rating and feedback are accepted only for completed requests")
            request = self.store.update("wasterequest", request_id, patch)
            if "rating" in patch:
                origin = self.store.find_one("bin", {"request_id": str(request["_id"])})
                if origin and origin.get("assigned_to") and self.store.find_by_ids("collector", [origin["assigned_to"]]):
                    self.performance.refresh(origin["assigned_to"])
        return request

    def set_request_status(self, request_id: str, status: str, notes: Optional[str] = None) -> Dict[str, Any]:
        with self.store.atomic():
            request = self.store.get_by_id("wasterequest", request_id)
            current = request.get("status")
            if status not in REQUEST_TRANSITIONS.get(current, ()):
                logger.warning("Request %s: refused status change %s -> %s", request_id, current, status)
                raise Conflict(f"Cannot move request from {current} to {status}")
            changes: Dict[str, Any] = {"status": status}
            if status == "completed":
                changes["completed_date"] = utcnow()
            if notes:
                changes["notes"] = append_note(request.get("notes"), notes)
            validate_document("wasterequest", dict(request, **changes))
            updated = self.store.transition("wasterequest", request_id, {"status": current}, changes)
            if updated is None:
                raise Conflict("Request status changed concurrently")
        logger.info("Request %s moved %s -> %s", request_id, current, status)
        return updated

    def approve(self, request_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """Confirm a pending request and mint its bin."""
        with self.store.atomic():
            request = self.store.get_by_id("wasterequest", request_id)
            if request.get("status") != "pending":
                logger.warning("Approve refused: request %s is %s", request_id, request.get("status"))
                raise Conflict("Only pending requests can be approved")

            changes: Dict[str, Any] = {"status": "confirmed"}
            if notes:
                changes["notes"] = append_note(request.get("notes"), notes)
            validate_document("wasterequest", dict(request, **changes))
            bin_data = self._bin_from_request(request)
            validate_document("bin", bin_data)

            request = self.store.transition("wasterequest", request_id, {"status": "pending"}, changes)
            if request is None:
                raise Conflict("Only pending requests can be approved")
            bin_doc = self.store.create("bin", bin_data)

        logger.info("Request %s approved; bin %s created in %s", request_id, bin_doc["_id"], bin_doc["city"])
        return {"request": request, "bin": bin_doc}

    def _bin_from_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        request_id = str(request["_id"])
        data: Dict[str, Any] = {
            "location": request["address"],
            "city": city_from_address(request.get("address")),
            "bin_type": bin_type_for(request.get("category")),
            "status": "Pending",
            "assigned_to": None,
            "request_id": request_id,
            "reported_by": request.get("user_id"),
            "reported_at": utcnow(),
            "notes": f"Created from waste request {request_id}",
        }
        coordinates = request.get("coordinates") or {}
        if coordinates.get("latitude") is not None and coordinates.get("longitude") is not None:
            data["coordinates"] = {"latitude": coordinates["latitude"], "longitude": coordinates["longitude"]}
        return data

    def reject(self, request_id: str) -> str:
        """Delete a pending request for good. Approved work is cancelled through the status endpoint instead."""
        with self.store.atomic():
            request = self.store.get_by_id("wasterequest", request_id)
            if request.get("status") != "pending":
                logger.warning("Reject refused: request %s is %s", request_id, request.get("status"))
                raise Conflict("Only pending requests can be rejected")
            request = self.store.delete("wasterequest", request_id, expected={"status": "pending"})
        logger.info("Request %s rejected and deleted", request_id)
        return str(request["_id"])

    # ------------------------
    # Bins
    # ------------------------
    def create_bin(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        data.update({"status": "Pending", "assigned_to": None, "request_id": None, "reported_at": utcnow()})
        bin_doc = self.store.create("bin", data)
        logger.info("Bin %s reported at %s, %s", bin_doc["_id"], bin_doc["location"], bin_doc["city"])
        return bin_doc

    def update_bin(self, bin_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        patch = {k: v for k, v in patch.items() if k not in READ_ONLY_BIN_FIELDS}
        return self.store.update("bin", bin_id, patch)

    def assign_collector(self, bin_id: str, collector_id: str) -> Dict[str, Any]:
        with self.store.atomic():
            bin_doc = self.store.get_by_id("bin", bin_id)
            collector = self.store.get_by_id("collector", collector_id)
            cid, bid = str(collector["_id"]), str(bin_doc["_id"])
            if bin_doc.get("status") != "Pending":
                logger.warning("Assign refused: bin %s is %s", bid, bin_doc.get("status"))
                raise Conflict(f"Bin is {bin_doc.get('status')}; only Pending bins can be assigned")
            if not collector.get("truck"):
                raise Conflict("Collector has no truck assigned")

            bin_doc = self.store.transition(
                "bin", bid, {"status": "Pending"},
                {"status": "Assigned", "assigned_to": cid, "assigned_at": utcnow()},
            )
            if bin_doc is None:
                raise Conflict("Bin was assigned concurrently")
            self.store.transition("collector", cid, {}, {}, extra={"$addToSet": {"assigned_bins": bid}})

        logger.info("Bin %s assigned to collector %s", bid, cid)
        return bin_doc

    def report_outcome(self, bin_id: str, outcome: str, collector_id: Optional[str] = None) -> Dict[str, Any]:
        if outcome not in OUTCOMES:
            raise ValidationFailed.single("outcome", "Outcome must be Collected or Skipped")
        with self.store.atomic():
            bin_doc = self.store.get_by_id("bin", bin_id)
            bid = str(bin_doc["_id"])
            if bin_doc.get("status") != "Assigned":
                logger.warning("Outcome refused: bin %s is %s", bid, bin_doc.get("status"))
                raise Conflict(f"Bin is {bin_doc.get('status')}; only Assigned bins accept an outcome")
            if collector_id and bin_doc.get("assigned_to") != collector_id:
                raise Conflict("Bin is assigned to a different collector")

            changes: Dict[str, Any] = {"status": outcome}
            changes["collected_at" if outcome == "Collected" else "skipped_at"] = utcnow()
            bin_doc = self.store.transition("bin", bid, {"status": "Assigned"}, changes)
            if bin_doc is None:
                raise Conflict("Bin outcome was reported concurrently")
            owner = bin_doc.get("assigned_to")
            if owner and self.store.find_by_ids("collector", [owner]):
                self.performance.refresh(owner)

        logger.info("Bin %s marked %s", bid, outcome)
        return bin_doc

    def delete_bin(self, bin_id: str) -> str:
        with self.store.atomic():
            bin_doc = self.store.delete("bin", bin_id)
            bid, owner = str(bin_doc["_id"]), bin_doc.get("assigned_to")
            if owner and self.store.find_by_ids("collector", [owner]):
                self.store.transition("collector", owner, {}, {}, extra={"$pull": {"assigned_bins": bid}})
                self.performance.refresh(owner)
        logger.info("Bin %s deleted", bid)
        return bid
