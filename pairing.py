"""
Collector <-> Truck pairing.

A truck's ``assigned_to`` and its collector's ``truck`` always point at each
other or are both null, and a truck is held by at most one collector. Every
write that can touch either side of a pair goes through this module, inside a
single ``store.atomic()`` unit, with compare-and-set guards on the truck
document so that two racing binds cannot both claim it.
"""
import logging
from typing import Any, Dict, List, Optional

from errors import Conflict, ValidationFailed
from store import utcnow, validate_document

logger = logging.getLogger(__name__)


class PairingManager:
    def __init__(self, store) -> None:
        self.store = store

    def available_trucks(self) -> List[Dict[str, Any]]:
        """Trucks nobody holds. ``status`` does not gate pairing."""
        trucks = self.store.find("truck", {"assigned_to": None})
        return sorted(trucks, key=lambda t: t.get("plate_number", ""))

    def bind(self, collector_id: str, truck_id: str) -> Dict[str, Any]:
        """Pair a collector with a truck. Re-binding an existing pair is a no-op."""
        with self.store.atomic():
            collector = self.store.get_by_id("collector", collector_id)
            truck = self.store.get_by_id("truck", truck_id)
            cid, tid = str(collector["_id"]), str(truck["_id"])

            if truck.get("assigned_to") not in (None, cid):
                logger.warning("Bind refused: truck %s is held by collector %s", tid, truck["assigned_to"])
                raise Conflict("Truck already assigned to another collector")
            if collector.get("truck") not in (None, tid):
                logger.warning("Bind refused: collector %s already holds truck %s", cid, collector["truck"])
                raise Conflict("Collector is already assigned to another truck")
            if truck.get("assigned_to") == cid and collector.get("truck") == tid:
                return {"collector": collector, "truck": truck}

            truck = self.store.transition("truck", tid, {"assigned_to": {"$in": [None, cid]}}, {"assigned_to": cid})
            if truck is None:
                raise Conflict("Truck already assigned to another collector")
            collector = self.store.transition("collector", cid, {"truck": {"$in": [None, tid]}}, {"truck": tid})
            if collector is None:
                # without a server transaction the truck claim has to be handed back
                self.store.transition("truck", tid, {"assigned_to": cid}, {"assigned_to": None})
                raise Conflict("Collector is already assigned to another truck")

        logger.info("Collector %s bound to truck %s", cid, tid)
        return {"collector": collector, "truck": truck}

    def unbind(self, collector_id: str) -> Dict[str, Any]:
        """Clear both sides of the collector's pairing. Unbound collectors are left as they are."""
        with self.store.atomic():
            collector = self.store.get_by_id("collector", collector_id)
            cid, tid = str(collector["_id"]), collector.get("truck")
            if not tid:
                return {"collector": collector, "truck": None}

            truck = self.store.transition("truck", tid, {"assigned_to": cid}, {"assigned_to": None})
            collector = self.store.transition("collector", cid, {"truck": tid}, {"truck": None})

        logger.info("Collector %s released truck %s", cid, tid)
        return {"collector": collector, "truck": truck}

    # ------------------------
    # Collector lifecycle
    # ------------------------
    def register_collector(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a collector already paired with a free truck."""
        data = dict(data)
        truck_id = data.pop("truck_id", None)
        data.update({"truck": None, "assigned_bins": []})
        data.pop("performance", None)

        with self.store.atomic():
            errors = []
            try:
                validate_document("collector", data)
            except ValidationFailed as exc:
                errors.extend(exc.errors)
            if not truck_id:
                if self.available_trucks():
                    errors.append({"field": "truck_id", "message": "truck_id is required"})
                else:
                    errors.append({"field": "truck_id", "message": "No available trucks. Please add a truck first."})
            if errors:
                raise ValidationFailed(errors)

            truck = self.store.get_by_id("truck", truck_id)
            if truck.get("assigned_to"):
                raise Conflict("Truck already assigned to another collector")

            collector = self.store.create("collector", data)
            try:
                pair = self.bind(str(collector["_id"]), str(truck["_id"]))
            except Conflict:
                self.store.delete("collector", str(collector["_id"]))
                raise

        logger.info("Collector %s registered with truck %s", collector["_id"], truck["_id"])
        return pair["collector"]

    def remove_collector(self, collector_id: str) -> str:
        with self.store.atomic():
            collector = self.store.get_by_id("collector", collector_id)
            cid = str(collector["_id"])
            open_bins = self.store.count("bin", {"assigned_to": cid, "status": "Assigned"})
            if open_bins:
                raise Conflict(f"Collector still has {open_bins} assigned bin(s)")
            self.unbind(cid)
            self.store.delete("collector", cid)
        logger.info("Collector %s removed", cid)
        return cid

    def update_location(self, collector_id: str, current_location: str,
                        coordinates: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Record the collector's position and mirror it onto the paired truck."""
        changes: Dict[str, Any] = {"current_location": current_location, "last_location_update": utcnow()}
        if coordinates is not None:
            changes["coordinates"] = coordinates
        with self.store.atomic():
            collector = self.store.update("collector", collector_id, changes)
            tid = collector.get("truck")
            if tid and self.store.find_by_ids("truck", [tid]):
                self.store.update("truck", tid, changes)
        return collector

    # ------------------------
    # Truck records
    # ------------------------
    def create_truck(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data, assigned_to=None)
        truck = self.store.create("truck", data)
        logger.info("Truck %s (%s) registered", truck["_id"], truck["plate_number"])
        return truck

    def update_truck(self, truck_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        patch = {k: v for k, v in patch.items() if k != "assigned_to"}
        if "current_location" in patch or "coordinates" in patch:
            patch["last_location_update"] = utcnow()
        return self.store.update("truck", truck_id, patch)

    def remove_truck(self, truck_id: str) -> str:
        with self.store.atomic():
            truck = self.store.get_by_id("truck", truck_id)
            tid, holder_id = str(truck["_id"]), truck.get("assigned_to")
            if holder_id:
                holder = self.store.find_by_ids("collector", [holder_id])
                if holder and holder[0].get("truck") == tid:
                    self.unbind(holder_id)
            self.store.delete("truck", tid)
        logger.info("Truck %s removed", tid)
        return tid
