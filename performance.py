"""
Collector performance and fleet summaries.

The Bin documents referenced from a collector's ``assigned_bins`` are the
source of truth. ``collector.performance`` is a cached projection of them,
rewritten by ``refresh()`` inside the same atomic unit as every change that
can move it (outcome reports, bin deletion, request ratings).
"""
import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def success_rate(collected: int, skipped: int) -> int:
    """Collected share of finished bins, in whole percent (half rounds up)."""
    finished = collected + skipped
    if finished == 0:
        return 0
    return int(math.floor(collected * 100 / finished + 0.5))


def _distribution(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    return {str(row["_id"]): row["count"] for row in rows if row.get("_id") is not None}


def _city_match(city: Optional[str]) -> Dict[str, Any]:
    if not city:
        return {}
    return {"city": {"$regex": re.escape(city), "$options": "i"}}


class PerformanceAggregator:
    def __init__(self, store) -> None:
        self.store = store

    def _bins(self, collector: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self.store.find_by_ids("bin", collector.get("assigned_bins") or [])

    def _average_rating(self, bins: List[Dict[str, Any]]) -> float:
        request_ids = [b["request_id"] for b in bins if b.get("request_id")]
        ratings = [
            r["rating"] for r in self.store.find_by_ids("wasterequest", request_ids)
            if r.get("rating") is not None
        ]
        if not ratings:
            return 0
        return round(sum(ratings) / len(ratings), 2)

    def project(self, collector: Dict[str, Any]) -> Dict[str, Any]:
        bins = self._bins(collector)
        collected = sum(1 for b in bins if b.get("status") == "Collected")
        skipped = sum(1 for b in bins if b.get("status") == "Skipped")
        return {
            "total_assigned": len(bins),
            "open_assignments": sum(1 for b in bins if b.get("status") == "Assigned"),
            "total_collections": collected,
            "total_skipped": skipped,
            "success_rate": success_rate(collected, skipped),
            "average_rating": self._average_rating(bins),
        }

    def summarize(self, collector_id: str) -> Dict[str, Any]:
        with self.store.atomic():
            collector = self.store.get_by_id("collector", collector_id)
            summary = self.project(collector)
        summary.update({"collector_id": str(collector["_id"]), "name": collector.get("name")})
        return summary

    def refresh(self, collector_id: str) -> Optional[Dict[str, Any]]:
        """Rewrite the cached counters on the collector from its bins."""
        with self.store.atomic():
            collector = self.store.get_by_id("collector", collector_id)
            projection = self.project(collector)
            performance = {
                "total_collections": projection["total_collections"],
                "total_skipped": projection["total_skipped"],
                "average_rating": projection["average_rating"],
            }
            updated = self.store.transition("collector", collector_id, {}, {"performance": performance})
        logger.debug("Performance refreshed for collector %s: %s", collector_id, performance)
        return updated

    # ------------------------
    # Fleet summaries
    # ------------------------
    def bin_summary(self, city: Optional[str] = None, date_from: Optional[datetime] = None,
                    date_to: Optional[datetime] = None) -> Dict[str, Any]:
        filters = _city_match(city)
        if date_from or date_to:
            filters["reported_at"] = {}
            if date_from:
                filters["reported_at"]["$gte"] = date_from
            if date_to:
                filters["reported_at"]["$lte"] = date_to
        by_status = self.store.aggregate("bin", [
            {"$match": filters},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ])
        by_city = self.store.aggregate("bin", [
            {"$match": filters},
            {"$group": {"_id": "$city", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$limit": 10},
        ])
        by_priority = self.store.aggregate("bin", [
            {"$match": filters},
            {"$group": {"_id": "$priority", "count": {"$sum": 1}}},
        ])
        return {
            "total_bins": self.store.count("bin", filters),
            "status_distribution": _distribution(by_status),
            "city_distribution": [{"city": row["_id"], "count": row["count"]} for row in by_city],
            "priority_distribution": _distribution(by_priority),
        }

    def collector_summary(self, city: Optional[str] = None) -> Dict[str, Any]:
        filters = _city_match(city)
        by_status = self.store.aggregate("collector", [
            {"$match": filters},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ])
        by_city = self.store.aggregate("collector", [
            {"$match": filters},
            {"$group": {"_id": "$city", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$limit": 10},
        ])
        totals = self.store.aggregate("collector", [
            {"$match": filters},
            {"$group": {
                "_id": None,
                "total_collections": {"$sum": "$performance.total_collections"},
                "total_skipped": {"$sum": "$performance.total_skipped"},
                "average_rating": {"$avg": "$performance.average_rating"},
            }},
        ])
        performance = {"total_collections": 0, "total_skipped": 0, "average_rating": 0}
        if totals:
            performance = {k: totals[0].get(k) or 0 for k in performance}
        performance["success_rate"] = success_rate(performance["total_collections"], performance["total_skipped"])
        return {
            "total_collectors": self.store.count("collector", filters),
            "status_distribution": _distribution(by_status),
            "city_distribution": [{"city": row["_id"], "count": row["count"]} for row in by_city],
            "performance": performance,
        }

    def truck_summary(self, status: Optional[str] = None) -> Dict[str, Any]:
        filters: Dict[str, Any] = {"status": status} if status else {}
        by_status = self.store.aggregate("truck", [
            {"$match": filters},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ])
        by_fuel = self.store.aggregate("truck", [
            {"$match": filters},
            {"$group": {"_id": "$fuel_type", "count": {"$sum": 1}}},
        ])
        total = self.store.count("truck", filters)
        paired = self.store.count("truck", dict(filters, assigned_to={"$ne": None}))
        return {
            "total_trucks": total,
            "paired": paired,
            "available": total - paired,
            "status_distribution": _distribution(by_status),
            "fuel_type_distribution": _distribution(by_fuel),
        }
