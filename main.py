import logging
import os
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import ensure_indexes, get_database, transactions_enabled
from dispatch import DispatchEngine
from errors import DispatchError, Internal, ValidationFailed
from logging_config import log_request, set_request_id, setup_logging
from pairing import PairingManager
from performance import PerformanceAggregator
from schemas import (
    ApproveRequestBody,
    AssignCollectorBody,
    BinCreate,
    BinPriority,
    BinStatus,
    BinType,
    BinUpdate,
    BindTruckBody,
    CollectorCreate,
    CollectorStatus,
    CollectorUpdate,
    LocationUpdate,
    OutcomeBody,
    RequestStatus,
    RequestStatusUpdate,
    TruckCreate,
    TruckStatus,
    TruckUpdate,
    WasteCategory,
    WasteRequestCreate,
    WasteRequestUpdate,
)
from store import EntityStore, serialize_doc

logger = logging.getLogger("swm-dispatch")

SortOrder = Literal["asc", "desc"]


# ------------------------
# Helpers
# ------------------------
def serialize_page(page: Dict[str, Any]) -> Dict[str, Any]:
    return {"items": [serialize_doc(d) for d in page["items"]], "pagination": page["pagination"]}


def icontains(value: str) -> Dict[str, str]:
    return {"$regex": re.escape(value), "$options": "i"}


def get_store(request: Request) -> EntityStore:
    return request.app.state.store


def get_pairing(request: Request) -> PairingManager:
    return request.app.state.pairing


def get_dispatch(request: Request) -> DispatchEngine:
    return request.app.state.dispatch


def get_performance(request: Request) -> PerformanceAggregator:
    return request.app.state.performance


def create_app(database=None, use_transactions: Optional[bool] = None) -> FastAPI:
    """Build the API around an explicit database handle.

    With no handle the app still starts; data routes answer 500 until
    DATABASE_URL / DATABASE_NAME are configured. Indexes are created at
    startup, not on import.
    """
    if database is None:
        database = get_database()
    if use_transactions is None:
        use_transactions = transactions_enabled()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if database is not None:
            ensure_indexes(database)
            logger.info("Indexes ensured on %s", database.name)
        yield

    app = FastAPI(title="Waste Collection Dispatch API", lifespan=lifespan)

    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = EntityStore(database, use_transactions=use_transactions)
    performance = PerformanceAggregator(store)
    app.state.db = database
    app.state.store = store
    app.state.pairing = PairingManager(store)
    app.state.performance = performance
    app.state.dispatch = DispatchEngine(store, performance)

    # ------------------------
    # Errors and request context
    # ------------------------
    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        if isinstance(exc, Internal):
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message,
                         exc_info=exc.cause)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        failed = ValidationFailed.from_pydantic(exc)
        return JSONResponse(status_code=failed.status_code, content=failed.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        start = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        log_request(logger, request.method, request.url.path, response.status_code,
                    (time.perf_counter() - start) * 1000)
        return response

    # ------------------------
    # Health
    # ------------------------
    @app.get("/")
    def read_root():
        return {"message": "Waste Collection Dispatch API is running"}

    @app.get("/test")
    def test_database(request: Request):
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_url": None,
            "database_name": None,
            "connection_status": "Not Connected",
            "collections": []
        }
        db = request.app.state.db
        try:
            if db is not None:
                response["database"] = "✅ Available"
                response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
                response["database_name"] = db.name
                response["connection_status"] = "Connected"
                try:
                    collections = db.list_collection_names()
                    response["collections"] = collections[:10]
                    response["database"] = "✅ Connected & Working"
                except Exception as e:
                    response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
            else:
                response["database"] = "⚠️ Available but not initialized"
        except Exception as e:
            response["database"] = f"❌ Error: {str(e)[:50]}"
        return response

    # ------------------------
    # Waste requests
    # ------------------------
    @app.post("/requests", status_code=201)
    def submit_request(payload: WasteRequestCreate, dispatch: DispatchEngine = Depends(get_dispatch)):
        return serialize_doc(dispatch.submit_request(payload.model_dump()))

    @app.get("/requests")
    def list_requests(
        status: Optional[RequestStatus] = None,
        category: Optional[WasteCategory] = None,
        user_id: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        sort_by: str = "created_at",
        sort_order: SortOrder = "desc",
        store: EntityStore = Depends(get_store),
    ):
        filt: Dict[str, Any] = {}
        if status:
            filt["status"] = status
        if category:
            filt["category"] = category
        if user_id:
            filt["user_id"] = user_id
        return serialize_page(store.list("wasterequest", filt, page, limit, sort_by, sort_order))

    @app.get("/requests/{request_id}")
    def get_request(request_id: str, store: EntityStore = Depends(get_store)):
        return serialize_doc(store.get_by_id("wasterequest", request_id))

    @app.patch("/requests/{request_id}")
    def update_request(request_id: str, payload: WasteRequestUpdate, dispatch: DispatchEngine = Depends(get_dispatch)):
        return serialize_doc(dispatch.update_request(request_id, payload.model_dump(exclude_unset=True)))

    @app.put("/requests/{request_id}/status")
    def set_request_status(request_id: str, body: RequestStatusUpdate, dispatch: DispatchEngine = Depends(get_dispatch)):
        return serialize_doc(dispatch.set_request_status(request_id, body.status, body.notes))

    @app.put("/requests/{request_id}/approve")
    def approve_request(request_id: str, body: Optional[ApproveRequestBody] = None,
                        dispatch: DispatchEngine = Depends(get_dispatch)):
        result = dispatch.approve(request_id, body.notes if body else None)
        return {"request": serialize_doc(result["request"]), "bin": serialize_doc(result["bin"])}

    @app.put("/requests/{request_id}/reject")
    def reject_request(request_id: str, dispatch: DispatchEngine = Depends(get_dispatch)):
        return {"deleted_request_id": dispatch.reject(request_id)}

    # ------------------------
    # Bins
    # ------------------------
    @app.post("/bins", status_code=201)
    def create_bin(payload: BinCreate, dispatch: DispatchEngine = Depends(get_dispatch)):
        return serialize_doc(dispatch.create_bin(payload.model_dump()))

    @app.get("/bins")
    def list_bins(
        city: Optional[str] = Query(None, max_length=100),
        status: Optional[BinStatus] = None,
        priority: Optional[BinPriority] = None,
        bin_type: Optional[BinType] = None,
        search: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        sort_by: str = "reported_at",
        sort_order: SortOrder = "desc",
        store: EntityStore = Depends(get_store),
    ):
        filt: Dict[str, Any] = {}
        if city:
            filt["city"] = icontains(city)
        if status:
            filt["status"] = status
        if priority:
            filt["priority"] = priority
        if bin_type:
            filt["bin_type"] = bin_type
        if search:
            filt["$or"] = [
                {"location": icontains(search)},
                {"city": icontains(search)},
                {"notes": icontains(search)},
            ]
        return serialize_page(store.list("bin", filt, page, limit, sort_by, sort_order))

    @app.get("/bins/summary")
    def bin_summary(city: Optional[str] = None, date_from: Optional[datetime] = None,
                    date_to: Optional[datetime] = None,
                    performance: PerformanceAggregator = Depends(get_performance)):
        return performance.bin_summary(city, date_from, date_to)

    @app.get("/bins/{bin_id}")
    def get_bin(bin_id: str, store: EntityStore = Depends(get_store)):
        return serialize_doc(store.get_by_id("bin", bin_id))

    @app.patch("/bins/{bin_id}")
    def update_bin(bin_id: str, payload: BinUpdate, dispatch: DispatchEngine = Depends(get_dispatch)):
        return serialize_doc(dispatch.update_bin(bin_id, payload.model_dump(exclude_unset=True)))

    @app.put("/bins/{bin_id}/assign")
    def assign_collector(bin_id: str, body: AssignCollectorBody, dispatch: DispatchEngine = Depends(get_dispatch)):
        return serialize_doc(dispatch.assign_collector(bin_id, body.collector_id))

    @app.put("/bins/{bin_id}/outcome")
    def report_outcome(bin_id: str, body: OutcomeBody, dispatch: DispatchEngine = Depends(get_dispatch)):
        return serialize_doc(dispatch.report_outcome(bin_id, body.outcome, body.collector_id))

    @app.delete("/bins/{bin_id}")
    def delete_bin(bin_id: str, dispatch: DispatchEngine = Depends(get_dispatch)):
        return {"deleted_bin_id": dispatch.delete_bin(bin_id)}

    # ------------------------
    # Collectors
    # ------------------------
    @app.post("/collectors", status_code=201)
    def register_collector(payload: CollectorCreate, pairing: PairingManager = Depends(get_pairing)):
        return serialize_doc(pairing.register_collector(payload.model_dump()))

    @app.get("/collectors")
    def list_collectors(
        city: Optional[str] = Query(None, max_length=100),
        status: Optional[CollectorStatus] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        sort_by: str = "created_at",
        sort_order: SortOrder = "desc",
        store: EntityStore = Depends(get_store),
    ):
        filt: Dict[str, Any] = {}
        if city:
            filt["city"] = icontains(city)
        if status:
            filt["status"] = status
        return serialize_page(store.list("collector", filt, page, limit, sort_by, sort_order))

    @app.get("/collectors/summary")
    def collector_summary(city: Optional[str] = None, performance: PerformanceAggregator = Depends(get_performance)):
        return performance.collector_summary(city)

    @app.get("/collectors/{collector_id}")
    def get_collector(collector_id: str, store: EntityStore = Depends(get_store)):
        return serialize_doc(store.get_by_id("collector", collector_id))

    @app.patch("/collectors/{collector_id}")
    def update_collector(collector_id: str, payload: CollectorUpdate, store: EntityStore = Depends(get_store)):
        return serialize_doc(store.update("collector", collector_id, payload.model_dump(exclude_unset=True)))

    @app.put("/collectors/{collector_id}/location")
    def update_collector_location(collector_id: str, body: LocationUpdate,
                                  pairing: PairingManager = Depends(get_pairing)):
        coordinates = body.coordinates.model_dump() if body.coordinates else None
        return serialize_doc(pairing.update_location(collector_id, body.current_location, coordinates))

    @app.put("/collectors/{collector_id}/truck")
    def bind_truck(collector_id: str, body: BindTruckBody, pairing: PairingManager = Depends(get_pairing)):
        pair = pairing.bind(collector_id, body.truck_id)
        return {"collector": serialize_doc(pair["collector"]), "truck": serialize_doc(pair["truck"])}

    @app.delete("/collectors/{collector_id}/truck")
    def unbind_truck(collector_id: str, pairing: PairingManager = Depends(get_pairing)):
        pair = pairing.unbind(collector_id)
        return {"collector": serialize_doc(pair["collector"]), "truck": serialize_doc(pair["truck"])}

    @app.get("/collectors/{collector_id}/bins")
    def list_collector_bins(collector_id: str, status: Optional[BinStatus] = None,
                            page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                            store: EntityStore = Depends(get_store)):
        collector = store.get_by_id("collector", collector_id)
        filt: Dict[str, Any] = {"assigned_to": str(collector["_id"])}
        if status:
            filt["status"] = status
        return serialize_page(store.list("bin", filt, page, limit, "reported_at", "desc"))

    @app.get("/collectors/{collector_id}/performance")
    def collector_performance(collector_id: str, performance: PerformanceAggregator = Depends(get_performance)):
        return performance.summarize(collector_id)

    @app.delete("/collectors/{collector_id}")
    def delete_collector(collector_id: str, pairing: PairingManager = Depends(get_pairing)):
        return {"deleted_collector_id": pairing.remove_collector(collector_id)}

    # ------------------------
    # Trucks
    # ------------------------
    @app.post("/trucks", status_code=201)
    def create_truck(payload: TruckCreate, pairing: PairingManager = Depends(get_pairing)):
        return serialize_doc(pairing.create_truck(payload.model_dump()))

    @app.get("/trucks")
    def list_trucks(
        status: Optional[TruckStatus] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        sort_by: str = "created_at",
        sort_order: SortOrder = "desc",
        store: EntityStore = Depends(get_store),
    ):
        filt: Dict[str, Any] = {"status": status} if status else {}
        return serialize_page(store.list("truck", filt, page, limit, sort_by, sort_order))

    @app.get("/trucks/available")
    def available_trucks(pairing: PairingManager = Depends(get_pairing)):
        return {"items": [serialize_doc(t) for t in pairing.available_trucks()]}

    @app.get("/trucks/summary")
    def truck_summary(status: Optional[TruckStatus] = None,
                      performance: PerformanceAggregator = Depends(get_performance)):
        return performance.truck_summary(status)

    @app.get("/trucks/{truck_id}")
    def get_truck(truck_id: str, store: EntityStore = Depends(get_store)):
        return serialize_doc(store.get_by_id("truck", truck_id))

    @app.patch("/trucks/{truck_id}")
    def update_truck(truck_id: str, payload: TruckUpdate, pairing: PairingManager = Depends(get_pairing)):
        return serialize_doc(pairing.update_truck(truck_id, payload.model_dump(exclude_unset=True)))

    @app.delete("/trucks/{truck_id}")
    def delete_truck(truck_id: str, pairing: PairingManager = Depends(get_pairing)):
        return {"deleted_truck_id": pairing.remove_truck(truck_id)}

    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
