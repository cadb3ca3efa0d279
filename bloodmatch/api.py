import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bloodmatch.config import Settings
from bloodmatch.database import InMemoryRecordStore, RecordStore
from bloodmatch.engine import MatchingEngine
from bloodmatch.errors import (
    DonorNotEligible,
    InvalidCoordinate,
    InvalidDonationVolume,
    InvalidTransition,
    RecordNotFound,
)
from bloodmatch.models import (
    DonorProfileUpdate,
    DonorRecord,
    EmergencyRequest,
    EmergencyRequestCreate,
)

logger = logging.getLogger(__name__)

router = APIRouter()

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]


class FulfillRequest(BaseModel):
    donor_id: str
    volume_ml: float


class CancelRequest(BaseModel):
    reason: str = ""


class InterestRequest(BaseModel):
    donor_id: str


class CandidateOut(BaseModel):
    donor_id: str
    name: str
    blood_type: str
    distance_km: float


class MatchResponse(BaseModel):
    request_id: str
    status: str
    candidates: list[CandidateOut] = Field(default_factory=list)


def _engine(request: Request) -> MatchingEngine:
    return request.app.state.engine


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/requests", status_code=201)
async def create_request(
    payload: EmergencyRequestCreate, request: Request
) -> EmergencyRequest:
    return _engine(request).lifecycle.create(payload)


@router.get("/requests")
async def list_requests(request: Request, active: bool = False) -> list[EmergencyRequest]:
    engine = _engine(request)
    return engine.active_requests() if active else engine.all_requests()


@router.post("/requests/sweep")
async def sweep_requests(request: Request) -> dict:
    expired = _engine(request).lifecycle.sweep_expirations()
    return {"expired": [r.id for r in expired]}


@router.get("/requests/{request_id}")
async def get_request(request_id: str, request: Request) -> EmergencyRequest:
    return _engine(request).lifecycle.get(request_id)


@router.post("/requests/{request_id}/match")
async def match_request(
    request_id: str,
    request: Request,
    max_radius_km: float | None = Query(default=None, ge=0),
    limit: int | None = Query(default=None, ge=0),
) -> MatchResponse:
    engine = _engine(request)
    candidates = engine.match_request(request_id, max_radius_km=max_radius_km)
    if limit is not None:
        candidates = candidates[:limit]

    return MatchResponse(
        request_id=request_id,
        status=engine.lifecycle.get(request_id).status.value,
        candidates=[
            CandidateOut(
                donor_id=c.donor.id,
                name=c.donor.name,
                blood_type=c.donor.blood_type.value,
                distance_km=round(c.distance_km, 2),
            )
            for c in candidates
        ],
    )


@router.post("/requests/{request_id}/interest")
async def express_interest(
    request_id: str, body: InterestRequest, request: Request
) -> EmergencyRequest:
    return _engine(request).lifecycle.express_interest(request_id, body.donor_id)


@router.post("/requests/{request_id}/fulfill")
async def fulfill_request(
    request_id: str, body: FulfillRequest, request: Request
) -> EmergencyRequest:
    return _engine(request).lifecycle.fulfill(
        request_id, body.donor_id, body.volume_ml
    )


@router.post("/requests/{request_id}/cancel")
async def cancel_request(
    request_id: str, body: CancelRequest, request: Request
) -> EmergencyRequest:
    return _engine(request).lifecycle.cancel(request_id, body.reason)


@router.post("/donors", status_code=201)
async def register_donor(donor: DonorRecord, request: Request) -> DonorRecord:
    try:
        return _engine(request).register_donor(donor)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.get("/donors/top")
async def top_donors(
    request: Request, limit: int = Query(default=3, ge=1)
) -> list[DonorRecord]:
    return _engine(request).progression.top_donors(limit)


@router.get("/donors/{donor_id}")
async def get_donor(donor_id: str, request: Request) -> DonorRecord:
    return _engine(request).get_donor(donor_id)


@router.patch("/donors/{donor_id}")
async def update_donor(
    donor_id: str, changes: DonorProfileUpdate, request: Request
) -> DonorRecord:
    return _engine(request).update_donor_profile(donor_id, changes)


@router.get("/donors/{donor_id}/eligibility")
async def donor_eligibility(donor_id: str, request: Request) -> dict:
    reasons = _engine(request).explain_eligibility(donor_id)
    return {"donor_id": donor_id, "eligible": not reasons, "reasons": reasons}


@router.get("/donors/{donor_id}/requests")
async def donor_requests(
    donor_id: str,
    request: Request,
    max_radius_km: float | None = Query(default=None, ge=0),
) -> list[dict]:
    found = _engine(request).requests_for_donor(donor_id, max_radius_km)
    return [
        {
            "request": r.model_dump(mode="json"),
            "distance_km": round(distance, 2),
        }
        for r, distance in found
    ]


@router.get("/donors/{donor_id}/donations")
async def donor_donations(donor_id: str, request: Request) -> list[dict]:
    engine = _engine(request)
    engine.get_donor(donor_id)
    return [
        d.model_dump(mode="json") for d in engine.progression.donations_for(donor_id)
    ]


@router.get("/users/{user_id}/notifications")
async def user_notifications(user_id: str, request: Request) -> list[dict]:
    return [
        n.model_dump(mode="json")
        for n in _engine(request).notifier.for_user(user_id)
    ]


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str, request: Request) -> dict:
    return _engine(request).notifier.mark_read(notification_id).model_dump(mode="json")


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RecordNotFound)
    async def _not_found(_request: Request, exc: RecordNotFound) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(InvalidTransition)
    async def _invalid_transition(
        _request: Request, exc: InvalidTransition
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={
                "detail": exc.user_message,
                "from": str(exc.from_status),
                "attempted": exc.attempted,
            },
        )

    @app.exception_handler(DonorNotEligible)
    async def _not_eligible(_request: Request, exc: DonorNotEligible) -> JSONResponse:
        return JSONResponse(
            status_code=409, content={"detail": str(exc), "reasons": exc.reasons}
        )

    @app.exception_handler(InvalidCoordinate)
    async def _bad_coordinate(
        _request: Request, exc: InvalidCoordinate
    ) -> JSONResponse:
        return _error(422, str(exc))

    @app.exception_handler(InvalidDonationVolume)
    async def _bad_volume(
        _request: Request, exc: InvalidDonationVolume
    ) -> JSONResponse:
        return _error(422, str(exc))


async def sweep_expired_requests(
    engine: MatchingEngine,
    *,
    interval_seconds: float,
    now_fn: NowFn,
    sleep_fn: SleepFn,
) -> None:
    """
    Background loop retiring overdue requests. Runs until cancelled; a
    failing sweep is logged and retried on the next tick.
    """
    try:
        while True:
            await sleep_fn(interval_seconds)
            try:
                engine.lifecycle.sweep_expirations(now_fn())
            except Exception:
                logger.exception("expiry sweep failed")
    except asyncio.CancelledError:
        return


def start_expiry_sweeper(app: FastAPI) -> asyncio.Task | None:
    interval = app.state.settings.sweep_interval_seconds
    if interval <= 0:
        return None

    task = asyncio.create_task(
        sweep_expired_requests(
            app.state.engine,
            interval_seconds=interval,
            now_fn=app.state.now_fn,
            sleep_fn=app.state.sleep_fn,
        )
    )
    app.state.background_tasks.add(task)
    task.add_done_callback(app.state.background_tasks.discard)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    start_expiry_sweeper(app)
    try:
        yield
    finally:
        tasks = list(app.state.background_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def create_app(
    settings: Settings | None = None, store: RecordStore | None = None
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.getLogger("bloodmatch").setLevel(settings.log_level.upper())

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings

    app.state.now_fn = lambda: datetime.now(UTC)
    app.state.sleep_fn = asyncio.sleep

    app.state.database = store if store is not None else InMemoryRecordStore()
    app.state.engine = MatchingEngine(
        app.state.database, settings, now_fn=lambda: app.state.now_fn()
    )

    app.state.background_tasks = set()

    install_error_handlers(app)
    app.include_router(router)
    return app
