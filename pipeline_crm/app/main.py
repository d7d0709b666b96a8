from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from pipeline_crm.app.auth import STAFF_ROLES, AuthContext, require_roles
from pipeline_crm.app.models import (
    CandidateCreateRequest,
    CandidateRecord,
    CandidateStage,
    StageGraphResponse,
    SubStatusUpdateRequest,
    TimelineEventRecord,
    TimelineNoteRequest,
    TransitionRequest,
)
from pipeline_crm.app.observability import MetricsRegistry, configure_logging, observe_request
from pipeline_crm.app.persistence import SqlitePersistence
from pipeline_crm.app.services.lifecycle import (
    InvalidSubStatusError,
    LifecycleEngine,
    LifecycleError,
    NoChangeError,
)
from pipeline_crm.app.services.timeline import TimelineRecorder
from pipeline_crm.app.services.workflow import describe_graph
from pipeline_crm.app.settings import Settings, load_settings
from pipeline_crm.app.store import InMemoryStore, StoreConflictError, StoreNotFoundError

WRITE_ROLES = ("recruiter", "manager", "admin")


def create_app() -> FastAPI:
    app = FastAPI(title="Pipeline CRM Lifecycle API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    store = InMemoryStore(persistence=persistence)
    recorder = TimelineRecorder(store)
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.store = store
    app.state.recorder = recorder
    app.state.engine = LifecycleEngine(
        store,
        recorder,
        metrics=app.state.metrics,
        conflict_max_retries=settings.conflict_max_retries,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_engine(request: Request) -> LifecycleEngine:
    return request.app.state.engine


def get_recorder(request: Request) -> TimelineRecorder:
    return request.app.state.recorder


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def _error_body(kind: str, message: str, field: Optional[str] = None) -> dict:
    return {"error": kind, "field": field, "message": message}


def lifecycle_http_error(
    exc: StoreNotFoundError | StoreConflictError | LifecycleError,
) -> HTTPException:
    if isinstance(exc, StoreNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error_body("not_found", str(exc)),
        )
    if isinstance(exc, StoreConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=_error_body("conflict", str(exc)),
        )
    if isinstance(exc, NoChangeError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict())
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict())


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.get("/workflow/stages", response_model=StageGraphResponse)
    def workflow_stages() -> StageGraphResponse:
        return StageGraphResponse.model_validate(describe_graph())

    @router.post(
        "/candidates",
        response_model=CandidateRecord,
        status_code=status.HTTP_201_CREATED,
    )
    def create_candidate(
        payload: CandidateCreateRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> CandidateRecord:
        return get_engine(request).create_candidate(payload, actor_id=auth.actor_id)

    @router.get("/candidates", response_model=list[CandidateRecord])
    def list_candidates(
        request: Request,
        stage: Optional[CandidateStage] = None,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[CandidateRecord]:
        return get_store(request).list_candidates(stage=stage)

    @router.get("/candidates/{candidate_id}", response_model=CandidateRecord)
    def get_candidate(
        candidate_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> CandidateRecord:
        try:
            return get_store(request).load(candidate_id)
        except StoreNotFoundError as exc:
            raise lifecycle_http_error(exc) from exc

    @router.post("/candidates/{candidate_id}/transition", response_model=CandidateRecord)
    def transition_candidate(
        candidate_id: str,
        payload: TransitionRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> CandidateRecord:
        engine = get_engine(request)
        try:
            return engine.request_transition(candidate_id, payload, actor_id=auth.actor_id)
        except (StoreNotFoundError, StoreConflictError, LifecycleError) as exc:
            raise lifecycle_http_error(exc) from exc

    @router.post("/candidates/{candidate_id}/sub-status", response_model=CandidateRecord)
    def update_sub_status(
        candidate_id: str,
        payload: SubStatusUpdateRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> CandidateRecord:
        engine = get_engine(request)
        try:
            return engine.request_sub_status_update(
                candidate_id,
                payload.sub_status,
                payload.reason,
                actor_id=auth.actor_id,
            )
        except (StoreNotFoundError, StoreConflictError, InvalidSubStatusError, NoChangeError) as exc:
            raise lifecycle_http_error(exc) from exc

    @router.get(
        "/candidates/{candidate_id}/timeline",
        response_model=list[TimelineEventRecord],
    )
    def candidate_timeline(
        candidate_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> list[TimelineEventRecord]:
        try:
            get_store(request).load(candidate_id)
        except StoreNotFoundError as exc:
            raise lifecycle_http_error(exc) from exc
        return get_recorder(request).list_events(candidate_id)

    @router.post(
        "/candidates/{candidate_id}/timeline",
        response_model=TimelineEventRecord,
        status_code=status.HTTP_201_CREATED,
    )
    def add_timeline_note(
        candidate_id: str,
        payload: TimelineNoteRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*STAFF_ROLES)),
    ) -> TimelineEventRecord:
        engine = get_engine(request)
        try:
            return engine.add_note(candidate_id, payload, actor_id=auth.actor_id)
        except (StoreNotFoundError, LifecycleError) as exc:
            raise lifecycle_http_error(exc) from exc

    return router
