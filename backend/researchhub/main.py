"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the ResearchHub study API.
Controllers are intentionally thin: they accept requests, check the
caller's role, delegate to services, and return JSON responses.

Endpoint groups:
- /auth: register, login, me
- /blocks: block type registry
- /studies: authoring, lifecycle, import, applications, sessions, results, export
- /applications, /sessions, /recordings, /exports
- /points: balances, history, assignment and expiry
- /templates: community templates and reviews
- /admin: users, bulk actions, overview, audit activity
"""

from fastapi import FastAPI, Depends, UploadFile, File, HTTPException, Form, Request
from fastapi.responses import JSONResponse, HTMLResponse, FileResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
from typing import Optional
import os
import json
import logging
import time
import uuid
from .database import create_db_and_tables, get_session
from . import services, models
from . import blocks as block_registry
from .analytics import StudyResults, StudyAnalytics, DashboardCache, export_study_csv
from .auth import get_current_user, require_role
from .schemas import (
    RegisterIn, LoginIn, TokenOut, ProfileUpdate, StudyCreate, StudyUpdate, StatusChange,
    ApplicationIn, ApplicationReview,
    BlockResponseIn, PointsAssign, PointsConsume, TemplateCreate, UseTemplateIn, ReviewIn, ReviewUpdate,
    AdminUserCreate, AdminUserUpdate, BulkUserAction,
)
from .utils import audit, storage
from .utils.export_jobs import ExportJobStore
from .utils.rate_limit import InMemoryRateLimiter
from .config import settings

app = FastAPI(title="ResearchHub Study API")
logger = logging.getLogger("researchhub.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
_rate_limiter = InMemoryRateLimiter()
_export_jobs = ExportJobStore(max_jobs=settings.EXPORT_JOB_MAX_JOBS, ttl_seconds=settings.EXPORT_JOB_TTL_SECONDS)
_dashboard_cache = DashboardCache()

researcher_or_admin = require_role('researcher', 'admin')
participant_only = require_role('participant')
admin_only = require_role('admin')

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()

LOGGED_PREFIXES = ("/auth", "/studies", "/sessions", "/recordings", "/exports", "/points", "/templates", "/admin", "/applications")


def _log_request(event: str, request: Request, req_id: str, started: float, status_code: Optional[int] = None) -> None:
    record = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
        "client": request.client.host if request.client else "unknown",
    }
    if status_code is None:
        logger.exception("%s %s", event, json.dumps(record, ensure_ascii=True))
    else:
        record["status_code"] = status_code
        logger.info("%s %s", event, json.dumps(record, ensure_ascii=True))


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    logged = request.url.path.startswith(LOGGED_PREFIXES)
    try:
        response = await call_next(request)
    except Exception:
        if logged:
            _log_request("request_failed", request, req_id, started)
        raise
    response.headers["X-Request-ID"] = req_id
    if logged:
        _log_request("request_done", request, req_id, started, response.status_code)
    return response


def _error(status_code: int):
    def handler(request: Request, exc: Exception):
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


app.add_exception_handler(services.NotFoundError, _error(404))
app.add_exception_handler(services.PermissionDenied, _error(403))
app.add_exception_handler(services.ConflictError, _error(409))
app.add_exception_handler(services.PayloadTooLargeError, _error(413))
app.add_exception_handler(services.UnsupportedMediaError, _error(415))


@app.exception_handler(services.InsufficientPointsError)
def insufficient_points(request: Request, exc: services.InsufficientPointsError):
    return JSONResponse(
        status_code=402,
        content={"detail": str(exc), "required": exc.required, "available": exc.available},
    )


def _enforce_rate_limit(request: Request) -> None:
    max_per_min = int(os.getenv("RATE_LIMIT_PER_MIN", "60"))
    window = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    key = f"{request.client.host if request.client else 'unknown'}:{request.url.path}"
    allowed, retry_after = _rate_limiter.allow(key, max_per_min, window)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


def _read_upload(file: UploadFile, max_bytes: int) -> bytes:
    if not file.filename:
        raise HTTPException(status_code=400, detail='no file')
    payload = file.file.read(max_bytes + 1)
    if len(payload) > max_bytes:
        raise HTTPException(status_code=413, detail=f'file too large; max {max_bytes} bytes')
    return payload


# --- auth ---------------------------------------------------------------

@app.post('/auth/register', status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a participant or researcher account."""
    try:
        user = services.AuthService(db).register(
            payload.email, payload.password, payload.first_name, payload.last_name, payload.role
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.serialize_user(user)


@app.post('/auth/login', response_model=TokenOut)
def login(payload: LoginIn, request: Request, db: Session = Depends(get_session)):
    """Authenticate a user and return a JWT bearer token with the profile."""
    _enforce_rate_limit(request)
    result = services.AuthService(db).authenticate(payload.email, payload.password)
    if not result:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return result


@app.get('/auth/me')
def me(user: models.User = Depends(get_current_user)):
    return services.serialize_user(user)


@app.put('/auth/me')
def update_me(payload: ProfileUpdate, db: Session = Depends(get_session),
              user: models.User = Depends(get_current_user)):
    """Update the caller's own names or email."""
    try:
        user = services.AuthService(db).update_profile(user, payload.first_name, payload.last_name, payload.email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.serialize_user(user)


@app.get('/auth/me/stats')
def my_stats(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.AuthService(db).stats(user)


# --- block registry -----------------------------------------------------

@app.get('/blocks/types')
def list_block_types(category: Optional[str] = None):
    """List block types with metadata, optionally limited to one category."""
    if category and category not in block_registry.BLOCK_CATEGORIES:
        raise HTTPException(status_code=400, detail=f"category must be one of: {', '.join(block_registry.BLOCK_CATEGORIES)}")
    types = block_registry.blocks_by_category(category) if category else block_registry.all_block_types()
    return [block_registry.get_metadata(t).to_dict(t) for t in types]


@app.get('/blocks/types/{block_type}')
def get_block_type(block_type: str):
    meta = block_registry.get_metadata(block_type)
    if not meta:
        raise HTTPException(status_code=404, detail='unknown block type')
    return meta.to_dict(block_type)


# --- studies ------------------------------------------------------------

@app.post('/studies', status_code=201)
def create_study(payload: StudyCreate, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    """Create a draft study; blocks are validated against the block registry."""
    svc = services.StudyService(db)
    try:
        study = svc.create(
            user,
            title=payload.title,
            description=payload.description,
            study_type=payload.study_type,
            target_participants=payload.target_participants,
            study_settings=payload.settings,
            blocks=payload.blocks,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return svc.detail(study)


@app.get('/studies')
def list_studies(status: Optional[str] = None, search: Optional[str] = None, page: int = 1, limit: int = 20,
                 db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """List studies visible to the caller with pagination."""
    try:
        return services.StudyService(db).list_for_user(user, status=status, search=search, page=page, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get('/studies/{study_id}')
def get_study(study_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.StudyService(db)
    return svc.detail(svc.get_visible(study_id, user))


@app.put('/studies/{study_id}')
def update_study(study_id: int, payload: StudyUpdate, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    """Update a draft or paused study. Supplied blocks replace the current list."""
    svc = services.StudyService(db)
    study = svc.get_owned(study_id, user)
    try:
        study = svc.update(
            study,
            title=payload.title,
            description=payload.description,
            study_type=payload.study_type,
            target_participants=payload.target_participants,
            study_settings=payload.settings,
            blocks=payload.blocks,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return svc.detail(study)


@app.delete('/studies/{study_id}', status_code=204)
def delete_study(study_id: int, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    svc = services.StudyService(db)
    svc.delete(svc.get_owned(study_id, user))
    return Response(status_code=204)


@app.get('/studies/{study_id}/can-edit')
def can_edit_study(study_id: int, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    svc = services.StudyService(db)
    return svc.can_edit(svc.get_owned(study_id, user))


@app.post('/studies/{study_id}/status/validate')
def validate_status(study_id: int, payload: StatusChange, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    """Check whether a status change would be accepted without applying it."""
    svc = services.StudyService(db)
    return svc.validate_transition(svc.get_owned(study_id, user), payload.status)


@app.post('/studies/{study_id}/status')
def change_study_status(study_id: int, payload: StatusChange, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    svc = services.StudyService(db)
    study = svc.change_status(svc.get_owned(study_id, user), payload.status)
    return services.serialize_study(study)


@app.post('/studies/{study_id}/archive')
def archive_study(study_id: int, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    svc = services.StudyService(db)
    return services.serialize_study(svc.archive(svc.get_owned(study_id, user)))


@app.post('/studies/{study_id}/duplicate', status_code=201)
def duplicate_study(study_id: int, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    svc = services.StudyService(db)
    copy = svc.duplicate(svc.get_owned(study_id, user), user)
    return svc.detail(copy)


@app.post('/studies/{study_id}/import')
def import_study_blocks(study_id: int, dry_run: bool = False, file: UploadFile = File(...),
                        db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    """Upload a JSON, CSV, TXT, PDF or DOCX file and append its questions as blocks.

    Returns a JSON summary with created count and any per-item errors.
    """
    svc = services.StudyService(db)
    study = svc.get_owned(study_id, user)
    content = _read_upload(file, settings.MAX_UPLOAD_BYTES)
    try:
        return svc.import_blocks(study, content, file.filename, dry_run=dry_run)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# --- applications -------------------------------------------------------

@app.post('/studies/{study_id}/apply', status_code=201)
def apply_to_study(study_id: int, request: Request, payload: Optional[ApplicationIn] = None,
                   db: Session = Depends(get_session), user: models.User = Depends(participant_only)):
    _enforce_rate_limit(request)
    responses = payload.responses if payload else {}
    app_row = services.ApplicationService(db).apply(study_id, user, responses)
    return services.serialize_application(app_row)


@app.get('/applications/mine')
def my_applications(db: Session = Depends(get_session), user: models.User = Depends(participant_only)):
    return services.ApplicationService(db).list_mine(user)


@app.post('/applications/{application_id}/withdraw')
def withdraw_application(application_id: int, db: Session = Depends(get_session), user: models.User = Depends(participant_only)):
    return services.serialize_application(services.ApplicationService(db).withdraw(application_id, user))


@app.get('/studies/{study_id}/applications')
def study_applications(study_id: int, status: Optional[str] = None, page: int = 1, limit: int = 20,
                       db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    try:
        return services.ApplicationService(db).list_for_study(study_id, user, status=status, page=page, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.put('/applications/{application_id}/review')
def review_application(application_id: int, payload: ApplicationReview, db: Session = Depends(get_session),
                       user: models.User = Depends(researcher_or_admin)):
    try:
        app_row = services.ApplicationService(db).review(application_id, user, payload.status, payload.notes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.serialize_application(app_row)


# --- sessions and responses ---------------------------------------------

@app.post('/studies/{study_id}/sessions')
def start_session(study_id: int, db: Session = Depends(get_session), user: models.User = Depends(participant_only)):
    """Start a session, or return the participant's active one."""
    svc = services.ParticipationService(db)
    study_session, created = svc.start(study_id, user)
    return JSONResponse(status_code=201 if created else 200, content=svc.session_detail(study_session))


@app.get('/sessions/{session_id}')
def get_study_session(session_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.ParticipationService(db)
    return svc.session_detail(svc.get_visible_session(session_id, user))


@app.post('/sessions/{session_id}/responses')
def submit_block_response(session_id: int, payload: BlockResponseIn, request: Request,
                          db: Session = Depends(get_session), user: models.User = Depends(participant_only)):
    """Save (or overwrite) the answer to one block of the session's study."""
    _enforce_rate_limit(request)
    try:
        return services.ParticipationService(db).submit_response(
            session_id,
            user,
            block_id=payload.block_id,
            response=payload.response,
            time_spent=payload.time_spent,
            is_last_block=payload.is_last_block,
            metadata=payload.metadata,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/sessions/{session_id}/blocks/{block_id}/upload', status_code=201)
def upload_block_file(session_id: int, block_id: int, request: Request, file: UploadFile = File(...),
                      db: Session = Depends(get_session), user: models.User = Depends(participant_only)):
    _enforce_rate_limit(request)
    payload = _read_upload(file, settings.MAX_UPLOAD_BYTES)
    try:
        return services.ParticipationService(db).upload_block_file(session_id, user, block_id, file.filename, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# --- recordings ---------------------------------------------------------

@app.post('/sessions/{session_id}/recordings', status_code=201)
def upload_recording(session_id: int, request: Request, file: UploadFile = File(...),
                     duration_seconds: Optional[float] = Form(default=None),
                     db: Session = Depends(get_session), user: models.User = Depends(participant_only)):
    _enforce_rate_limit(request)
    payload = _read_upload(file, settings.MAX_RECORDING_BYTES)
    try:
        rec = services.RecordingService(db).upload(
            session_id, user, file.filename, file.content_type, payload, duration_seconds
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.serialize_recording(rec)


@app.get('/recordings')
def list_recordings(study_id: Optional[int] = None, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        recs = services.RecordingService(db).list_for_user(user, study_id=study_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [services.serialize_recording(r) for r in recs]


@app.get('/recordings/{recording_id}')
def get_recording(recording_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.serialize_recording(services.RecordingService(db).get_visible(recording_id, user))


@app.get('/recordings/{recording_id}/download')
def download_recording(recording_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    rec = services.RecordingService(db).get_visible(recording_id, user)
    try:
        path = storage.resolve(rec.storage_path)
    except ValueError:
        raise HTTPException(status_code=404, detail='recording file missing')
    if not path.exists():
        raise HTTPException(status_code=404, detail='recording file missing')
    return FileResponse(path, media_type=rec.content_type, filename=rec.filename)


@app.delete('/recordings/{recording_id}', status_code=204)
def delete_recording(recording_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.RecordingService(db)
    rec = svc.get_visible(recording_id, user)
    if user.role == 'participant' and rec.participant_id != user.id:
        raise HTTPException(status_code=403, detail='not allowed to delete this recording')
    svc.delete(rec)
    return Response(status_code=204)


# --- results, analytics and export --------------------------------------

@app.get('/studies/{study_id}/results')
def study_results(study_id: int, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    study = services.StudyService(db).get_owned(study_id, user)
    return StudyResults(db).summarize(study)


@app.get('/studies/{study_id}/analytics')
def study_analytics(study_id: int, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    study = services.StudyService(db).get_owned(study_id, user)
    return StudyAnalytics(db).for_study(study)


@app.get('/analytics/dashboard')
def dashboard_analytics(db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    """Researcher dashboard metrics, cached per user for a short TTL."""
    return _dashboard_cache.get_or_compute(
        user.id,
        lambda: StudyAnalytics(db).dashboard(user),
        settings.ANALYTICS_CACHE_TTL_SECONDS,
    )


@app.post('/studies/{study_id}/export', status_code=202)
def create_export_job(study_id: int, request: Request, export_format: str = 'csv',
                      db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    """Queue a CSV export of the study's responses and return a job id for polling."""
    study = services.StudyService(db).get_owned(study_id, user)
    if export_format != 'csv':
        raise HTTPException(status_code=400, detail='export_format must be csv')
    created = _export_jobs.submit(
        study_id=study.id,
        owner_id=user.id,
        export_format=export_format,
        request_id=getattr(request.state, "request_id", ""),
        worker=export_study_csv,
    )
    return {
        **created,
        "status_url": f"/exports/{created['job_id']}",
    }


def _visible_job(job_id: str, user: models.User) -> dict:
    job = _export_jobs.get(job_id)
    if not job or (user.role != 'admin' and job['owner_id'] != user.id):
        raise HTTPException(status_code=404, detail="job not found")
    return job


@app.get('/exports/{job_id}')
def get_export_job(job_id: str, user: models.User = Depends(researcher_or_admin)):
    """Poll background export job status."""
    job = _visible_job(job_id, user)
    if job['result']:
        job['result'] = {k: v for k, v in job['result'].items() if k != 'path'}
        job['download_url'] = f"/exports/{job_id}/download"
    return job


@app.get('/exports/{job_id}/download')
def download_export(job_id: str, user: models.User = Depends(researcher_or_admin)):
    job = _visible_job(job_id, user)
    if job['status'] != 'succeeded':
        raise HTTPException(status_code=409, detail=f"export is {job['status']}")
    return FileResponse(job['result']['path'], media_type='text/csv', filename=job['result']['filename'])


# --- points -------------------------------------------------------------

@app.get('/points/balance')
def points_balance(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.serialize_balance(services.PointsService(db).get_or_create_balance(user.id))


@app.get('/points/history')
def points_history(limit: int = 50, offset: int = 0, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        return services.PointsService(db).history(user.id, limit=limit, offset=offset)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/points/assign')
def assign_points(payload: PointsAssign, db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    try:
        return services.PointsService(db).assign(
            user,
            payload.amount,
            target_user_id=payload.target_user_id,
            user_email=payload.user_email,
            reason=payload.reason,
            expires_in_days=payload.expires_in_days,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/points/consume')
def consume_points(payload: PointsConsume, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        return services.PointsService(db).consume(user.id, payload.amount, study_id=payload.study_id, reason=payload.reason)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get('/points/admin/balances')
def all_balances(db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    return services.PointsService(db).admin_balances()


@app.post('/points/admin/expire')
def expire_points(db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    result = services.PointsService(db).expire()
    audit.record_event(user.id, 'points.expire', '', result)
    return result


# --- templates and reviews ----------------------------------------------

@app.get('/templates')
def list_templates(category: Optional[str] = None, search: Optional[str] = None, sort: str = 'popular',
                   db: Session = Depends(get_session)):
    try:
        return services.TemplateService(db).list_public(category=category, search=search, sort=sort)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/templates', status_code=201)
def create_template(payload: TemplateCreate, db: Session = Depends(get_session), user: models.User = Depends(researcher_or_admin)):
    try:
        tpl = services.TemplateService(db).create(
            user,
            title=payload.title,
            description=payload.description,
            category=payload.category,
            study_type=payload.study_type,
            is_public=payload.is_public,
            blocks=payload.blocks,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.serialize_template(tpl)


@app.get('/templates/{template_id}')
def get_template(template_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.serialize_template(services.TemplateService(db).get_visible(template_id, user))


@app.post('/templates/{template_id}/use', status_code=201)
def use_template(template_id: int, payload: Optional[UseTemplateIn] = None, db: Session = Depends(get_session),
                 user: models.User = Depends(researcher_or_admin)):
    """Create a new draft study from a template."""
    try:
        study = services.TemplateService(db).use(template_id, user, title=payload.title if payload else None)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.StudyService(db).detail(study)


@app.get('/templates/{template_id}/reviews')
def list_template_reviews(template_id: int, page: int = 1, limit: int = 10, sort: str = 'recent',
                          db: Session = Depends(get_session)):
    try:
        return services.TemplateService(db).list_reviews(template_id, page=page, limit=limit, sort=sort)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/templates/{template_id}/reviews', status_code=201)
def add_template_review(template_id: int, payload: ReviewIn, db: Session = Depends(get_session),
                        user: models.User = Depends(get_current_user)):
    try:
        review = services.TemplateService(db).add_review(
            template_id,
            user,
            rating=payload.rating,
            comment=payload.comment,
            title=payload.title,
            usage_context=payload.usage_context,
            organization_size=payload.organization_size,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.serialize_review(review)


@app.put('/templates/{template_id}/reviews/{review_id}')
def update_template_review(template_id: int, review_id: int, payload: ReviewUpdate, db: Session = Depends(get_session),
                           user: models.User = Depends(get_current_user)):
    try:
        review = services.TemplateService(db).update_review(template_id, review_id, user, payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.serialize_review(review)


@app.delete('/templates/{template_id}/reviews/{review_id}', status_code=204)
def delete_template_review(template_id: int, review_id: int, db: Session = Depends(get_session),
                           user: models.User = Depends(get_current_user)):
    services.TemplateService(db).delete_review(template_id, review_id, user)
    return Response(status_code=204)


@app.post('/templates/{template_id}/reviews/{review_id}/helpful')
def mark_review_helpful(template_id: int, review_id: int, db: Session = Depends(get_session),
                        user: models.User = Depends(get_current_user)):
    review = services.TemplateService(db).mark_helpful(template_id, review_id)
    return {'id': review.id, 'helpful_count': review.helpful_count}


# --- admin --------------------------------------------------------------

@app.get('/admin/users')
def admin_list_users(role: Optional[str] = None, status: Optional[str] = None, search: Optional[str] = None,
                     db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    return services.AdminService(db).list_users(role=role, status=status, search=search)


@app.post('/admin/users', status_code=201)
def admin_create_user(payload: AdminUserCreate, db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    try:
        created = services.AdminService(db).create_user(
            user, payload.email, payload.password, payload.first_name, payload.last_name, payload.role
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.serialize_user(created)


@app.put('/admin/users/bulk')
def admin_bulk_users(payload: BulkUserAction, db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    """Apply one action to many users; each user succeeds or fails independently."""
    try:
        results = services.AdminService(db).bulk(user, payload.user_ids, payload.action, payload.data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        'results': results,
        'succeeded': sum(1 for r in results if r['success']),
        'failed': sum(1 for r in results if not r['success']),
    }


@app.put('/admin/users/{user_id}')
def admin_update_user(user_id: int, payload: AdminUserUpdate, db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    try:
        updated = services.AdminService(db).update_user(user, user_id, payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.serialize_user(updated)


@app.delete('/admin/users/{user_id}', status_code=204)
def admin_delete_user(user_id: int, db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    try:
        services.AdminService(db).delete_user(user, user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(status_code=204)


@app.get('/admin/overview')
def admin_overview(db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    return services.AdminService(db).overview()


@app.get('/admin/studies')
def admin_studies(status: Optional[str] = None, search: Optional[str] = None, page: int = 1, limit: int = 20,
                  db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    try:
        return services.StudyService(db).list_for_user(user, status=status, search=search, page=page, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get('/admin/activity')
def admin_activity(limit: int = 50, user: models.User = Depends(admin_only)):
    """Most recent audit events, newest first."""
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail='limit must be between 1 and 500')
    return audit.recent_events(limit)


# --- service ------------------------------------------------------------

@app.get("/", response_class=HTMLResponse)
def home():
    """Minimal homepage for quick manual testing."""
    return """
    <!DOCTYPE html>
    <html>
    <head>
      <meta charset="UTF-8" />
      <title>ResearchHub Study API</title>
      <style>
        body { font-family: Arial, sans-serif; margin: 32px; }
        a { color: #0a6; }
        .card { max-width: 640px; padding: 16px; border: 1px solid #ddd; border-radius: 8px; }
      </style>
    </head>
    <body>
      <div class="card">
        <h1>ResearchHub Study API</h1>
        <ul>
          <li><a href="/docs">Swagger UI</a></li>
          <li><a href="/blocks/types">Block types</a></li>
          <li><a href="/templates">Community templates</a></li>
        </ul>
        <p>Use <code>/auth/register</code> + <code>/auth/login</code> to get a token, then create a study with <code>POST /studies</code>.</p>
      </div>
    </body>
    </html>
    """


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
