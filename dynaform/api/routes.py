"""
FastAPI routes for the dynaform backend.

Endpoints:
- GET   /forms                   : list available form configurations
- GET   /forms/{form_id}         : get one form configuration
- POST  /sessions                : start a form-filling session
- GET   /sessions/{id}           : current session view
- PATCH /sessions/{id}/values    : set field values
- POST  /sessions/{id}/submit    : validate and submit
- POST  /sessions/reset          : delete a session
- GET   /submissions             : prior submissions as {columns, data}
- GET   /health                  : health check
"""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from dynaform.core.errors import ConfigurationLoadError, SessionStateError, SubmissionError
from dynaform.core.form_state import FormSession
from dynaform.core.schema import FieldKind

logger = logging.getLogger(__name__)

router = APIRouter()

# These will be injected by the app factory
_session_store = None
_source = None
_resolver = None
_sink = None


def configure_routes(session_store, source, resolver=None, sink=None):
    """Inject the session store and the form collaborators into the routes module.

    Called by the app factory during startup.
    """
    global _session_store, _source, _resolver, _sink
    _session_store = session_store
    _source = source
    _resolver = resolver
    _sink = sink


# --- Request / Response Models ---


class CreateSessionRequest(BaseModel):
    form_id: str
    values: dict[str, Any] | None = None


class UpdateValuesRequest(BaseModel):
    """Values keyed by flattened field ID, or nested by group."""

    values: dict[str, Any]


class ResetRequest(BaseModel):
    session_id: str


class SessionView(BaseModel):
    """Everything a renderer needs to draw the form in its current state."""

    session_id: str
    form_id: str
    status: str
    values: dict[str, Any]
    visibility: dict[str, bool]
    required: list[str]
    errors: dict[str, list[str]]
    options: dict[str, list[dict[str, str]]]
    busy: dict[str, bool]
    last_error: str | None = None


def _session_view(session_id: str, form: FormSession) -> SessionView:
    selection = (FieldKind.SELECT, FieldKind.RADIO, FieldKind.CHECKBOX)
    choice_fields = [field for field in form.fields if field.kind in selection]
    return SessionView(
        session_id=session_id,
        form_id=form.form_id,
        status=form.status.value,
        values=form.values,
        visibility=form.visibility,
        required=form.schema.required_fields if form.schema else [],
        errors=form.errors or form.live_errors(),
        options={
            field.id: [option.model_dump() for option in form.get_options(field.id)]
            for field in choice_fields
        },
        busy={field.id: form.is_busy(field.id) for field in choice_fields},
        last_error=form.last_error,
    )


def _require_configured() -> None:
    if _session_store is None or _source is None:
        raise HTTPException(status_code=500, detail="Server not properly configured")


def _get_form_session(session_id: str) -> FormSession:
    _require_configured()
    session = _session_store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return session.form


# --- Endpoints ---


@router.get("/forms")
async def list_forms():
    """List available form configurations (ID, title and product type)."""
    _require_configured()
    try:
        forms = await _source.list_forms()
    except ConfigurationLoadError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "forms": [
            {"formId": form.form_id, "title": form.title, "type": form.type}
            for form in forms
        ]
    }


@router.get("/forms/{form_id}")
async def get_form(form_id: str):
    """Get one form configuration, as declared."""
    _require_configured()
    try:
        form = await _source.get_form(form_id)
    except ConfigurationLoadError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if form is None:
        raise HTTPException(status_code=404, detail=f"Form '{form_id}' not found")
    return form.model_dump(by_alias=True, exclude_none=True, exclude={"sections"})


@router.post("/sessions", response_model=SessionView)
async def create_session(request: CreateSessionRequest):
    """Start a session for a form, optionally with initial values."""
    _require_configured()
    try:
        config = await _source.get_form(request.form_id)
    except ConfigurationLoadError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if config is None:
        raise HTTPException(status_code=404, detail=f"Form '{request.form_id}' not found")

    form = FormSession.from_config(
        config, resolver=_resolver, sink=_sink, defaults=request.values
    )
    await form.wait_for_options()
    session_id, _ = _session_store.add(form)
    logger.info("Session %s started for form '%s'", session_id, form.form_id)
    return _session_view(session_id, form)


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(session_id: str):
    return _session_view(session_id, _get_form_session(session_id))


@router.patch("/sessions/{session_id}/values", response_model=SessionView)
async def update_values(session_id: str, request: UpdateValuesRequest, wait: bool = True):
    """Set field values and return the re-derived view.

    With ``wait`` (the default) the response is sent once dependent option
    lookups have settled; otherwise busy flags show what is still loading.
    """
    form = _get_form_session(session_id)
    try:
        form.set_values(request.values)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if wait:
        await form.wait_for_options()
    return _session_view(session_id, form)


@router.post("/sessions/{session_id}/submit")
async def submit_session(session_id: str):
    """Validate the session's values and submit them."""
    form = _get_form_session(session_id)
    try:
        record = await form.submit()
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SubmissionError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if record is None:
        raise HTTPException(
            status_code=422,
            detail={"message": "Validation failed", "errors": form.errors},
        )
    return record.model_dump(mode="json", by_alias=True)


@router.post("/sessions/reset")
async def reset_session(request: ResetRequest):
    """Delete a form session."""
    _require_configured()
    deleted = _session_store.delete_session(request.session_id)
    return {
        "success": deleted,
        "message": "Session reset" if deleted else "Session not found",
    }


@router.get("/submissions")
async def list_submissions():
    """Prior submissions with one column per submitted field."""
    if _sink is None:
        return {"columns": [], "data": []}
    if hasattr(_sink, "to_table"):
        return _sink.to_table()
    try:
        return await _sink.list_submissions()
    except SubmissionError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    session_count = _session_store.count() if _session_store else 0
    return {
        "status": "healthy",
        "active_sessions": session_count,
    }
