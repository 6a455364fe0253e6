from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from roster import services
from roster.config import get_settings
from roster.errors import NotAuthenticated, ProfileNotFound, StoreError
from roster.invalidation import CacheInvalidationCoordinator
from roster.schemas import CascadeOut, ConflictOut, LeaveProgramRequest, OperationOut, SubmissionListOut
from roster.store import RecordStore, build_store

log = logging.getLogger(__name__)

_store: RecordStore | None = None
_coordinator: CacheInvalidationCoordinator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _store
    yield
    if _store is not None:
        await _store.aclose()
        _store = None


app = FastAPI(
    title="Roster",
    version="0.1.0",
    description=(
        "Participation-consistency API for the student-program dashboard. "
        "Checks initiative conflicts, runs team and program leaves, and lists "
        "team submissions. Identity comes from the X-Contact-Id or X-User-Email "
        "header set by the upstream session layer."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Conflicts", "description": "Single-active-initiative checks before enrollment."},
        {"name": "Teams", "description": "Leave teams, withdraw invitations, list submissions."},
        {"name": "Participation", "description": "Leave programs and cohorts."},
        {"name": "Admin", "description": "Health checks."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_store() -> RecordStore:
    global _store
    if _store is None:
        _store = build_store()
    return _store


def get_coordinator() -> CacheInvalidationCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = CacheInvalidationCoordinator.from_settings()
    return _coordinator


async def current_contact_id(
    store: RecordStore = Depends(get_store),
    x_contact_id: str | None = Header(None),
    x_user_email: str | None = Header(None),
) -> str:
    contact = await services.resolve_contact(store, contact_id=x_contact_id, email=x_user_email)
    return contact.id


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(NotAuthenticated)
async def not_authenticated_handler(request: Request, exc: NotAuthenticated):
    return _error(401, "Not authenticated")


@app.exception_handler(ProfileNotFound)
async def profile_not_found_handler(request: Request, exc: ProfileNotFound):
    return _error(404, "User profile not found")


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    log.warning("Record store unavailable for %s: %s", request.url.path, exc)
    return _error(503, "Record store unavailable")


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Admin"], summary="Liveness check")
async def health():
    return {"success": True, "backend": get_settings().backend}


# ---------------------------------------------------------------------------
# Routes: Conflicts
# ---------------------------------------------------------------------------


@app.get("/api/conflicts", response_model=ConflictOut,
         tags=["Conflicts"], summary="Check whether the caller may enroll in an initiative")
async def check_conflict(
    initiative: str = Query(..., description="Name of the initiative the caller wants to join"),
    contact_id: str = Depends(current_contact_id),
    store: RecordStore = Depends(get_store),
):
    return await services.check_conflict(store, contact_id, initiative)


# ---------------------------------------------------------------------------
# Routes: Teams
# ---------------------------------------------------------------------------


@app.post("/api/teams/{team_id}/leave", response_model=CascadeOut,
          tags=["Teams"], summary="Leave a team (use 'unknown' for all active teams)")
async def leave_team(
    team_id: str,
    contact_id: str = Depends(current_contact_id),
    store: RecordStore = Depends(get_store),
    coordinator: CacheInvalidationCoordinator = Depends(get_coordinator),
):
    result = await services.leave_team(store, contact_id, team_id, coordinator)
    if not result["success"]:
        return JSONResponse(status_code=500, content=result)
    return result


@app.get("/api/teams/{team_id}/submissions", response_model=SubmissionListOut,
         tags=["Teams"], summary="List a team's submissions, newest first")
async def list_submissions(
    team_id: str,
    milestone_id: str | None = Query(None, description="Only submissions for this milestone"),
    contact_id: str = Depends(current_contact_id),
    store: RecordStore = Depends(get_store),
):
    return await services.list_submissions(store, team_id, milestone_id)


@app.delete("/api/teams/{team_id}/invitations/{member_id}", response_model=OperationOut,
            tags=["Teams"], summary="Withdraw a pending team invitation")
async def withdraw_invitation(
    team_id: str,
    member_id: str,
    contact_id: str = Depends(current_contact_id),
    store: RecordStore = Depends(get_store),
    coordinator: CacheInvalidationCoordinator = Depends(get_coordinator),
):
    result = await services.withdraw_invitation(store, member_id, team_id, coordinator)
    if not result["success"]:
        return JSONResponse(status_code=400, content=result)
    return result


# ---------------------------------------------------------------------------
# Routes: Participation
# ---------------------------------------------------------------------------


@app.post("/api/participation/leave", response_model=CascadeOut,
          tags=["Participation"], summary="Leave a program by participation, cohort or initiative id")
async def leave_program(
    body: LeaveProgramRequest,
    contact_id: str = Depends(current_contact_id),
    store: RecordStore = Depends(get_store),
    coordinator: CacheInvalidationCoordinator = Depends(get_coordinator),
):
    result = await services.leave_program(
        store, contact_id,
        participation_id=body.participation_id,
        cohort_id=body.cohort_id,
        initiative_id=body.initiative_id,
        coordinator=coordinator,
    )
    if not result["success"]:
        return JSONResponse(status_code=400, content=result)
    return result


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("roster.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
