from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from marketsync.dependencies import get_sync_core
from marketsync.models_sqlalchemy import get_db
from marketsync.services.oauth_flow import REAUTH_ONCE_COOKIE, CallbackOutcome
from marketsync.services.sync_core import SyncCore

router = APIRouter(prefix="/api/ebay", tags=["ebay-oauth"])


class AuthorizeRequest(BaseModel):
    environment: Optional[str] = None
    account_id: Optional[str] = None


def _to_response(outcome: CallbackOutcome, *, secure: bool) -> Response:
    if outcome.kind == "redirect":
        response: Response = RedirectResponse(url=outcome.location, status_code=302)
    elif outcome.kind == "html":
        response = HTMLResponse(content=outcome.body or "", status_code=outcome.status_code)
    else:
        response = JSONResponse(status_code=outcome.status_code, content={"error": outcome.error})

    for cookie in outcome.cookies:
        # host-only: no domain attribute
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            path="/",
            httponly=True,
            samesite="lax",
            secure=secure,
        )
    return response


@router.post("/authorize")
async def authorize(
    body: AuthorizeRequest,
    core: SyncCore = Depends(get_sync_core),
    db: Session = Depends(get_db),
):
    """Issue a consent URL and record the pending handshake."""
    return core.oauth.start_authorization(db, environment=body.environment, account_id=body.account_id)


@router.get("/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    core: SyncCore = Depends(get_sync_core),
    db: Session = Depends(get_db),
):
    outcome = await core.oauth.handle_callback(
        db,
        code=code,
        state=state,
        error=error,
        reauth_once=request.cookies.get(REAUTH_ONCE_COOKIE) == "1",
    )
    return _to_response(outcome, secure=request.url.scheme == "https")
