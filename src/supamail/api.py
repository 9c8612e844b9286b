"""HTTP surface: the relay webhook plus thin dashboard endpoints."""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from supamail import __version__
from supamail.activity import ActivityLog
from supamail.config import Settings, load_settings
from supamail.dependencies import get_activity, get_pipeline, get_settings, get_store
from supamail.errors import (
    ForwardError,
    LogNotFoundError,
    RecipientNotFoundError,
    SignatureError,
    UsernameTakenError,
)
from supamail.models import LogStatus, RuleAction, RuleType
from supamail.service.pipeline import InboundPipeline
from supamail.store import RuleStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# --- Request Models ---
class LogActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    log_id: str = Field(alias="logId")


class WhitelistRequest(LogActionRequest):
    type: RuleType = RuleType.EMAIL


class RuleCreateRequest(BaseModel):
    pattern: str
    type: RuleType
    action: RuleAction


class UsernameRequest(BaseModel):
    username: str


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _require_user(store: RuleStore, user_id: str) -> None:
    if store.get_user(user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")


# --- Webhook ---
@router.post("/inbound")
async def inbound(request: Request, pipeline: InboundPipeline = Depends(get_pipeline)):
    try:
        form = await request.form()
        fields = {key: value for key, value in form.items() if isinstance(value, str)}
        result = await pipeline.handle_webhook(fields)
    except SignatureError:
        return _error(401, "Invalid signature")
    except RecipientNotFoundError:
        return _error(404, "Recipient not found")
    except ForwardError:
        return _error(500, "Internal error")
    except Exception:
        logger.exception("Inbound error")
        return _error(500, "Internal error")

    if result.status == LogStatus.BLOCKED:
        return {"message": "Email blocked"}
    return {"message": "Email forwarded"}


# --- Dashboard ---
# Plain def handlers run in the FastAPI threadpool
@router.post("/forward-blocked")
def forward_blocked(body: LogActionRequest, pipeline: InboundPipeline = Depends(get_pipeline)):
    try:
        _, forwarded = pipeline.reforward(body.user_id, body.log_id)
    except LogNotFoundError:
        return _error(404, "Log not found")
    except ForwardError:
        logger.exception("Forward error")
        return _error(500, "Internal error")

    if not forwarded:
        return {"message": "Email already forwarded"}
    return {"message": "Email forwarded successfully"}


@router.post("/whitelist")
def whitelist(body: WhitelistRequest, pipeline: InboundPipeline = Depends(get_pipeline)):
    try:
        rule, entry = pipeline.whitelist(body.user_id, body.log_id, body.type)
    except LogNotFoundError:
        return _error(404, "Log not found")
    except ValueError as e:
        return _error(400, str(e))
    return {"rule": rule.model_dump(mode="json"), "status": entry.status.value}


@router.get("/users/{user_id}/rules")
def list_rules(user_id: str, store: RuleStore = Depends(get_store)):
    _require_user(store, user_id)
    return [rule.model_dump(mode="json") for rule in store.get_rules_for_user(user_id, newest_first=True)]


@router.post("/users/{user_id}/rules", status_code=201)
def create_rule(user_id: str, body: RuleCreateRequest, store: RuleStore = Depends(get_store)):
    _require_user(store, user_id)
    try:
        rule = store.add_rule(user_id, body.pattern, body.type, body.action)
    except ValueError as e:
        return _error(400, str(e))
    return rule.model_dump(mode="json")


@router.delete("/users/{user_id}/rules/{rule_id}", status_code=204)
def delete_rule(user_id: str, rule_id: str, store: RuleStore = Depends(get_store)):
    if not store.delete_rule(user_id, rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    return Response(status_code=204)


@router.get("/users/{user_id}/logs")
def list_logs(
    user_id: str,
    q: str | None = None,
    status: LogStatus | None = None,
    limit: int = 100,
    activity: ActivityLog = Depends(get_activity),
):
    entries = activity.get_history(user_id, status=status, search=q, limit=limit)
    return [entry.model_dump(mode="json") for entry in entries]


@router.get("/users/{user_id}/stats")
def stats(user_id: str, activity: ActivityLog = Depends(get_activity)):
    return activity.get_stats(user_id)


@router.put("/users/{user_id}/username")
def set_username(user_id: str, body: UsernameRequest, store: RuleStore = Depends(get_store)):
    try:
        user = store.set_username(user_id, body.username)
    except KeyError:
        return _error(404, "User not found")
    except UsernameTakenError:
        return _error(409, "Supamail ID already taken")
    except ValueError as e:
        return _error(400, str(e))
    return user.model_dump(mode="json")


@router.get("/categories")
def categories(store: RuleStore = Depends(get_store), settings: Settings = Depends(get_settings)):
    return store.list_categories(settings.classifier.categories)


@router.get("/health")
def health():
    return {"status": "ok", "version": __version__}


def create_app(settings: Settings | None = None, pipeline: InboundPipeline | None = None) -> FastAPI:
    """Build the FastAPI app. Collaborators are created once, at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings or load_settings()
        app.state.pipeline = pipeline or InboundPipeline.from_settings(app.state.settings)
        logger.info(f"Supamail gateway ready for *@{app.state.pipeline.domain}")
        yield
        app.state.pipeline = None

    app = FastAPI(
        title="Supamail API",
        description="Inbound email gateway",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(router)

    return app


app = create_app()
