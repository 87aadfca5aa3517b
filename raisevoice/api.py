# RaiseVoice grievance workflow API
# FastAPI + MongoDB; identity tokens are issued by the external auth provider

import asyncio
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import ValidationError as SchemaError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .classifier import PriorityClassifier
from .config import (ADMIN_POOL, ALLOWED_ORIGINS, JWT_ALGORITHM, JWT_EXPIRE_HOURS, JWT_SECRET,
                     LOG_LEVEL, load_priority_keywords)
from .engine import GrievanceEngine
from .errors import (AuthorizationError, DuplicateRequest, EngineError, InsufficientCredits,
                     NotFound, PersistenceError, ValidationError)
from .gateway import MongoGateway
from .models import (CommentCreate, CreditApproval, CreditGrant, CreditRequest,
                     CreditRequestCreate, Grievance, GrievanceCreate, GrievanceStatus, Identity,
                     ModerationAction, Notification, PriorityChange, PriorityDetectRequest,
                     PriorityDetectResponse, RemovalRequest, ResubmitResponse, StatusChange, User)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

if not JWT_SECRET or len(JWT_SECRET) < 32:
    raise RuntimeError(
        "FATAL: JWT_SECRET must be set in the environment and be at least 32 characters. "
        "It must match the secret the identity provider signs tokens with."
    )

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="RaiseVoice Grievance Workflow API")
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(CORSMiddleware, allow_origins=ALLOWED_ORIGINS, allow_credentials=True,
                   allow_methods=["*"], allow_headers=["*"])

engine: Optional[GrievanceEngine] = None
executor = ThreadPoolExecutor(max_workers=10)

# ---------------------------------------------------------------------------
# Engine errors -> HTTP
# ---------------------------------------------------------------------------
ERROR_STATUS = {
    NotFound: 404,
    ValidationError: 400,
    InsufficientCredits: 400,
    DuplicateRequest: 409,
    AuthorizationError: 403,
    PersistenceError: 503,
}

async def engine_error_handler(request: Request, exc: EngineError):
    status_code = next((ERROR_STATUS[c] for c in type(exc).__mro__ if c in ERROR_STATUS), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code,
                        content={"detail": str(exc), "error": type(exc).__name__})

app.add_exception_handler(EngineError, engine_error_handler)

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    global engine
    gateway = MongoGateway.connect()
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, gateway.ensure_indexes)
    engine = GrievanceEngine(gateway, PriorityClassifier(load_priority_keywords()))
    logger.info("Workflow engine ready (%d urgent / %d high keywords)",
                len(engine.classifier.tiers["urgent"]), len(engine.classifier.tiers["high"]))
    yield
    gateway.close()

app.router.lifespan_context = lifespan

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
async def get_engine() -> GrievanceEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return engine

async def run(fn, *args, **kwargs):
    """Run a blocking engine call on the worker pool."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(executor, partial(fn, *args, **kwargs))

# ---------------------------------------------------------------------------
# Auth Helpers
# ---------------------------------------------------------------------------
def create_access_token(identity: Identity, expires_hours: int = JWT_EXPIRE_HOURS) -> str:
    """Mint a token the way the identity provider does (seed scripts and tests)."""
    to_encode = {"sub": identity.id, "name": identity.name, "email": identity.email,
                 "is_admin": identity.is_admin,
                 "exp": datetime.now(timezone.utc) + timedelta(hours=expires_hours)}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)

async def get_current_user(token: Optional[str] = Depends(oauth2_scheme),
                           eng: GrievanceEngine = Depends(get_engine)) -> User:
    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token")
        identity = Identity(id=user_id, name=payload.get("name") or "",
                            email=payload.get("email") or "",
                            is_admin=bool(payload.get("is_admin")))
    except (JWTError, SchemaError):
        raise HTTPException(status_code=401, detail="Invalid token")
    # Blocked users may still sign in and read; the engine refuses their writes
    return await run(eng.users.ensure, identity)

async def get_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user

_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

def validate_key(value: str, param_name: str = "id") -> str:
    """Path parameters become store keys; reject anything that could escape its collection."""
    if not isinstance(value, str) or not _KEY_RE.match(value):
        raise HTTPException(status_code=400, detail=f"Invalid {param_name} format")
    return value

async def load_visible_grievance(grievance_id: str, user: User,
                                 eng: GrievanceEngine) -> Grievance:
    grievance = await run(eng.lifecycle.get, validate_key(grievance_id, "grievance_id"))
    if not user.is_admin and grievance.submitter_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied")
    return grievance

# ---------------------------------------------------------------------------
# ACCOUNT ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/me", response_model=User)
async def get_me(user: User = Depends(get_current_user)):
    return user

@app.post("/me/credits/replenish", response_model=User)
async def replenish_credits(user: User = Depends(get_current_user),
                            eng: GrievanceEngine = Depends(get_engine)):
    credits = await run(eng.ledger.replenish, user)
    if credits != user.grievance_credits:
        logger.info("User %s credits replenished to %d", user.id, credits)
    return await run(eng.users.get, user.id)

# ---------------------------------------------------------------------------
# GRIEVANCE ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/priority/detect", response_model=PriorityDetectResponse)
@limiter.limit("60/minute")
async def detect_priority(request: Request, body: PriorityDetectRequest,
                          eng: GrievanceEngine = Depends(get_engine)):
    detection = eng.classifier.detect_grievance(body.title, body.description)
    return PriorityDetectResponse(priority=detection.priority,
                                  matched_terms=detection.matched_terms)

@app.post("/grievances", response_model=Grievance)
@limiter.limit("5/minute")
async def create_grievance(request: Request, data: GrievanceCreate,
                           user: User = Depends(get_current_user),
                           eng: GrievanceEngine = Depends(get_engine)):
    return await run(eng.submit, user, data.title, data.description, data.attachments)

@app.get("/grievances", response_model=List[Grievance])
async def list_grievances(status: Optional[GrievanceStatus] = None,
                          limit: int = Query(50, ge=1, le=200), skip: int = Query(0, ge=0),
                          user: User = Depends(get_current_user),
                          eng: GrievanceEngine = Depends(get_engine)):
    if user.is_admin:
        grievances = await run(eng.lifecycle.list_by_status, status) if status \
            else await run(eng.lifecycle.list_all)
    else:
        grievances = await run(eng.lifecycle.list_for, user.id)
        if status:
            grievances = [g for g in grievances if g.status == status]
    return grievances[skip:skip + limit]

@app.get("/grievances/stale", response_model=List[Grievance])
async def list_stale_grievances(user: User = Depends(get_current_user),
                                eng: GrievanceEngine = Depends(get_engine)):
    return await run(eng.lifecycle.stale_pending, user.id)

@app.get("/grievances/{grievance_id}", response_model=Grievance)
async def get_grievance(grievance_id: str, user: User = Depends(get_current_user),
                        eng: GrievanceEngine = Depends(get_engine)):
    return await load_visible_grievance(grievance_id, user, eng)

@app.put("/grievances/{grievance_id}/start", response_model=Grievance)
async def start_processing(grievance_id: str, body: StatusChange,
                           admin: User = Depends(get_admin),
                           eng: GrievanceEngine = Depends(get_engine)):
    grievance_id = validate_key(grievance_id, "grievance_id")
    return await run(eng.lifecycle.start_processing, grievance_id, admin, body.comment)

@app.put("/grievances/{grievance_id}/resolve", response_model=Grievance)
async def resolve_grievance(grievance_id: str, body: StatusChange,
                            admin: User = Depends(get_admin),
                            eng: GrievanceEngine = Depends(get_engine)):
    grievance_id = validate_key(grievance_id, "grievance_id")
    return await run(eng.lifecycle.resolve, grievance_id, admin, body.comment)

@app.put("/grievances/{grievance_id}/assign", response_model=Grievance)
async def assign_grievance(grievance_id: str, assignee_id: Optional[str] = None,
                           admin: User = Depends(get_admin),
                           eng: GrievanceEngine = Depends(get_engine)):
    grievance_id = validate_key(grievance_id, "grievance_id")
    if assignee_id is not None:
        assignee_id = validate_key(assignee_id, "assignee_id")
    return await run(eng.lifecycle.assign, grievance_id, admin, assignee_id)

@app.put("/grievances/{grievance_id}/priority", response_model=Grievance)
async def escalate_priority(grievance_id: str, body: PriorityChange,
                            admin: User = Depends(get_admin),
                            eng: GrievanceEngine = Depends(get_engine)):
    grievance_id = validate_key(grievance_id, "grievance_id")
    return await run(eng.lifecycle.escalate, grievance_id, admin, body.priority)

@app.post("/grievances/{grievance_id}/comments", response_model=Grievance)
async def add_comment(grievance_id: str, body: CommentCreate,
                      user: User = Depends(get_current_user),
                      eng: GrievanceEngine = Depends(get_engine)):
    grievance_id = validate_key(grievance_id, "grievance_id")
    return await run(eng.lifecycle.add_comment, grievance_id, user, body.text)

@app.post("/grievances/{grievance_id}/resubmit", response_model=ResubmitResponse)
async def resubmit_grievance(grievance_id: str, user: User = Depends(get_current_user),
                             eng: GrievanceEngine = Depends(get_engine)):
    grievance = await load_visible_grievance(grievance_id, user, eng)
    resubmitted = await run(eng.lifecycle.resubmit, grievance.id, user)
    return ResubmitResponse(resubmitted=resubmitted,
                            grievance=await run(eng.lifecycle.get, grievance.id))

@app.delete("/grievances/{grievance_id}")
async def remove_grievance(grievance_id: str, body: RemovalRequest,
                           admin: User = Depends(get_admin),
                           eng: GrievanceEngine = Depends(get_engine)):
    grievance_id = validate_key(grievance_id, "grievance_id")
    removed = await run(eng.lifecycle.remove, grievance_id, admin, body.reason)
    return {"detail": f"Grievance '{removed.title}' removed"}

# ---------------------------------------------------------------------------
# CREDIT ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/credits/requests", response_model=List[CreditRequest])
async def list_credit_requests(user: User = Depends(get_current_user),
                               eng: GrievanceEngine = Depends(get_engine)):
    if user.is_admin:
        return await run(eng.ledger.pending_requests)
    return await run(eng.ledger.requests_for, user.id)

@app.post("/credits/requests", response_model=CreditRequest)
@limiter.limit("3/minute")
async def request_credits(request: Request, body: CreditRequestCreate,
                          user: User = Depends(get_current_user),
                          eng: GrievanceEngine = Depends(get_engine)):
    return await run(eng.ledger.request_more, user, body.reason)

@app.put("/credits/requests/{request_id}/approve", response_model=CreditRequest)
async def approve_credit_request(request_id: str, body: CreditApproval,
                                 admin: User = Depends(get_admin),
                                 eng: GrievanceEngine = Depends(get_engine)):
    request_id = validate_key(request_id, "request_id")
    return await run(eng.ledger.approve, request_id, body.granted_credits, admin)

@app.put("/credits/requests/{request_id}/reject", response_model=CreditRequest)
async def reject_credit_request(request_id: str, admin: User = Depends(get_admin),
                                eng: GrievanceEngine = Depends(get_engine)):
    request_id = validate_key(request_id, "request_id")
    return await run(eng.ledger.reject, request_id, admin)

# ---------------------------------------------------------------------------
# ADMIN USER MANAGEMENT ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/admin/users", response_model=List[User])
async def admin_list_users(admin: User = Depends(get_admin),
                           eng: GrievanceEngine = Depends(get_engine)):
    return await run(eng.users.list_users)

@app.post("/admin/users/{user_id}/credits", response_model=User)
async def admin_grant_credits(user_id: str, body: CreditGrant,
                              admin: User = Depends(get_admin),
                              eng: GrievanceEngine = Depends(get_engine)):
    user_id = validate_key(user_id, "user_id")
    await run(eng.ledger.grant_direct, user_id, body.amount, admin)
    return await run(eng.users.get, user_id)

@app.post("/admin/users/{user_id}/warn", response_model=User)
async def admin_warn_user(user_id: str, body: ModerationAction,
                          admin: User = Depends(get_admin),
                          eng: GrievanceEngine = Depends(get_engine)):
    return await run(eng.moderation.warn, validate_key(user_id, "user_id"), body.reason, admin)

@app.post("/admin/users/{user_id}/block", response_model=User)
async def admin_block_user(user_id: str, body: ModerationAction,
                           admin: User = Depends(get_admin),
                           eng: GrievanceEngine = Depends(get_engine)):
    return await run(eng.moderation.block, validate_key(user_id, "user_id"), body.reason, admin)

@app.post("/admin/users/{user_id}/unblock", response_model=User)
async def admin_unblock_user(user_id: str, admin: User = Depends(get_admin),
                             eng: GrievanceEngine = Depends(get_engine)):
    return await run(eng.moderation.unblock, validate_key(user_id, "user_id"), admin)

# ---------------------------------------------------------------------------
# NOTIFICATION ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/notifications", response_model=List[Notification])
async def list_notifications(unread_only: bool = False,
                             user: User = Depends(get_current_user),
                             eng: GrievanceEngine = Depends(get_engine)):
    return await run(eng.notifications.list_for, user.id, unread_only)

@app.get("/admin/notifications", response_model=List[Notification])
async def list_admin_notifications(unread_only: bool = False,
                                   admin: User = Depends(get_admin),
                                   eng: GrievanceEngine = Depends(get_engine)):
    return await run(eng.notifications.list_for, ADMIN_POOL, unread_only)

@app.put("/notifications/{notification_id}/read", response_model=Notification)
async def mark_notification_read(notification_id: str,
                                 user: User = Depends(get_current_user),
                                 eng: GrievanceEngine = Depends(get_engine)):
    notification_id = validate_key(notification_id, "notification_id")
    return await run(eng.notifications.mark_read, notification_id, user.id, user.is_admin)

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy", "system": "RaiseVoice Grievance Workflow",
            "timestamp": datetime.now(timezone.utc)}

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
