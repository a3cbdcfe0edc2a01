"""FastAPI Main Application for Archive Manager (license gate and license administration)"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from activation import ActivationCodec
from audit_log import query_operations, operation_to_dict
from auth import (
    authenticate_user, create_access_token, create_default_admin, token_claims,
    is_admin, require_auth, require_admin
)
from config import LICENSE_SECRET_KEY, LICENSE_CACHE_TTL, TRUSTED_PROXIES
from device_fingerprint import DeviceIdentityCollector, device_fingerprint_response
from license_cache import LicenseStatusCache
from license_service import (
    LicenseService, LicenseError, LicenseValidationError, InvalidActivationError,
    DuplicateDeviceError, LicenseNotFoundError, LicenseExpiredError, StorageError,
    MSG_EXPIRED, license_to_dict
)
from models import init_db, get_db, SessionLocal, User
from schemas import LicenseCreate, LicenseRenew, LicenseActivate, UserLogin, UserResponse, LoginResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Built once per process; routes reach them through the dependencies below
license_cache = LicenseStatusCache(ttl=LICENSE_CACHE_TTL)
license_service = LicenseService(ActivationCodec(LICENSE_SECRET_KEY), license_cache)
device_collector = DeviceIdentityCollector()

ERROR_STATUS = {
    LicenseValidationError: 400,
    InvalidActivationError: 400,
    LicenseExpiredError: 403,
    LicenseNotFoundError: 404,
    DuplicateDeviceError: 409,
    StorageError: 500,
}


def get_license_service() -> LicenseService:
    return license_service


def get_device_collector() -> DeviceIdentityCollector:
    return device_collector


def client_ip(request: Request) -> Optional[str]:
    """
    Client address for the operation log.

    X-Forwarded-For is only honoured when the peer is a trusted proxy; the
    header is walked from the right, skipping trusted hops, so entries a
    client prepended itself are never reached.
    """
    peer = request.client.host if request.client else None
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or peer not in TRUSTED_PROXIES:
        return peer

    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in TRUSTED_PROXIES:
            return hop
    return hops[0] if hops else peer


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


def license_error_response(error: LicenseError, storage_message: str, **extra) -> JSONResponse:
    """Translate a service error. Storage details stay in the server log."""
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(error, cls)), 500)
    message = storage_message if isinstance(error, StorageError) else error.message
    return error_response(status_code, message, **extra)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    init_db()
    logger.info("Database initialized")

    db = SessionLocal()
    try:
        create_default_admin(db)
    finally:
        db.close()

    yield

    license_cache.clear()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Archive Manager",
    description="Document archive management - license activation service",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware - set CORS_ORIGINS (comma-separated) in production
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "").strip()
if CORS_ORIGINS:
    allowed_origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
else:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8000",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
)


# ============ Health Check ============

@app.get("/api/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


# ============ Device Fingerprint ============

@app.get("/api/device-fingerprint")
async def get_device_fingerprint(collector: DeviceIdentityCollector = Depends(get_device_collector)):
    """Hardware device code of this server. Public: shown on the activation screen before login."""
    return await device_fingerprint_response(collector)


# ============ Authentication Endpoints ============

@app.post("/api/auth/login")
def login(
    credentials: UserLogin,
    db: Session = Depends(get_db),
    service: LicenseService = Depends(get_license_service)
):
    """Login and get access token. Non-admin users also need a valid license."""
    user = authenticate_user(db, credentials.username, credentials.password)
    if not user:
        raise HTTPException(status_code=401, detail="用户名或密码错误")

    # Admins skip the gate so they can always reach license management and renew
    if not is_admin(user):
        try:
            status = service.check_license(db, credentials.device_code)
        except StorageError:
            return error_response(503, "检查授权状态失败")
        if not status.valid:
            logger.info(f"Login refused for {user.username}: license invalid for {credentials.device_code or 'default'}")
            return error_response(403, MSG_EXPIRED, remember=credentials.remember)

    token = create_access_token(token_claims(user))
    return LoginResponse(
        token=token,
        user=UserResponse.model_validate(user),
        must_change_password=user.must_change_password or False,
        remember=credentials.remember,
    )


@app.get("/api/auth/me", response_model=UserResponse)
def get_current_user_info(user: User = Depends(require_auth)):
    """Get current logged in user info"""
    return UserResponse.model_validate(user)


# ============ License Gate ============

@app.get("/api/license/status")
def check_license_status(
    device_code: Optional[str] = Query(None, max_length=64),
    db: Session = Depends(get_db),
    service: LicenseService = Depends(get_license_service)
):
    """Current license validity for a device (cached for the TTL)"""
    try:
        status = service.check_license(db, device_code)
    except StorageError:
        return error_response(503, "检查授权状态失败", valid=False)
    return {"success": True, "valid": status.valid, "expireTime": isoformat(status.expire_time)}


@app.post("/api/license/activate")
def activate_license(
    body: LicenseActivate,
    request: Request,
    db: Session = Depends(get_db),
    service: LicenseService = Depends(get_license_service)
):
    """End-user activation against a license issued by an admin"""
    try:
        lic = service.activate_license(db, body.device_code, body.auth_code, ip=client_ip(request))
    except LicenseError as e:
        return license_error_response(e, "激活授权失败")
    return {"success": True, "expireTime": isoformat(lic.expire_time)}


# ============ License Administration ============

@app.get("/api/licenses")
def get_all_licenses(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    service: LicenseService = Depends(get_license_service)
):
    """List all licenses with their computed active flag"""
    try:
        licenses = service.list_licenses(db)
    except LicenseError as e:
        return license_error_response(e, "获取授权列表失败", licenses=[])
    return {"success": True, "licenses": licenses}


@app.post("/api/licenses")
def create_license(
    body: LicenseCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    service: LicenseService = Depends(get_license_service)
):
    """Issue a license (and its activation code) for a device"""
    try:
        lic = service.create_license(
            db, body.device_code, body.duration_days, body.name,
            operator=current_user.username, ip=client_ip(request)
        )
    except LicenseError as e:
        return license_error_response(e, "创建授权失败")
    return {"success": True, "license": license_to_dict(lic, service.now())}


@app.get("/api/licenses/device/{device_code}")
def get_license_by_device_code(
    device_code: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    service: LicenseService = Depends(get_license_service)
):
    try:
        lic = service.get_license_by_device_code(db, device_code)
    except LicenseError as e:
        return license_error_response(e, "获取授权失败")
    if lic is None:
        return error_response(404, LicenseNotFoundError.message)
    return {"success": True, "license": lic}


@app.post("/api/licenses/{license_id}/renew")
def renew_license(
    license_id: int,
    body: LicenseRenew,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    service: LicenseService = Depends(get_license_service)
):
    """Extend a license from its current expiry"""
    try:
        lic = service.renew_license(
            db, license_id, body.additional_days,
            operator=current_user.username, ip=client_ip(request)
        )
    except LicenseError as e:
        return license_error_response(e, "续期授权失败")
    return {"success": True, "license": license_to_dict(lic, service.now())}


@app.delete("/api/licenses/{license_id}")
def delete_license(
    license_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    service: LicenseService = Depends(get_license_service)
):
    try:
        deleted = service.delete_license(db, license_id, operator=current_user.username, ip=client_ip(request))
    except LicenseError as e:
        return license_error_response(e, "删除授权失败")
    return {"success": True, "license": deleted}


@app.post("/api/license/cache/clear")
def clear_license_cache(
    current_user: User = Depends(require_admin),
    service: LicenseService = Depends(get_license_service)
):
    service.cache.clear()
    logger.info(f"License status cache cleared by {current_user.username}")
    return {"success": True}


# ============ Operation Log ============

@app.get("/api/logs")
def get_operation_logs(
    operation: Optional[str] = None,
    operator: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin)
):
    """Get operation history"""
    try:
        total, entries = query_operations(db, operation=operation, operator=operator, limit=limit, offset=offset)
    except SQLAlchemyError as e:
        logger.error(f"Failed to query operation logs: {e}")
        return error_response(500, "获取日志失败", logs=[])
    return {"success": True, "total": total, "logs": [operation_to_dict(entry) for entry in entries]}
