"""
License Service for Archive Manager
Device-bound licenses: issuing, renewal, revocation, activation and the cached validity check
"""
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from activation import ActivationCodec, expire_time_for, normalize_code
from audit_log import (
    log_operation, OP_LICENSE_CREATE, OP_LICENSE_RENEW, OP_LICENSE_DELETE, OP_LICENSE_ACTIVATE
)
from config import DEFAULT_LICENSE_NAME
from license_cache import LicenseStatusCache
from models import License, utcnow

logger = logging.getLogger(__name__)

MSG_EXPIRED = "系统授权已过期，请联系管理员续费"


class LicenseError(Exception):
    """License operation error. `message` is safe to show to the caller."""
    message = "授权操作失败"

    def __init__(self, message: Optional[str] = None):
        if message:
            self.message = message
        super().__init__(self.message)


class LicenseValidationError(LicenseError):
    message = "缺少必要参数"


class DuplicateDeviceError(LicenseError):
    message = "该设备已绑定授权"


class LicenseNotFoundError(LicenseError):
    message = "授权不存在"


class InvalidActivationError(LicenseError):
    # Deliberately uninformative: no hint about which check failed
    message = "激活失败"


class LicenseExpiredError(LicenseError):
    message = MSG_EXPIRED


class StorageError(LicenseError):
    message = "数据库操作失败"


@dataclass
class LicenseStatus:
    valid: bool
    expire_time: Optional[datetime] = None
    cached: bool = False


def normalize_device_code(device_code: Optional[str]) -> str:
    return (device_code or "").strip().upper()


def license_to_dict(lic: License, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    return {
        "id": lic.id,
        "name": lic.name,
        "deviceCode": lic.device_code,
        "authCode": lic.auth_code,
        "expireTime": lic.expire_time.isoformat() if lic.expire_time else None,
        "createdAt": lic.created_at.isoformat() if lic.created_at else None,
        "updatedAt": lic.updated_at.isoformat() if lic.updated_at else None,
        # Computed at read time, never stored
        "isActive": bool(lic.expire_time and lic.expire_time > now),
    }


class LicenseService:
    def __init__(self, codec: ActivationCodec, cache: LicenseStatusCache,
                 clock: Callable[[], datetime] = utcnow):
        self.codec = codec
        self.cache = cache
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _require_device_code(self, device_code: Optional[str]) -> str:
        device_code = normalize_device_code(device_code)
        if not device_code:
            raise LicenseValidationError("缺少设备码")
        return device_code

    def _require_days(self, days) -> int:
        if isinstance(days, bool) or not isinstance(days, int) or not self.codec.min_days <= days <= self.codec.max_days:
            raise LicenseValidationError(f"授权天数必须在 {self.codec.min_days} 到 {self.codec.max_days} 之间")
        return days

    def _get(self, db: Session, license_id: int) -> License:
        try:
            lic = db.query(License).filter(License.id == license_id).first()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to load license {license_id}: {e}")
            raise StorageError() from e
        if lic is None:
            raise LicenseNotFoundError()
        return lic

    # ---------------------------
    # Admin operations
    # ---------------------------
    def create_license(self, db: Session, device_code: str, duration_days: int, name: Optional[str] = None,
                       operator: Optional[str] = None, ip: Optional[str] = None) -> License:
        """
        Issue a license for a device.

        A device holds at most one license: creating a second one for the same
        device code is rejected with DuplicateDeviceError (renew it instead).
        """
        device_code = self._require_device_code(device_code)
        duration_days = self._require_days(duration_days)
        now = self.now()

        lic = License(
            name=(name or "").strip() or DEFAULT_LICENSE_NAME,
            device_code=device_code,
            auth_code=self.codec.issue(device_code, duration_days),
            expire_time=expire_time_for(duration_days, now),
            created_at=now,
            updated_at=now,
        )
        try:
            if db.query(License.id).filter(License.device_code == device_code).first() is not None:
                raise DuplicateDeviceError()
            db.add(lic)
            db.commit()
            db.refresh(lic)
        except IntegrityError as e:
            # Lost a race with a concurrent create for the same device
            db.rollback()
            logger.warning(f"License insert for {device_code} hit a unique constraint: {e.orig}")
            raise DuplicateDeviceError() from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to create license for {device_code}: {e}")
            raise StorageError() from e

        self.cache.invalidate(device_code)
        logger.info(f"License {lic.id} created for {device_code}, expires {lic.expire_time.isoformat()}")
        log_operation(db, operator, OP_LICENSE_CREATE, f"{device_code} ({duration_days} days)", ip)
        return lic

    def renew_license(self, db: Session, license_id: int, additional_days: int,
                      operator: Optional[str] = None, ip: Optional[str] = None) -> License:
        """Extend from the current expiry, not from now, so remaining validity is kept"""
        additional_days = self._require_days(additional_days)
        lic = self._get(db, license_id)

        lic.expire_time = lic.expire_time + timedelta(days=additional_days)
        lic.updated_at = self.now()
        try:
            db.commit()
            db.refresh(lic)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to renew license {license_id}: {e}")
            raise StorageError() from e

        self.cache.invalidate(lic.device_code)
        logger.info(f"License {lic.id} renewed by {additional_days} days, expires {lic.expire_time.isoformat()}")
        log_operation(db, operator, OP_LICENSE_RENEW, f"{lic.device_code} (+{additional_days} days)", ip)
        return lic

    def delete_license(self, db: Session, license_id: int,
                       operator: Optional[str] = None, ip: Optional[str] = None) -> dict:
        """Remove a license. Returns the deleted record as a dict."""
        lic = self._get(db, license_id)
        snapshot = license_to_dict(lic, self.now())
        try:
            db.delete(lic)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to delete license {license_id}: {e}")
            raise StorageError() from e

        self.cache.invalidate(snapshot["deviceCode"])
        logger.info(f"License {license_id} for {snapshot['deviceCode']} deleted")
        log_operation(db, operator, OP_LICENSE_DELETE, snapshot["deviceCode"], ip)
        return snapshot

    def list_licenses(self, db: Session) -> List[dict]:
        try:
            licenses = db.query(License).order_by(License.created_at.desc(), License.id.desc()).all()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to list licenses: {e}")
            raise StorageError() from e
        now = self.now()
        return [license_to_dict(lic, now) for lic in licenses]

    def get_license_by_device_code(self, db: Session, device_code: str) -> Optional[dict]:
        device_code = self._require_device_code(device_code)
        try:
            lic = db.query(License).filter(License.device_code == device_code).first()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to load license for {device_code}: {e}")
            raise StorageError() from e
        return license_to_dict(lic, self.now()) if lic else None

    # ---------------------------
    # Validation
    # ---------------------------
    def check_license(self, db: Session, device_code: Optional[str] = None) -> LicenseStatus:
        """
        Current validity for a device (or, without a device code, for the
        latest-expiring license). Served from the cache while the entry is
        younger than the TTL; a failed read raises StorageError and is never cached.
        """
        device_code = normalize_device_code(device_code) or None

        cached = self.cache.get(device_code)
        if cached is not None:
            return LicenseStatus(valid=cached.valid, expire_time=cached.expire_time, cached=True)

        try:
            query = db.query(License)
            if device_code:
                query = query.filter(License.device_code == device_code)
            lic = query.order_by(License.expire_time.desc()).first()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"License status query failed for {device_code or 'default'}: {e}")
            raise StorageError("检查授权状态失败") from e

        if lic is None:
            status = LicenseStatus(valid=False)
        else:
            status = LicenseStatus(valid=lic.expire_time > self.now(), expire_time=lic.expire_time)

        self.cache.set(status.valid, status.expire_time, device_code)
        return status

    def activate_license(self, db: Session, device_code: str, auth_code: str,
                         operator: Optional[str] = None, ip: Optional[str] = None) -> License:
        """
        End-user activation. Only verifies against a license an admin already
        issued for this device; it never creates or changes a license row.
        """
        device_code = self._require_device_code(device_code)
        if not normalize_code(auth_code):
            raise LicenseValidationError("缺少激活码")

        result = self.codec.verify(device_code, auth_code)
        if not result.valid:
            logger.warning(f"Activation rejected for {device_code}: code does not verify")
            raise InvalidActivationError()

        try:
            lic = db.query(License).filter(License.device_code == device_code).first()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to load license for activation of {device_code}: {e}")
            raise StorageError() from e

        if lic is None or not hmac.compare_digest(normalize_code(lic.auth_code), normalize_code(auth_code)):
            logger.warning(f"Activation rejected for {device_code}: no matching issued license")
            raise InvalidActivationError()

        if lic.expire_time <= self.now():
            raise LicenseExpiredError()

        self.cache.invalidate(device_code)
        logger.info(f"License {lic.id} activated on {device_code} ({result.duration_days} days issued)")
        log_operation(db, operator or device_code, OP_LICENSE_ACTIVATE, device_code, ip)
        return lic
