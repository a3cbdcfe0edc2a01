"""Operation log: who changed which license, from where"""
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import OperationLog

logger = logging.getLogger(__name__)

OP_LICENSE_CREATE = "license_create"
OP_LICENSE_RENEW = "license_renew"
OP_LICENSE_DELETE = "license_delete"
OP_LICENSE_ACTIVATE = "license_activate"


def log_operation(db: Session, operator: Optional[str], operation: str, target: str,
                  ip: Optional[str] = None) -> Optional[OperationLog]:
    """Append an operation log entry. A logging failure never fails the operation itself."""
    entry = OperationLog(
        operator=operator or "system",
        operation=operation,
        target=target[:500] if target else target,
        ip=ip,
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to write operation log ({operation} {target}): {e}")
        return None
    return entry


def query_operations(db: Session, operation: Optional[str] = None, operator: Optional[str] = None,
                     limit: int = 100, offset: int = 0) -> tuple[int, list]:
    query = db.query(OperationLog)
    if operation:
        query = query.filter(OperationLog.operation == operation)
    if operator:
        query = query.filter(OperationLog.operator == operator)

    total = query.count()
    entries = query.order_by(OperationLog.created_at.desc(), OperationLog.id.desc()).offset(offset).limit(limit).all()
    return total, entries


def operation_to_dict(entry: OperationLog) -> dict:
    return {
        "id": entry.id,
        "operator": entry.operator,
        "operation": entry.operation,
        "target": entry.target,
        "ip": entry.ip,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }
