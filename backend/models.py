"""Database models for Archive Manager"""
from datetime import datetime, timezone
from sqlalchemy import create_engine, Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import sessionmaker, declarative_base
from config import DATABASE_URL

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """User model for authentication and authorization"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="operator")  # admin, operator
    full_name = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True)
    must_change_password = Column(Boolean, default=False)
    failed_login_attempts = Column(Integer, default=0)
    locked_until = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    last_login = Column(DateTime, nullable=True)


class License(Base):
    """Binding of a device code to an activation code and an expiry"""
    __tablename__ = "licenses"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=True)
    # Uniqueness is enforced here so concurrent creates for one device race on the constraint
    device_code = Column(String(64), nullable=False, unique=True, index=True)
    auth_code = Column(String(64), nullable=False, unique=True)
    expire_time = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class OperationLog(Base):
    """Operation log (who did what, from where)"""
    __tablename__ = "operation_logs"

    id = Column(Integer, primary_key=True, index=True)
    operator = Column(String(100), nullable=False)
    operation = Column(String(50), nullable=False, index=True)  # license_create, license_renew, license_delete, license_activate
    target = Column(String(500), nullable=True)
    ip = Column(String(45), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


def init_db():
    """Initialize database tables"""
    if DATABASE_URL.startswith("sqlite:///"):
        import os
        db_dir = os.path.dirname(DATABASE_URL.replace("sqlite:///", "", 1))
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
    Base.metadata.create_all(bind=engine)


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
