"""Configuration settings for Archive Manager"""
import os
import secrets
import logging

_config_logger = logging.getLogger(__name__)

# Data directory (SQLite database, persisted secrets)
DATA_DIR = os.getenv("ARCHIVE_DATA_DIR", os.path.join(os.getcwd(), "data"))

LICENSE_SECRET_FILE = os.path.join(DATA_DIR, "license.secret")
JWT_SECRET_FILE = os.path.join(DATA_DIR, "jwt.secret")


def get_or_create_secret(env_name: str, secret_file: str) -> str:
    """Get a secret from the environment or its file, or create and persist a new one"""
    env_secret = os.environ.get(env_name)
    if env_secret:
        return env_secret

    try:
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                secret = f.read().strip()
                if secret:
                    return secret
    except OSError as e:
        _config_logger.warning(f"Could not read {secret_file}: {e}")

    new_secret = secrets.token_hex(32)
    try:
        os.makedirs(os.path.dirname(secret_file), exist_ok=True)
        with open(secret_file, 'w') as f:
            f.write(new_secret)
        os.chmod(secret_file, 0o600)
    except OSError as e:
        # Codes issued with an in-memory secret stop verifying after a restart
        _config_logger.error(f"[SECURITY] Could not persist {env_name} to {secret_file}: {e}")

    return new_secret


# Secret for activation code HMAC. Changing it invalidates every issued code.
LICENSE_SECRET_KEY = get_or_create_secret("LICENSE_SECRET_KEY", LICENSE_SECRET_FILE)

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(DATA_DIR, 'archive_manager.db')}")

# License status cache lifetime in seconds (5 minutes)
LICENSE_CACHE_TTL = int(os.getenv("LICENSE_CACHE_TTL", 300))

# Accepted license duration range in days
LICENSE_MIN_DAYS = int(os.getenv("LICENSE_MIN_DAYS", 1))
LICENSE_MAX_DAYS = int(os.getenv("LICENSE_MAX_DAYS", 3650))

# Timeout for read-only system utilities used by the device probes (seconds)
PROBE_TIMEOUT = float(os.getenv("PROBE_TIMEOUT", 0.5))

# Roles allowed to manage licenses
ADMIN_ROLES = ("admin", "管理员")

DEFAULT_LICENSE_NAME = "未命名授权"

# Reverse proxies whose X-Forwarded-For is honoured (comma-separated addresses).
# Empty: the header is ignored and the peer address is recorded.
TRUSTED_PROXIES = tuple(p.strip() for p in os.getenv("TRUSTED_PROXIES", "").split(",") if p.strip())
