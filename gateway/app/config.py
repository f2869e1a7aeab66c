import os


def _get_bool_env(name: str, default: bool) -> bool:
	raw = os.environ.get(name)
	if raw is None:
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
	raw = os.environ.get(name)
	if raw is None:
		return default
	try:
		return int(raw)
	except ValueError:
		return default


def _get_list_env(name: str, default: str) -> tuple[str, ...]:
	return tuple(part.strip() for part in os.environ.get(name, default).split(",") if part.strip())


# Bearer token verification
APP_JWT_SECRET = os.environ.get("APP_JWT_SECRET") or os.environ.get("JWT_SECRET")
APP_JWT_ALGORITHM = os.environ.get("APP_JWT_ALGORITHM", "HS256")
# Issuer/audience are only enforced when configured
APP_JWT_ISSUER = os.environ.get("APP_JWT_ISSUER")
APP_JWT_AUDIENCE = os.environ.get("APP_JWT_AUDIENCE")

# Sessions
SESSION_HEADER = os.environ.get("SESSION_HEADER", "x-session-id")
SESSION_TTL_SECONDS = _get_int_env("SESSION_TTL_SECONDS", 60 * 60 * 24 * 30)
ENFORCE_ADMIN_SESSIONS = _get_bool_env("ENFORCE_ADMIN_SESSIONS", False)

# Identity cache
IDENTITY_CACHE_TTL_SECONDS = _get_int_env("IDENTITY_CACHE_TTL_SECONDS", 60 * 30)
CACHE_REDIS_URL = os.environ.get("CACHE_REDIS_URL") or os.environ.get("REDIS_URL")
CACHE_NAMESPACE = os.environ.get("CACHE_NAMESPACE")

# Relational store
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./gateway.db")
DATABASE_ECHO = _get_bool_env("DATABASE_ECHO", False)

# Rate limiting
RATE_LIMIT_BACKEND = os.environ.get("RATE_LIMIT_BACKEND", "sql").strip().lower()
RATE_LIMIT_REDIS_URL = os.environ.get("RATE_LIMIT_REDIS_URL")
RATE_LIMIT_CLEANUP_INTERVAL_SECONDS = _get_int_env("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", 60 * 60)
RATE_LIMIT_API_MAX_REQUESTS = _get_int_env("RATE_LIMIT_API_MAX_REQUESTS", 100)
RATE_LIMIT_API_MAX_PER_DEVICE = _get_int_env("RATE_LIMIT_API_MAX_PER_DEVICE", 50)
RATE_LIMIT_API_MAX_PER_USER = _get_int_env("RATE_LIMIT_API_MAX_PER_USER", 300)
TRUST_PROXY_HEADERS = _get_bool_env("TRUST_PROXY_HEADERS", True)

# HTTP surface
CORS_ALLOW_ORIGINS = _get_list_env("CORS_ALLOW_ORIGINS", "http://localhost:3000")

# Observability configuration
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
ENABLE_CLOUD_LOGGING = _get_bool_env("ENABLE_CLOUD_LOGGING", False)
CLOUD_LOGGING_LOG_NAME = os.environ.get("CLOUD_LOGGING_LOG_NAME", "admission-gateway")
CLOUD_LOGGING_EXCLUDED_LOGGERS = _get_list_env("CLOUD_LOGGING_EXCLUDED_LOGGERS", "httpx")

ENABLE_PROMETHEUS_METRICS = _get_bool_env("ENABLE_PROMETHEUS_METRICS", False)
PROMETHEUS_METRICS_NAMESPACE = os.environ.get("PROMETHEUS_METRICS_NAMESPACE", "gateway")
PROMETHEUS_METRICS_SUBSYSTEM = os.environ.get("PROMETHEUS_METRICS_SUBSYSTEM", "admission")
