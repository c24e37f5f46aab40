import os


def _int_env(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except Exception:
        return default


def _str_env(name: str, default: str) -> str:
    return str(os.getenv(name, default)).strip()


DATABASE_URL = _str_env("STORM_DATABASE_URL", "sqlite:///./storm/data/storm.db")
STORM_API_PORT = _int_env("STORM_API_PORT", 8010)
STORM_BIND_HOST = _str_env("STORM_BIND_HOST", "0.0.0.0")
PRIMARY_ROOT = _str_env("STORM_PRIMARY_ROOT", "./primary_storage")
REMOTE_TIMEOUT_SECONDS = _int_env("STORM_REMOTE_TIMEOUT_SECONDS", 10)
CALLBACK_TOKEN = _str_env("STORM_CALLBACK_TOKEN", "")
RECONCILE_INTERVAL_SECONDS = _int_env("STORM_RECONCILE_INTERVAL_SECONDS", 300)
LOG_LEVEL = _str_env("STORM_LOG_LEVEL", "INFO").upper()
LOG_FILE = _str_env("STORM_LOG_FILE", "")
