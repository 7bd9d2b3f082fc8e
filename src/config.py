# src/config.py
import os

PG_HOST = os.getenv("POSTGRES_HOST", "postgres")
PG_DB   = os.getenv("POSTGRES_DB", "ward_rounds")
PG_USER = os.getenv("POSTGRES_USER", "user")
PG_PASS = os.getenv("POSTGRES_PASSWORD", "pass")
PG_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
PG_POOL_MAX = int(os.getenv("POSTGRES_POOL_MAX", "10"))

# Pause between committed rows; bounds the write rate of one import session
COMMIT_DELAY_MS = int(os.getenv("IMPORT_COMMIT_DELAY_MS", "100"))

DEFAULT_FACILITY = os.getenv("IMPORT_DEFAULT_FACILITY", "Posadas")

SOURCE_FETCH_TIMEOUT_S = float(os.getenv("SOURCE_FETCH_TIMEOUT_S", "15"))

# (timeout seconds, retries) per store operation
LOOKUP_TIMEOUT_S = float(os.getenv("STORE_LOOKUP_TIMEOUT_S", "5"))
LOOKUP_RETRIES = int(os.getenv("STORE_LOOKUP_RETRIES", "1"))
FETCH_TIMEOUT_S = float(os.getenv("STORE_FETCH_TIMEOUT_S", "8"))
FETCH_RETRIES = int(os.getenv("STORE_FETCH_RETRIES", "1"))
WRITE_TIMEOUT_S = float(os.getenv("STORE_WRITE_TIMEOUT_S", "10"))
WRITE_RETRIES = int(os.getenv("STORE_WRITE_RETRIES", "2"))
RETRY_BASE_DELAY_S = float(os.getenv("STORE_RETRY_BASE_DELAY_S", "1"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "0") == "1"
