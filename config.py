# config.py
import os
from dotenv import load_dotenv

load_dotenv()

# --- CONFIGURACIÓN DE KSeF ---
# URL base de la API por entorno
KSEF_API_URLS = {
    "test": "https://ksef-test.mf.gov.pl/api",
    "production": "https://ksef.mf.gov.pl/api",
}

KSEF_ENDPOINTS = {
    "session_status": "/online/Session/Status",
    "authorization_challenge": "/online/Session/AuthorizationChallenge",
    "init_token": "/online/Session/InitToken",
    "invoice_query": "/online/Invoice/Query",
    "session_close": "/online/Session/Close",
}

# Tipo de cabecera de sesión por entorno ('bearer' o 'session-token')
SESSION_HEADER_BY_ENVIRONMENT = {
    "test": "bearer",
    "production": "bearer",
}

# Tiempos máximos en segundos
REQUEST_TIMEOUT_SECONDS = 30
DOWNLOAD_TIMEOUT_SECONDS = 120
CONNECTION_TEST_TIMEOUT_SECONDS = 15

# Sondeo del estado de la consulta
QUERY_POLL_MAX_ATTEMPTS = 10
QUERY_POLL_INTERVAL_SECONDS = 2

# Una marca de descarga más antigua que esto se considera abandonada (worker caído).
# También es el visibility_timeout del broker en app/infrastructure/celery/worker.py.
FETCH_LOCK_TIMEOUT_SECONDS = 30 * 60

ALLOWED_FETCH_INTERVALS = [15, 30, 60, 120, 240, 480, 720, 1440]
DEFAULT_SUBJECT_TYPE = "subject1"

# --- API ---
# Orígenes permitidos por CORS, separados por comas
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if origin.strip()
]

# --- SECRETOS ---
# Clave AES-256 en hexadecimal (64 caracteres)
KSEF_ENCRYPTION_KEY = os.getenv("KSEF_ENCRYPTION_KEY")


def get_api_url(environment: str) -> str:
    try:
        return KSEF_API_URLS[environment]
    except KeyError:
        raise ValueError(f"Entorno KSeF desconocido: {environment}")
