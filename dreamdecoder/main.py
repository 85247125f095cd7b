import logging
import math
import os
import sys
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import psycopg2
from pydantic import BaseModel
from dotenv import load_dotenv
from jose import JWTError, jwt

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

try:
    from dreamdecoder import app_context
    from dreamdecoder.app.feature_gates import FeatureGateError
    from dreamdecoder.app.routes.billing import router as billing_router
    from dreamdecoder.app.routes.dream_chat import router as dream_chat_router
except ModuleNotFoundError as exc:
    if exc.name != "dreamdecoder":
        raise
    import app_context  # type: ignore[no-redef]
    from app.feature_gates import FeatureGateError  # type: ignore[no-redef]
    from app.routes.billing import router as billing_router  # type: ignore[no-redef]
    from app.routes.dream_chat import router as dream_chat_router  # type: ignore[no-redef]


load_dotenv()

logger = logging.getLogger("dreamdecoder")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "dreamdecoder"),
    user=os.getenv("DB_USER", "dream_user"),
    password=os.getenv("DB_PASSWORD", "dream_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET", "")
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:8081").split(",")
    if origin.strip()
]


def get_conn():
    return psycopg2.connect(**DB_CFG)


class AuthenticatedUser(BaseModel):
    id: str
    email: Optional[str] = None
    role: Optional[str] = None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_user_from_token(token: str) -> Optional[AuthenticatedUser]:
    if not SUPABASE_JWT_SECRET:
        logger.error("SUPABASE_JWT_SECRET is not configured; rejecting bearer token")
        return None
    try:
        payload = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
        )
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject:
        return None
    return AuthenticatedUser(id=str(subject), email=payload.get("email"), role=payload.get("role"))


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthenticatedUser:
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_token(token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


def get_optional_current_user(authorization: Optional[str] = Header(None)) -> Optional[AuthenticatedUser]:
    token = _bearer_token(authorization)
    if not token:
        return None
    return resolve_user_from_token(token)


app = FastAPI(title="Dream Decoder API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FeatureGateError)
async def handle_feature_gate_error(_request: Request, exc: FeatureGateError) -> JSONResponse:
    return exc.to_response()


app.include_router(billing_router)
app.include_router(dream_chat_router)

app_context.configure(
    get_conn=get_conn,
    get_current_user=get_current_user,
    get_optional_current_user=get_optional_current_user,
)


@app.get("/api/healthz")
def healthz() -> dict:
    return {"ok": True}
