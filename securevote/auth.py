from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from passlib.context import CryptContext
from jose import jwt
from jose.exceptions import JWTError
from datetime import datetime, timedelta, timezone
import logging

from .models import AuditLog
from .schemas import TokenRequest, TokenResponse, AdminLoginRequest, AccessTokenResponse


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# PBKDF2-SHA256 avoids bcrypt's 72-byte password limit
pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
    pbkdf2_sha256__rounds=310000,
)

ALGORITHM = "HS256"
ADMIN_ROLE = "admin"


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, secret_key: str, expires_delta: timedelta):
    to_encode = data.copy()
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def require_admin(request: Request) -> str:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token", headers={"WWW-Authenticate": "Bearer"}
    )
    authorization = request.headers.get("authorization")
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Token required", headers={"WWW-Authenticate": "Bearer"}
        )
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, request.app.state.jwt_secret, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    username = payload.get("sub")
    if username is None:
        raise credentials_exception
    if payload.get("role") != ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Role not authorized")
    return username


@router.post("/token", response_model=TokenResponse)
def issue_token(req: TokenRequest, request: Request, db: Session = Depends(get_db)):
    token = request.app.state.tokens.issue_or_fetch(db, req.voter_id)
    return TokenResponse(token=token)


@router.post("/admin/login", response_model=AccessTokenResponse)
def admin_login(req: AdminLoginRequest, request: Request, db: Session = Depends(get_db)):
    settings = request.app.state.settings
    if req.username != settings.admin_username or not verify_password(req.password, request.app.state.admin_password_hash):
        logger.warning("Failed admin login for %r from %s", req.username, client_ip(request))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    token = create_access_token(
        {"sub": req.username, "role": ADMIN_ROLE},
        request.app.state.jwt_secret,
        timedelta(minutes=settings.access_token_expire_minutes),
    )
    db.add(AuditLog(actor=f"admin:{req.username}", action="login", ip=client_ip(request)))
    db.commit()
    return AccessTokenResponse(access_token=token)
