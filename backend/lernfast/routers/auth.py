from datetime import datetime, timedelta, timezone
from typing import Optional
import logging
import uuid

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from ..settings import settings
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import AuthUser, AuthSession

router = APIRouter(prefix="/api/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")

UNAUTHORIZED = "Nicht autorisiert. Bitte melde dich an."


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	id: str
	email: str
	name: str


def _bcrypt_safe(password: str) -> str:
	# bcrypt only looks at the first 72 bytes
	password_bytes = password.encode('utf-8')
	if len(password_bytes) > 72:
		password_bytes = password_bytes[:72]
	return password_bytes.decode('utf-8', errors='ignore')


def hash_password(password: str) -> str:
	return pwd_context.hash(_bcrypt_safe(password))


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(_bcrypt_safe(plain_password), hashed_password)


def ensure_seed_user(db: Session) -> Optional[AuthUser]:
	"""Create the development user from SEED_EMAIL/SEED_PASSWORD if missing."""
	email = (settings.seed_email or "").strip().lower()
	password = settings.seed_password_plain
	if not email or not password:
		return None
	row = db.query(AuthUser).filter(AuthUser.email == email).first()
	if row is None:
		row = AuthUser(email=email, name=email.split("@")[0], password_hash=hash_password(password))
		db.add(row)
		db.commit()
		logger.info("Seed user %s created", email)
	return row


def authenticate_user(db: Session, email: str, password: str) -> Optional[AuthUser]:
	user_row = db.query(AuthUser).filter(AuthUser.email == email.strip().lower()).first()
	if user_row and verify_password(password, user_row.password_hash):
		return user_row
	return None


def _resolve_expiry(expires_delta: Optional[timedelta]) -> datetime:
	delta = expires_delta
	if delta is None:
		minutes = settings.access_token_expire_minutes
		delta = timedelta(minutes=minutes) if minutes > 0 else timedelta(days=30)
	now = datetime.now(timezone.utc)
	try:
		return now + delta
	except OverflowError:
		return datetime.max.replace(tzinfo=timezone.utc)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	to_encode.update({"exp": _resolve_expiry(expires_delta)})
	return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def _decode(token: str) -> dict:
	credentials_exception = HTTPException(status_code=401, detail=UNAUTHORIZED)
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		raise credentials_exception
	if payload.get("sub") is None or payload.get("jti") is None:
		raise credentials_exception
	return payload


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="E-Mail oder Passwort ist falsch.")
	session_id = uuid.uuid4().hex
	access_token = create_access_token({"sub": user.id, "jti": session_id})
	db.add(AuthSession(session_id=session_id, user_id=user.id))
	db.commit()
	logger.info("User %s logged in", user.id)
	return Token(access_token=access_token)


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> AuthUser:
	payload = _decode(token)
	credentials_exception = HTTPException(status_code=401, detail=UNAUTHORIZED)
	# Revoked sessions (logout, cleanup) invalidate otherwise valid tokens
	row = db.get(AuthSession, payload["jti"])
	if not row or row.user_id != payload["sub"]:
		raise credentials_exception
	user = db.get(AuthUser, payload["sub"])
	if user is None:
		raise credentials_exception
	row.last_activity_at = datetime.utcnow()
	db.commit()
	return user


@router.get("/me", response_model=User)
async def me(user: AuthUser = Depends(get_current_user)):
	return User(id=user.id, email=user.email, name=user.name)


@router.post("/logout")
async def logout(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
	payload = _decode(token)
	row = db.get(AuthSession, payload["jti"])
	if row is not None:
		db.delete(row)
		db.commit()
	return {"success": True}


class RegisterRequest(BaseModel):
	email: str
	password: str
	name: str


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	email = (req.email or "").strip().lower()
	password = req.password or ""
	name = (req.name or "").strip()
	if not email or "@" not in email:
		raise HTTPException(status_code=400, detail="Bitte gib eine gültige E-Mail-Adresse ein.")
	if len(password) < 8:
		raise HTTPException(status_code=400, detail="Das Passwort muss mindestens 8 Zeichen lang sein.")
	if len(name) < 2 or len(name) > 100:
		raise HTTPException(status_code=400, detail="Der Name muss zwischen 2 und 100 Zeichen lang sein.")
	existing = db.query(AuthUser).filter(AuthUser.email == email).first()
	if existing:
		raise HTTPException(status_code=409, detail="Diese E-Mail-Adresse ist bereits registriert.")
	row = AuthUser(email=email, name=name, password_hash=hash_password(password))
	db.add(row)
	db.commit()
	logger.info("Registered user %s", row.id)
	return {"success": True, "userId": row.id}
