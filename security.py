import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from pickup_workflow import Forbidden, Unauthorized

SECRET_KEY = os.getenv("JWT_SECRET", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 30)))

# pbkdf2_sha256 avoids the bcrypt backend incompatibilities with recent passlib
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/users/login", auto_error=False)

ROLES = ("user", "recycler", "admin")


def verify_password(plain_password, hashed_password):
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except JWTError:
        raise Unauthorized("Not authorized, token failed")
    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role not in ROLES:
        raise Unauthorized("Not authorized, token failed")
    return {"id": user_id, "role": role}


def get_current_user(token: Optional[str] = Depends(oauth2_scheme)):
    if not token:
        raise Unauthorized("Not authorized, no token")
    return decode_token(token)


def require_role(required: List[str]):
    def wrapper(user=Depends(get_current_user)):
        if user.get("role") not in required:
            raise Forbidden("Insufficient permissions")
        return user
    return wrapper
