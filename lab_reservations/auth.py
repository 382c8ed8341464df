# auth.py

import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Cookie, Query
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from dotenv import load_dotenv
from lab_reservations.database import database
from lab_reservations.models import as_dict, users

load_dotenv()
SECRET_KEY = os.getenv('SECRET_KEY', 'change-me-in-production')
ALGORITHM = os.getenv('ALGORITHM', 'HS256')
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv('ACCESS_TOKEN_EXPIRE_MINUTES', 30))
ADMIN_ROLE = "ADMIN"
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


# Pydantic Models
class User(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    disabled: Optional[bool] = None
    role: str = "USER"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


class Token(BaseModel):
    access_token: str
    token_type: str


class UserCreate(BaseModel):
    username: str
    full_name: str
    email: str
    password: str


async def get_user(username: str):
    query = users.select().where(users.c.username == username)
    return await database.fetch_one(query)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


async def create_user(user: UserCreate, role: str = "USER") -> int:
    hashed_password = pwd_context.hash(user.password)
    query = users.insert().values(
        username=user.username,
        full_name=user.full_name,
        email=user.email,
        hashed_password=hashed_password,
        role=role,
        disabled=False,
    )
    return await database.execute(query)


async def authenticate_token(token: Optional[str]) -> User:
    """Decode a bearer token and load its user, raising 401 on any failure."""
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = await get_user(username=username)
    if user is None or user["disabled"]:
        raise credentials_exception

    return User(**as_dict(user, users))


# Used for API calls made by JavaScript
async def get_current_active_user(token: Optional[str] = Depends(oauth2_scheme)) -> User:
    return await authenticate_token(token)


async def get_current_admin(current_user: User = Depends(get_current_active_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return current_user


# EventSource cannot set headers, so the stream also accepts a query token or the login cookie
async def get_stream_user(
    token: Optional[str] = Depends(oauth2_scheme),
    query_token: Optional[str] = Query(None, alias="token"),
    access_token: Optional[str] = Cookie(None),
) -> User:
    return await authenticate_token(token or query_token or access_token)
