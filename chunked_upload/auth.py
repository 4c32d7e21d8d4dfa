import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from .config import Settings
from .errors import AuthError, CsrfError
from .schemas import TokenData, User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

UPLOAD_SCOPE = "upload"


class AuthHandler:
    def __init__(self, settings: Settings):
        self.settings = settings

    def _encode(self, claims: dict, expires_delta: timedelta) -> str:
        to_encode = dict(claims)
        to_encode["exp"] = datetime.now(timezone.utc) + expires_delta
        return jwt.encode(to_encode, self.settings.SECRET_KEY, algorithm=self.settings.ALGORITHM)

    def _decode(self, token: str) -> dict:
        return jwt.decode(token, self.settings.SECRET_KEY, algorithms=[self.settings.ALGORITHM])

    def create_access_token(
        self,
        username: str,
        scopes: Optional[List[str]] = None,
        expires_delta: Optional[timedelta] = None,
    ) -> str:
        if expires_delta is None:
            expires_delta = timedelta(minutes=self.settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        claims = {"sub": username, "scopes": list(scopes or []), "typ": "access"}
        return self._encode(claims, expires_delta)

    def get_current_user(self, token: str) -> User:
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
        try:
            payload = self._decode(token)
        except JWTError:
            raise credentials_exception
        if payload.get("typ") != "access":
            raise credentials_exception
        token_data = TokenData(username=payload.get("sub"), scopes=payload.get("scopes") or [])
        if token_data.username is None:
            raise credentials_exception
        return User(username=token_data.username, scopes=token_data.scopes)

    def issue_security_token(self, username: str, field_name: str) -> str:
        """Anti-forgery token for one rendering of the upload form."""
        claims = {
            "sub": username,
            "form": field_name,
            "nonce": uuid.uuid4().hex,
            "typ": "security",
        }
        expires = timedelta(minutes=self.settings.SECURITY_TOKEN_EXPIRE_MINUTES)
        return self._encode(claims, expires)

    def verify_security_token(self, token: Optional[str], username: str, field_name: str) -> None:
        if not token:
            raise CsrfError("Missing security token")
        try:
            payload = self._decode(token)
        except JWTError:
            raise CsrfError("Invalid security token")
        if (
            payload.get("typ") != "security"
            or payload.get("sub") != username
            or payload.get("form") != field_name
        ):
            raise CsrfError("Invalid security token")


class UploadGuard:
    """Entry checks run before a request may touch the filesystem."""

    def __init__(
        self,
        auth: AuthHandler,
        field_name: str,
        disabled: bool = False,
        readonly: bool = False,
        csrf_enabled: bool = True,
    ):
        self.auth = auth
        self.field_name = field_name
        self.disabled = disabled
        self.readonly = readonly
        self.csrf_enabled = csrf_enabled

    def can_upload(self, user: Optional[User]) -> bool:
        return user is not None and UPLOAD_SCOPE in user.scopes

    def check(self, user: Optional[User], security_token: Optional[str]) -> None:
        if self.disabled or self.readonly or not self.can_upload(user):
            raise AuthError("Upload not permitted")
        if self.csrf_enabled:
            self.auth.verify_security_token(security_token, user.username, self.field_name)


def get_current_user(request: Request, token: str = Depends(oauth2_scheme)) -> User:
    return request.app.state.auth.get_current_user(token)
