"""
Security utilities for the workflow engine.

Includes:
- JWT verification (tokens are issued by the platform's auth service;
  this service only reads the caller's tenant from them)
- Fernet encryption/decryption for secret workflow variables
- FastAPI dependency resolving the authenticated caller
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials as HTTPAuthCredentials
from pydantic import BaseModel
import jwt
from cryptography.fernet import Fernet, InvalidToken

from app.config import get_settings

# HTTP Bearer for API endpoints
security_scheme = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    """JWT token payload structure."""
    sub: str  # user id
    tenant_id: str
    exp: datetime
    iat: datetime
    type: str = "access"


def create_access_token(user_id: str, tenant_id: str, expires_minutes: Optional[int] = None) -> str:
    """
    Create a JWT access token.

    Used by tests and service-to-service callers; end users get their
    tokens from the platform's auth service.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": user_id,
        "tenant_id": tenant_id,
        "type": "access",
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> TokenPayload:
    """
    Verify and decode a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    tenant_id = payload.get("tenant_id")
    if user_id is None or tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenPayload(
        sub=user_id,
        tenant_id=tenant_id,
        exp=datetime.fromtimestamp(payload.get("exp"), tz=timezone.utc),
        iat=datetime.fromtimestamp(payload.get("iat"), tz=timezone.utc),
        type=payload.get("type", "access"),
    )


class CredentialVault:
    """
    Manages encryption and decryption of secret values using Fernet (AES-128-CBC + HMAC).
    """

    def __init__(self, key: Optional[str] = None):
        """
        Initialize the vault with an encryption key.

        Args:
            key: Encryption key (urlsafe base64). If None, uses ENCRYPTION_KEY from settings.
        """
        if key is None:
            key = get_settings().ENCRYPTION_KEY
        if not key:
            raise RuntimeError("ENCRYPTION_KEY is not configured")

        self.cipher = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string; returns the token as text."""
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a string produced by encrypt().

        Raises:
            ValueError: If decryption fails
        """
        try:
            return self.cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Decryption failed: invalid token or key") from e


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Get or create the process-wide vault."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault


async def get_current_user(
    credentials: Optional[HTTPAuthCredentials] = Depends(security_scheme),
) -> TokenPayload:
    """
    FastAPI dependency to get the current authenticated caller from the JWT.

    Raises:
        HTTPException: If token is missing, invalid, or expired
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_payload = verify_token(credentials.credentials)

    if token_payload.type != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token_payload
