import hmac
from typing import Optional

from fastapi import Header, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.core.config import settings
from app.core.firebase import verify_firebase_token
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def get_current_merchant(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """
    Dependency resolving the merchant behind a Firebase ID token.
    Protects the routes that create, cancel or inspect price changes.
    """
    logger.info("get_current_merchant: Entry")

    try:
        decoded_token = verify_firebase_token(credentials.credentials)
        merchant_id = decoded_token.get('uid')

        if not merchant_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication credentials"
            )

        logger.info(f"get_current_merchant: Success - {merchant_id}")
        return {
            'uid': merchant_id,
            'email': decoded_token.get('email'),
            'token': decoded_token
        }
    except Exception as e:
        logger.error(f"get_current_merchant: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def verify_scheduler_key(
    x_scheduler_key: Optional[str] = Header(default=None)
) -> None:
    """
    Dependency guarding the sweep trigger used by the external timer.
    The trigger is disabled when no scheduler key is configured.
    """
    if not settings.scheduler_api_key:
        logger.warning("verify_scheduler_key: Failure - scheduler key not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Scheduler trigger is disabled"
        )
    if not x_scheduler_key or not hmac.compare_digest(x_scheduler_key, settings.scheduler_api_key):
        logger.warning("verify_scheduler_key: Failure - invalid key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid scheduler key"
        )
