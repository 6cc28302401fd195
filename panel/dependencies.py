import hmac

from fastapi import Header, HTTPException, status

from panel.core.config import get_settings
from panel.core.database import SessionLocal
from panel.services.virtfusion import VirtFusionClient


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    settings = get_settings()
    expected = settings.admin_api_token or ""
    if not x_admin_token or not expected or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def get_hypervisor() -> VirtFusionClient:
    return VirtFusionClient()


def get_session_factory():
    # Background tasks open their own sessions; overridden in tests.
    return SessionLocal
