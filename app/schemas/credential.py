from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class CredentialIn(BaseModel):
    api_base_url: str = Field(..., description="Provider OpenAPI base URL")
    app_key: str
    app_secret: str
    is_active: bool = True


class CredentialOut(BaseModel):
    branch_id: str
    api_base_url: str
    app_key: str
    app_secret_masked: str
    is_active: bool
    subscription_id: Optional[str]
    last_sync: Optional[datetime]
    last_sync_status: Optional[str]
    last_sync_error: Optional[str]


class ConnectionTestOut(BaseModel):
    success: bool
    message: str
