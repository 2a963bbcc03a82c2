"""Modelos relacionados a instâncias Evolution e sincronização."""
from pydantic import BaseModel
from typing import Optional


# ==================== INSTANCES ====================

class InstanceCreate(BaseModel):
    instance_name: str
    webhook_path: str = "/api/evolution/webhook"


class MarkConnectedRequest(BaseModel):
    instance_name: str
    phone_number: Optional[str] = None
    # Only honoured for service tokens; regular users always act on themselves.
    user_id: Optional[str] = None


class LogoutDeleteRequest(BaseModel):
    instance_name: Optional[str] = None


# ==================== SYNC ====================

class SyncRequest(BaseModel):
    automatic: bool = False
    source: str = "manual"
