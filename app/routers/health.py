# app/routers/health.py
"""
System health check endpoint.
Returns status of backend + DB + pollers + provider reachability.
"""

import requests
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
from app.database import get_db
from app.services.credential_store import list_active_credentials
from app.services.event_poller import poller_supervisor
from datetime import datetime

router = APIRouter()


@router.get("/health", summary="System health check")
def health_check(db: Session = Depends(get_db)):
    """
    Returns:
    - Backend status
    - Database connectivity
    - Poller state per branch
    - Provider reachability per active branch (plain HTTP reachability, no auth)
    """
    result = {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "backend": "ok",
        "database": "unknown",
        "pollers": {},
        "providers": {},
    }

    # Check database
    try:
        db.execute(text("SELECT 1"))
        result["database"] = "ok"
    except Exception as e:
        result["database"] = f"error: {str(e)}"
        result["status"] = "degraded"
        return result

    for poller in poller_supervisor.status():
        result["pollers"][poller["branch_id"]] = {
            "state": poller["state"],
            "running": poller["running"],
            "last_offset": poller["last_offset"],
            "last_error": poller["last_error"],
        }
        if poller["last_error"]:
            result["status"] = "degraded"

    # Ping each branch's provider endpoint
    for credential in list_active_credentials(db):
        try:
            resp = requests.get(credential.api_base_url, timeout=3)
            result["providers"][credential.branch_id] = "ok" if resp.status_code < 500 else f"http_{resp.status_code}"
        except requests.exceptions.ConnectionError:
            result["providers"][credential.branch_id] = "unreachable"
            result["status"] = "degraded"
        except requests.exceptions.RequestException as e:
            result["providers"][credential.branch_id] = f"error: {str(e)}"

    return result
