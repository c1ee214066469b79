from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from src.core import genai_client
from src.db.session import check_database_connection
from src.utils.time import utcnow


router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
def health():
    db = check_database_connection()
    body = {
        "status": "healthy" if db["connected"] else "unhealthy",
        "timestamp": utcnow().isoformat(),
        "services": {
            "database": db,
            "genai": {"configured": genai_client.is_configured()},
        },
    }
    return JSONResponse(status_code=200 if db["connected"] else 503, content=body)
