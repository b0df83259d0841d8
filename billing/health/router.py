from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from billing.payments.dependencies import get_session_store
from billing.payments.session_store import SessionStore
from billing.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/sessions")
async def health_sessions(store: SessionStore = Depends(get_session_store)):
    # Compteurs par statut des sessions d'achat vivantes
    return JSONResponse(await store.stats())

@router.get("/rate-limit")
def health_rate_limit(request: Request):
    return JSONResponse(rate_limit_health_info(request))
