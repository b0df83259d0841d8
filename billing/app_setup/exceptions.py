"""
Gestionnaires d’exceptions utilisés par la factory.
- PaymentError (et sous-classes): JSON {"detail", "code", ...} avec le code HTTP de l'erreur.
- HTTPException: JSON {"detail"} inchangé (ex: 429 du rate limiting).
"""
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from billing.errors import PaymentError

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Enregistre la traduction des erreurs du domaine paiement en réponses HTTP.
    Les erreurs 5xx sont loggées avec leur trace.
    """
    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        if exc.status_code >= 500:
            logger.error("payments.error path=%s code=%s detail=%s", request.url.path, exc.code, exc.message, exc_info=exc)
        else:
            logger.info("payments.error path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=getattr(exc, "headers", None))
