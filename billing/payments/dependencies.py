"""
Dépendances FastAPI de la feature 'payments'.
Les services sont construits par le lifespan (app.state) et remplaçables en tests
via app.dependency_overrides.
"""
from fastapi import Request

from .reconciler import EventReconciler
from .service import PurchaseService
from .session_store import SessionStore


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_purchase_service(request: Request) -> PurchaseService:
    return request.app.state.purchase_service


def get_reconciler(request: Request) -> EventReconciler:
    return request.app.state.reconciler


def get_gateway(request: Request):
    return request.app.state.gateway
