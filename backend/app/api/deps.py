"""FastAPI dependencies shared by the v1 routers."""

from __future__ import annotations

from fastapi import Request

from backend.app.delivery.engine import DeliveryEngine


def get_engine(request: Request) -> DeliveryEngine:
    return request.app.state.engine
