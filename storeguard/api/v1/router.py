"""API v1 router aggregation."""

from fastapi import APIRouter

from storeguard.api.v1 import auth

router = APIRouter()

_AUTH_PREFIX = "/auth"

router.include_router(auth.router, prefix=_AUTH_PREFIX, tags=["auth"])
