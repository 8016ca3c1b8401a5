"""
api/routes/v1/jwks.py -- Public verification keys.

Routes:
  GET /.well-known/jwks.json -- RFC 7517 key set: the active key plus every
                                retired key still inside its overlap window

Resource servers fetch this to verify access tokens without calling back into
keyward. Only public material is exported. The response is cacheable for a
few minutes; key rotation keeps the previous key published for
KEY_OVERLAP_DAYS, which is far longer than any cache lifetime.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from auth.dependencies import get_runtime

# Public endpoint, no rate limit: verifiers poll it.
router = APIRouter()


@router.get("/.well-known/jwks.json")
def jwks(request: Request) -> JSONResponse:
    """Return the public JSON Web Key Set."""
    keys = get_runtime(request).keystore.export_public_jwks()
    return JSONResponse(content=keys, headers={"Cache-Control": "public, max-age=300"})
