# routers/errors.py — Error code catalogue lookup (TF-DOMAIN-NUMBER codes)
from fastapi import APIRouter, Depends

from auth import CurrentUser, get_current_user
from exceptions import ERROR_CATALOGUE, NotFoundError

router = APIRouter(prefix="/api/v1/errors", tags=["Error Registry"])


@router.get("/catalogue")
async def get_error_catalogue(
    user: CurrentUser = Depends(get_current_user),
):
    """Get the full error code catalogue"""
    return {
        "catalogue": ERROR_CATALOGUE,
        "total": len(ERROR_CATALOGUE),
        "domains": sorted({code.split("-")[1] for code in ERROR_CATALOGUE}),
    }


@router.get("/catalogue/{code}")
async def get_error_code(
    code: str,
    user: CurrentUser = Depends(get_current_user),
):
    entry = ERROR_CATALOGUE.get(code.upper())
    if entry is None:
        raise NotFoundError(f"unknown error code {code}", code=code)
    return {"code": code.upper(), **entry}
