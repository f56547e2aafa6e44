"""HTS tariff lookup API.

Workbook scans are blocking, so these handlers are plain functions and run
in the threadpool.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from app.services.auth import get_current_user
from app.services.hts_search import ExcelSearchService, TariffDataUnavailable, excel_search

router = APIRouter(prefix="/tariffs", tags=["tariffs"])


def get_search_service() -> ExcelSearchService:
    return excel_search


@router.get("/hts/{hs_code}")
def lookup_hs_code(
    hs_code: str,
    service: ExcelSearchService = Depends(get_search_service),
    _user: dict = Depends(get_current_user),
):
    try:
        result = service.search_hs_code(hs_code)
    except TariffDataUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not result:
        raise HTTPException(status_code=404, detail=f"HS code {hs_code} not found")
    return result.to_dict()


@router.get("/search")
def search_descriptions(
    q: str = Query(..., min_length=2),
    limit: int = Query(20, ge=1, le=100),
    service: ExcelSearchService = Depends(get_search_service),
    _user: dict = Depends(get_current_user),
):
    try:
        results = service.search_description(q, limit=limit)
    except TariffDataUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [r.to_dict() for r in results]


@router.get("/stats")
def tariff_stats(
    service: ExcelSearchService = Depends(get_search_service),
    _user: dict = Depends(get_current_user),
):
    try:
        return service.stats()
    except TariffDataUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
