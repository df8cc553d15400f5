from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from spend_stream.core.storage import diagnose_storage
from spend_stream.modules.categories.api import router as categories_router
from spend_stream.modules.expenses.api import router as expenses_router
from spend_stream.modules.identity.api import router as identity_router
from spend_stream.modules.ingestion.api import router as ingestion_router
from spend_stream.modules.merchants.api import router as merchants_router
from spend_stream.modules.realtime.api import router as realtime_router
from spend_stream.modules.statements.api import router as statements_router

router = APIRouter()

router.include_router(identity_router, prefix="/api")
router.include_router(statements_router, prefix="/api")
router.include_router(expenses_router, prefix="/api")
router.include_router(categories_router, prefix="/api")
router.include_router(merchants_router, prefix="/api")
router.include_router(ingestion_router, prefix="/api")
router.include_router(realtime_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz/storage")
def healthz_storage(request: Request, *, write_test: bool = False) -> JSONResponse:
    result = diagnose_storage(request.app.state.storage, write_test=write_test)
    status_code = 200 if result.get("ok") else 503
    return JSONResponse(status_code=status_code, content=result)
