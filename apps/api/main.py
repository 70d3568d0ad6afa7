import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fieldops_core.errors import InventoryError, http_status_for
from fieldops_core.settings import log_level
from fieldops_core.lookups import router as lookups_router
from fieldops_core.crews_api import router as crews_router
from fieldops_core.movements import router as movements_router
from fieldops_core.history_api import router as history_router
from fieldops_core.batches import router as batches_router
from fieldops_core.instances import router as instances_router
from fieldops_core.reconciliation import router as reconciliation_router
from fieldops_core.catalog import router as catalog_router

logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("fieldops_core")

app = FastAPI(title="Field Ops Inventory Core API")
app.include_router(lookups_router)
app.include_router(crews_router)
app.include_router(movements_router)
app.include_router(history_router)
app.include_router(batches_router)
app.include_router(instances_router)
app.include_router(reconciliation_router)
# /inventory/{item_id} last so the fixed /inventory/* paths above win
app.include_router(catalog_router)

@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError):
    status = http_status_for(exc)
    logger.warning("%s %s rejected: %s %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=status, content=jsonable_encoder(exc.to_dict()))

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = jsonable_encoder(exc.errors())
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", []) if p != "body")
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": message, "code": "VALIDATION_ERROR", "details": {"errors": errors}},
    )

@app.get("/health")
async def health():
    return {"ok": True}
