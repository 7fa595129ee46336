# simkube/main.py
import logging
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from simkube.constants import WEBHOOK_PATH
from simkube.core.config import settings
from simkube.core.logging_config import setup_logging
from simkube.api.v1.api import api_router as api_v1_router
from simkube.services.admission_service import invalid_review
from simkube.services.kubernetes_service import make_kubernetes_service
from simkube.services.mutation_service import DriverContext
from simkube.services.owners_cache import OwnersCache
from simkube.services.trace_store import JsonTraceStore

# Setup logging FIRST
setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=f"{settings.APP_NAME} Driver Webhook",
    version="0.1.0"
)
app.state.driver_ctx = None
app.include_router(api_v1_router, prefix=settings.API_V1_STR)

@app.get("/", tags=["Root"], summary="Root endpoint for service status")
async def read_root():
    """Returns whether the driver context is loaded."""
    return {"simulation": settings.SIM_NAME, "ready": app.state.driver_ctx is not None}

def _is_admission_request(request: Request) -> bool:
    return request.url.path == f"{settings.API_V1_STR}{WEBHOOK_PATH}"

def _denial(reason: str) -> JSONResponse:
    # Anything but an AdmissionReview admits the pod unmutated under failurePolicy Ignore
    review = invalid_review(reason)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=jsonable_encoder(review, by_alias=True, exclude_none=True),
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}", exc_info=False)
    if _is_admission_request(request):
        return _denial("malformed admission review")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": exc.errors()},
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception during request to {request.url}: {exc}", exc_info=True)
    if _is_admission_request(request):
        return _denial("internal error")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred."},
    )

def build_driver_context() -> DriverContext:
    k8s = make_kubernetes_service()
    owners_cache = OwnersCache(k8s.get_object, max_entries=settings.OWNERS_CACHE_MAX_ENTRIES)
    store = JsonTraceStore.from_path(settings.TRACE_PATH)
    return DriverContext(
        name=settings.SIM_NAME,
        sim_root=settings.SIM_ROOT,
        virtual_ns_prefix=settings.VIRTUAL_NS_PREFIX,
        owners_cache=owners_cache,
        store=store,
        max_owner_depth=settings.MAX_OWNER_DEPTH,
    )

@app.on_event("startup")
async def startup_event():
    logger.info("Driver webhook startup...")
    try:
        app.state.driver_ctx = build_driver_context()
    except Exception as e:
        logger.critical(f"Could not build driver context; /mutate will deny every request: {e}", exc_info=True)
        return
    logger.info(f"Simulation: {settings.SIM_NAME}")
    logger.info(f"Simulation root: {settings.SIM_ROOT}")
    logger.info(f"Virtual namespace prefix: {settings.VIRTUAL_NS_PREFIX}")
    logger.info(f"Trace: {settings.TRACE_PATH}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Driver webhook shutdown complete.")

def run():
    import uvicorn
    uvicorn.run(
        "simkube.main:app",
        host="0.0.0.0",
        port=settings.DRIVER_PORT,
        ssl_certfile=settings.CERT_PATH,
        ssl_keyfile=settings.KEY_PATH,
        log_level=settings.LOG_LEVEL.lower(),
    )

if __name__ == "__main__":
    run()
