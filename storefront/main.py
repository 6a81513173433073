from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_fastapi_instrumentator import Instrumentator
from storefront.version import VERSION
from storefront.api import cart, coupons, orders
from storefront.core.logging import setup_logger
from storefront.errors import StorefrontError

setup_logger()

# Create instrumentator first
instrumentator = Instrumentator()

app = FastAPI(title="Storefront Order Service", version=VERSION)

# Instrument the app BEFORE adding routes or middleware
instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/metrics",
    should_gzip=True,
)

@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": {
            "reason": "validation_error",
            "message": "Request body is invalid",
            "errors": jsonable_encoder(exc.errors()),
        }},
    )

@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "storefront", "version": VERSION}

@app.on_event("startup")
async def startup_event():
    for route in app.routes:
        if hasattr(route, "methods") and hasattr(route, "path"):
            logger.debug(f"{route.methods} {route.path}")

app.include_router(orders.router, prefix="/orders", tags=["orders"])
app.include_router(coupons.router, prefix="/coupons", tags=["coupons"])
app.include_router(cart.router, prefix="/cart", tags=["cart"])
