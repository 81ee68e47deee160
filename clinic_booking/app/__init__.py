import time

from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator

from .metrics import ROUTE_REQUEST_COUNT, ROUTE_REQUEST_LATENCY


def create_app() -> FastAPI:
    app = FastAPI(title="Clinic Booking")

    # Instrument the app with Prometheus metrics
    Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")

    # Middleware to track custom metrics
    @app.middleware("http")
    async def add_metrics(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        ROUTE_REQUEST_COUNT.labels(method=request.method, endpoint=request.url.path).inc()
        ROUTE_REQUEST_LATENCY.labels(method=request.method, endpoint=request.url.path).observe(time.time() - start_time)

        return response

    from .routes import router as main_router
    app.include_router(main_router)

    return app
