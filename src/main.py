from uuid import uuid4

from fastapi import FastAPI, Request

from src.observability import configure_logging
from src.routers import internal_dispatch, webhooks

configure_logging()

app = FastAPI(title="Metform Dispatch", version="0.1.0")


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
app.include_router(internal_dispatch.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "metform-dispatch"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
