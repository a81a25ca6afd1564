import modal

app = modal.App("metform-dispatch")

image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(
        "fastapi>=0.115.0",
        "uvicorn>=0.30.0",
        "httpx>=0.27.0",
        "pydantic>=2.7.0",
        "pydantic-settings>=2.3.0",
        "python-multipart>=0.0.9",
        "supabase>=2.5.0",
    )
    .add_local_python_source("src")
)

secrets = [modal.Secret.from_name("metform-dispatch-env")]


@app.function(image=image, secrets=secrets)
@modal.asgi_app()
def fastapi_app():
    from src.main import app as web_app

    return web_app


@app.function(image=image, secrets=secrets, schedule=modal.Period(minutes=1))
def drain_dispatch_jobs():
    from src.config import settings
    from src.dependencies import get_dispatch_queue, get_dispatcher, get_retry_policy
    from src.observability import configure_logging
    from src.workers.dispatch import run_due_jobs

    configure_logging()
    run_due_jobs(
        dispatcher=get_dispatcher(),
        queue=get_dispatch_queue(),
        policy=get_retry_policy(),
        limit=settings.dispatch_batch_size,
        workers=settings.dispatch_max_concurrent_workers,
        queue_size=settings.dispatch_queue_size,
    )
