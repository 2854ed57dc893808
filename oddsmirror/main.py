from fastapi import FastAPI

from .api.router import api_router
from .core.logging_config import configure_logging

configure_logging()

app = FastAPI(
    title="oddsmirror",
    description="Operational endpoints for the venue price mirror and settlement worker.",
)
app.include_router(api_router)
