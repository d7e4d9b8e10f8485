import logging

from fastapi import FastAPI

from supportdesk.api.webhooks import router as webhooks_router
from supportdesk.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Supportdesk API", version="0.1.0")

app.include_router(webhooks_router)


@app.get("/health")
def health():
    return {"status": "ok"}
