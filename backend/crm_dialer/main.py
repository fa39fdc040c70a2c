# /crm_dialer/main.py

import os
import uvicorn
from fastapi import FastAPI

from crm_dialer.config.settings import settings
from crm_dialer.utils.lifecycle import lifespan
from crm_dialer.routes import public

# The HTTP surface is operational only (health, metrics); the actual work is
# done by the background components started in the lifespan.
app = FastAPI(
    title="CRM Dialer Bridge",
    version="1.0.0",
    description="Event-driven CRM to dialer lead automation",
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url=None,
)

app.include_router(public.router)

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "crm_dialer.main:app",
        host=host,
        port=port,
        reload=settings.environment == "development",
    )
