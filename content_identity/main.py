import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from content_identity import __version__
from content_identity.config import Config, configure_logging
from content_identity.routes import bindings_router, content_router, health_router

configure_logging()

logger = logging.getLogger(__name__)

app = FastAPI(title="Content Identity Service", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(content_router)
app.include_router(bindings_router)
app.include_router(health_router)


@app.get("/")
async def root():
    return {"service": "content-identity-service", "version": __version__, "status": "running"}


def run():
    import uvicorn
    uvicorn.run(
        "content_identity.main:app",
        host=Config.HOST,
        port=Config.PORT,
        log_level="info"
    )


if __name__ == "__main__":
    run()
