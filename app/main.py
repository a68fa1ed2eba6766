from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging import configure_logging
from app.core.errors import register_exception_handlers
from app.api.routes import messages, otp, posts, realtime
from app.services.document_store import close_document_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_document_store()


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        max_age=3600,
    )

    register_exception_handlers(app)

    app.include_router(posts.router, prefix="/posts", tags=["posts"])
    app.include_router(messages.router, prefix="/chats", tags=["chats"])
    app.include_router(realtime.router, tags=["realtime"])
    # Mail relay, same path as the standalone relay used by the web client
    app.include_router(otp.router, tags=["otp"])

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=int(settings.PORT), reload=True)
