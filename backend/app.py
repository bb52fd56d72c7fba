import logging

from fastapi import FastAPI

from backend.routes import router, ws_router
from cogsworth.config import Settings, load_settings
from cogsworth.llm import EchoLLM, HttpStreamingLLM, StreamingLLM

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, llm: StreamingLLM | None = None) -> FastAPI:
    resolved = settings or load_settings()
    if llm is None and resolved.echo:
        llm = EchoLLM(delay=0.05)
    elif llm is None:
        llm = HttpStreamingLLM.from_settings(resolved)
        if not resolved.api_url or not resolved.api_key:
            logger.warning("LLM_API_URL or LLM_API_KEY not set, every turn will fail")

    app = FastAPI(title="Cogsworth")
    app.state.settings = resolved
    app.state.llm = llm
    app.include_router(router, prefix="/api")
    app.include_router(ws_router)
    return app


# Default app instance for uvicorn (settings from the environment / .env)
app = create_app()
