from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from taleweaver.config import get_settings
from taleweaver.generation import CreationService, NarrativeService
from taleweaver.llm import LLM, HttpLLM
from taleweaver.orchestrator import GameOrchestrator
from taleweaver.prompts import NARRATOR_SYSTEM
from taleweaver.routes import router
from taleweaver.state_machine import InvalidTransitionError
from taleweaver.storage import FileStore, SaveRepository

load_dotenv(Path(__file__).parent.parent / ".env")


def create_app(data_dir: Path | None = None, llm: LLM | None = None) -> FastAPI:
    settings = get_settings(data_dir)
    if llm is None:
        llm = HttpLLM(
            provider_url=settings.provider_url,
            api_key=settings.api_key,
            provider_format=settings.provider_format,
            model=settings.model,
            timeout=settings.timeout,
            system_prompt=NARRATOR_SYSTEM,
        )

    repository = SaveRepository(
        FileStore(settings.data_dir),
        key=settings.saves_key,
        max_slots=settings.max_save_slots,
    )
    orchestrator = GameOrchestrator(
        NarrativeService(llm, history_window=settings.history_window),
        CreationService(llm),
        repository,
        tab_prefetch_delay=settings.tab_prefetch_delay,
        save_notice_seconds=settings.save_notice_seconds,
    )
    orchestrator.refresh_saves()

    app = FastAPI(title="Taleweaver")
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.include_router(router, prefix="/api")

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    return app


# Default app instance for uvicorn (uses TALEWEAVER_DATA_DIR or ./data)
app = create_app()
