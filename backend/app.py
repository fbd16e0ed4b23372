import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.routes import router
from npc_social.config import load_settings
from npc_social.errors import InputValidationError
from npc_social.llm import ChatModel
from npc_social.service import SocialService
from npc_social.storage import Storage

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(
    data_dir: Path | None = None,
    model: ChatModel | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Build the app. Raises ConfigurationError when model or prompt wiring is missing."""
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    service = SocialService(Storage(resolved), load_settings(resolved), model=model, clock=clock)
    service.validate()

    app = FastAPI(title="NPC Social")
    app.state.data_dir = resolved
    app.state.service = service
    app.include_router(router, prefix="/api")

    @app.exception_handler(InputValidationError)
    async def input_error(request: Request, exc: InputValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    logger.info("serving data from %s", resolved)
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
