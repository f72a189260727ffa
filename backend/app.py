import logging
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from backend.routes import router
from backend.state import AppState
from dm_os.config import Settings, load_settings
from dm_os.library import SessionLibrary
from dm_os.narrator import Narrator
from dm_os.session import SessionRegistry
from dm_os.store import JsonFileStore, KeyValueStore

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)


def create_app(
    data_dir: Path | None = None,
    settings: Settings | None = None,
    narrator: Narrator | None = None,
    store: KeyValueStore | None = None,
) -> FastAPI:
    """Build the API app.

    Anything not passed in comes from the environment: settings from
    load_settings(), the narrator from those settings, and a JsonFileStore
    under data_dir (or DATA_DIR).
    """
    settings = settings or load_settings()
    if data_dir is not None:
        settings = settings.model_copy(update={"data_dir": data_dir})
    library = SessionLibrary(store or JsonFileStore(settings.data_dir))
    state = AppState(
        settings=settings,
        library=library,
        narrator=narrator or settings.narrator(),
        registry=SessionRegistry(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await library.load()
        logger.info("Narrator backend: %s (%s)", settings.narrator_url, settings.narrator_format)
        yield

    app = FastAPI(title="DM-OS", lifespan=lifespan)
    app.state.dm = state
    app.include_router(router, prefix="/api")
    return app
