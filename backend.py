from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

# Load environment variables from .env file before settings are read
from dotenv import load_dotenv
load_dotenv()

from config.settings import CORS_ALLOW_ORIGINS, DEFAULT_ROOT, HOST, LOG_FILE, LOG_LEVEL, PORT
from core.root_manager import RootManager
from services.broadcast_hub import BroadcastHub
from utils.file_watcher import WatchSession
from routes.structure import structure_bp
from routes.project import project_bp

_handlers = [logging.StreamHandler()]
if LOG_FILE:
    _handlers.append(logging.FileHandler(LOG_FILE))

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=_handlers
)
logger = logging.getLogger(__name__)


def create_app(initial_root=DEFAULT_ROOT, session_factory=WatchSession) -> FastAPI:
    """Build the FastAPI application with its own hub and root manager."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan event handler for startup and shutdown."""
        logger.info('Application starting up')
        hub = BroadcastHub()
        root_manager = RootManager(hub, session_factory=session_factory)
        hub.on_register = root_manager.send_snapshot
        app.state.hub = hub
        app.state.root_manager = root_manager

        await root_manager.start(initial_root)
        if root_manager.current_root() is not None:
            logger.info(f'Watching directory: {root_manager.current_root()}')
        else:
            logger.warning('No project selected - waiting for /api/set-project')

        yield

        logger.info('Application shutting down - starting cleanup')
        try:
            await hub.close_all()
            logger.info('Client connections closed')
        except Exception as e:
            logger.error(f'Error closing client connections: {e}')

        await root_manager.shutdown()
        logger.info('Application shutdown complete')

    app = FastAPI(title='livetree', version='1.0.0', lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_methods=['GET', 'POST', 'OPTIONS'],
        allow_headers=['Content-Type'],
    )

    app.include_router(project_bp)
    app.include_router(structure_bp)

    @app.get('/health')
    def health():
        return {'status': 'ok', 'timestamp': datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()


def run_server(host: str = HOST, port: int = PORT):
    import uvicorn

    logger.info(f'Server running at http://localhost:{port}')
    logger.info(f'WebSocket server running at ws://localhost:{port}')
    uvicorn.run(app, host=host, port=port)


if __name__ == '__main__':
    run_server()
