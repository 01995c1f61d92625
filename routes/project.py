"""
Project API routes
Switches the watched root and reports the recent roots list.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import logging

from core.exceptions import InvalidRootError, LiveTreeError, WatchStartError

logger = logging.getLogger(__name__)

project_bp = APIRouter(prefix='/api', tags=['project'])


@project_bp.post('/set-project')
async def set_project(request: Request):
    """Switch the watched root to the given directory"""
    try:
        data = await request.json()
    except ValueError:
        return JSONResponse({'error': 'Invalid JSON body'}, status_code=400)

    path = data.get('path') if isinstance(data, dict) else None
    if not isinstance(path, str) or not path.strip():
        return JSONResponse({'error': 'Path is required'}, status_code=400)

    logger.info(f"[API] Setting project path: {path}")
    root_manager = request.app.state.root_manager
    try:
        result = await root_manager.switch_root(path.strip())
    except InvalidRootError as e:
        logger.warning(f"[API] Rejected project path {path}: {e.reason}")
        return JSONResponse({'error': str(e)}, status_code=400)
    except Exception as e:
        logger.error(f"[API] Error setting project: {e}")
        return JSONResponse({'error': str(e)}, status_code=500)

    return {'success': True, 'root': str(result.root), 'watching': result.watching}


@project_bp.get('/recent-projects')
async def get_recent_projects(request: Request):
    """Get recently selected roots, most recent first"""
    return request.app.state.root_manager.get_recent()


@project_bp.get('/project')
async def get_project(request: Request):
    """Get the active root and watcher status"""
    root_manager = request.app.state.root_manager
    root = root_manager.current_root()
    return {
        'root': str(root) if root is not None else None,
        'state': root_manager.state.value,
        'watching': root_manager.watching,
        'clients': request.app.state.hub.client_count,
    }


@project_bp.post('/watch/restart')
async def restart_watch(request: Request):
    """Re-arm the watcher on the current root"""
    try:
        result = await request.app.state.root_manager.restart_watch()
    except WatchStartError as e:
        logger.error(f"[API] Watcher restart failed: {e}")
        return JSONResponse({'error': str(e)}, status_code=503)
    except LiveTreeError as e:
        return JSONResponse({'error': str(e)}, status_code=409)
    except Exception as e:
        logger.error(f"[API] Error restarting watcher: {e}")
        return JSONResponse({'error': str(e)}, status_code=500)
    return {'success': True, 'root': str(result.root), 'watching': result.watching}
