from fastapi import APIRouter, Request, HTTPException

from workstation import __version__
from workstation.core import config
from workstation.core.log import global_log
from workstation.models.requests import LogLevelRequest

router = APIRouter()


@router.get("/api/health")
async def health(request: Request):
    return {
        "status": "ok",
        "version": __version__,
        "sessions": len(request.app.state.terminal.registry),
    }


@router.post("/api/system/log-level")
async def set_log_level(body: LogLevelRequest):
    level = body.level.upper()
    if level not in config.LOG_LEVELS:
        raise HTTPException(status_code=400, detail="Invalid log level")

    config.update_env("LOG_LEVEL", level)
    config.LOG_LEVEL = level
    global_log(f"Log level set to {level}")
    return {"success": True, "level": level}
