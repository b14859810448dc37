from fastapi import APIRouter, Request, HTTPException, WebSocket

from workstation.core.errors import SpawnError
from workstation.models.requests import CreateSessionRequest, ExecuteRequest, SessionInputRequest
from workstation.services.pty_bridge import PtyBridge

router = APIRouter()

COMPLETED_PLACEHOLDER = "Command completed successfully"


@router.post("/api/cli/execute")
async def execute_command(request: Request, body: ExecuteRequest):
    terminal = request.app.state.terminal
    executor = request.app.state.executor

    # The prompt goes to the CLI on stdin, the way `echo "..." | gemini` would
    args = [terminal.command]
    if body.model:
        args.extend(["--model", body.model])
    result = await executor.execute(
        args,
        cwd=body.project_path,
        env=body.env_vars,
        timeout_ms=body.timeout_ms,
        input_text=body.command + "\n",
    )
    response = result.to_dict()
    if result.success and not response["output"]:
        response["output"] = COMPLETED_PLACEHOLDER
    return response


@router.post("/api/cli/session")
async def create_session(request: Request, body: CreateSessionRequest):
    terminal = request.app.state.terminal
    try:
        session = terminal.create_session(cwd=body.project_path, env=body.env_vars, cols=body.cols, rows=body.rows)
    except SpawnError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"sessionId": session.id}


@router.get("/api/cli/sessions")
async def list_sessions(request: Request):
    return request.app.state.terminal.list_sessions()


@router.post("/api/cli/input")
async def session_input(request: Request, body: SessionInputRequest):
    terminal = request.app.state.terminal
    if not terminal.write_input(body.session_id, body.input):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"success": True}


@router.delete("/api/cli/session/{session_id}")
async def close_session(request: Request, session_id: str):
    request.app.state.terminal.close_session(session_id)
    return {"success": True}


@router.websocket("/ws")
async def terminal_socket(websocket: WebSocket):
    await websocket.accept()
    bridge = PtyBridge(websocket, websocket.app.state.terminal)
    await bridge.run()
