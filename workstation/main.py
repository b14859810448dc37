import argparse
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from workstation.core import config
from workstation.core.log import global_log
from workstation.services.command_executor import CommandExecutor
from workstation.services.terminal_service import TerminalService
from workstation.routers import system, terminal


@asynccontextmanager
async def lifespan(app: FastAPI):
    global_log(f"Gemini Workstation starting (cli={app.state.terminal.command})")
    yield
    # No session may survive the server
    killed = await app.state.terminal.shutdown()
    global_log(f"Shutdown complete, {killed} session(s) terminated")


app = FastAPI(lifespan=lifespan)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        return response


app.add_middleware(SecurityHeadersMiddleware)
# The browser front-end is served from its own dev server port
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Services
app.state.terminal = TerminalService()
app.state.executor = CommandExecutor()

# Include Routers
app.include_router(terminal.router)
app.include_router(system.router)


def run():
    import uvicorn

    parser = argparse.ArgumentParser(description="Run the Gemini Workstation server")
    parser.add_argument("--port", type=int, default=config.PORT, help="Port to run the service on")
    parser.add_argument("--host", type=str, default=config.HOST, help="Host to bind to")
    args = parser.parse_args()

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    run()
