from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ExecuteRequest(_Request):
    project_path: Optional[str] = Field(default=None, alias="projectPath")
    command: str
    env_vars: Dict[str, str] = Field(default_factory=dict, alias="envVars")
    model: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, alias="timeoutMs", gt=0)


class CreateSessionRequest(_Request):
    project_path: Optional[str] = Field(default=None, alias="projectPath")
    env_vars: Dict[str, str] = Field(default_factory=dict, alias="envVars")
    cols: Optional[int] = Field(default=None, gt=0)
    rows: Optional[int] = Field(default=None, gt=0)


class SessionInputRequest(_Request):
    session_id: str = Field(alias="sessionId")
    input: str


class LogLevelRequest(BaseModel):
    level: str = "NONE"
