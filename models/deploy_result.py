from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

DeployStatus = Literal["running", "successful", "failed"]


class DeployResult(BaseModel):
    endpoint: str
    branch: str
    command: str
    status: DeployStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    stdout_tail: str = ""
    stderr_tail: str = ""
