from pydantic import BaseModel, ConfigDict
from typing import Optional


class Repository(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None


class PushEvent(BaseModel):
    # Only ref and repository.name are consumed; everything else the sender includes is ignored.
    model_config = ConfigDict(extra="ignore")

    ref: Optional[str] = None
    repository: Optional[Repository] = None

    @property
    def repository_name(self) -> Optional[str]:
        return self.repository.name if self.repository else None

    @property
    def branch(self) -> str:
        """Text after the last '/' of ref, e.g. 'refs/heads/prod' -> 'prod'."""
        return (self.ref or "").split('/')[-1]
