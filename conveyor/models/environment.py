"""Environment — a static deployment target."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Environment(BaseModel):
    """A deployment target, ordered by promotion rank.

    Higher rank means closer to production.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    rank: int = Field(ge=0)
    host: str = "localhost"
    port: int = Field(default=80, ge=1, le=65535)
    scheme: str = "http"

    def url(self, path: str = "/") -> str:
        """Endpoint URL for *path* on this environment's exposed port."""
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.scheme}://{self.host}:{self.port}{path}"
