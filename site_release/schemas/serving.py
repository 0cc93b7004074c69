"""Runtime parameters of the static file server process."""

from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field

SERVER_BINARY = "caddy"


class ServingConfiguration(BaseModel):
    """Fixed serving parameters: all interfaces, port 80, root /app, browsing on, no TLS."""

    host: Literal[""] = Field(default="", description="Bind host; empty means all interfaces.")
    port: Literal[80] = 80
    root: Literal["/app"] = Field(default="/app", description="Asset root inside the runtime filesystem.")
    browse: Literal[True] = True
    tls: Literal[False] = False

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def listen(self) -> str:
        return f"{self.host}:{self.port}"

    def argv(self) -> List[str]:
        return [
            SERVER_BINARY,
            "file-server",
            "--browse",
            "--root",
            self.root,
            "--listen",
            self.listen,
        ]
