"""Observability schema (logging) extracted for modularity."""
from __future__ import annotations

from pydantic import BaseModel, Field, ConfigDict


class LoggingConfig(BaseModel):
    level: str = Field("info", pattern="^(debug|info|warn|error)$")
    format: str = Field("text", pattern="^(json|text)$")
    # log every emitted lifecycle event through the `modcore.events` logger
    log_events: bool = True

    model_config = ConfigDict(extra="forbid")
