from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .broker import GRANT_REFRESH_MARGIN

ArtifactBackend = Literal["memory", "file", "sql"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SHIPGATE_",
        env_file=".env",
        extra="ignore",
    )

    # artifacts
    artifact_backend: ArtifactBackend = Field(default="file")
    artifact_root: Path = Field(default=Path(".shipgate/artifacts"))
    database_url: str = Field(default="sqlite:///.shipgate/shipgate.db")
    retain_artifacts: bool = Field(default=False)

    # scheduling
    max_workers: Optional[int] = Field(default=None, ge=1)
    gate_timeout_seconds: Optional[float] = Field(default=None, gt=0)

    # credentials
    grant_ttl_seconds: int = Field(default=900, gt=GRANT_REFRESH_MARGIN)
    issuer_url: Optional[str] = None
    issuer_public_key: Optional[Path] = None
    audience: str = Field(default="shipgate")
    identity_token: Optional[str] = Field(default=None, repr=False)
    identity_token_file: Optional[Path] = None
    aws_role_arn: Optional[str] = None
    aws_region: str = Field(default="us-east-1")

    # server
    workflow: Optional[Path] = None
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)
    max_retained_runs: int = Field(default=100, ge=1)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return Settings()
