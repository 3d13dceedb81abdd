"""Connection settings for the target document store."""

from __future__ import annotations

from dataclasses import dataclass

from .env import require_env_vars

ENDPOINT_VAR = "APPWRITE_ENDPOINT"
PROJECT_VAR = "APPWRITE_PROJECT"
API_KEY_VAR = "APPWRITE_KEY"


@dataclass(frozen=True, slots=True)
class StoreConfig:
    """Endpoint and credentials used by the REST adapter."""

    endpoint: str
    project_id: str
    api_key: str

    @classmethod
    def from_environment(cls) -> StoreConfig:
        values = require_env_vars((ENDPOINT_VAR, PROJECT_VAR, API_KEY_VAR))
        return cls(
            endpoint=values[ENDPOINT_VAR].rstrip("/"),
            project_id=values[PROJECT_VAR],
            api_key=values[API_KEY_VAR],
        )
