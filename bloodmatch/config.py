import os

from pydantic import BaseModel, Field

ENV_PREFIX = "BLOODMATCH_"


class Settings(BaseModel):
    record_ttl_seconds: float = Field(default=300, ge=0)
    collection_ttl_seconds: float = Field(default=120, ge=0)
    default_search_radius_km: float = Field(default=25.0, gt=0)
    sweep_interval_seconds: float = Field(default=60.0, ge=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """
        Build settings from BLOODMATCH_* variables, e.g.
        BLOODMATCH_SWEEP_INTERVAL_SECONDS=30. Unset fields keep defaults.
        """
        environ = os.environ if environ is None else environ
        values = {
            name: environ[ENV_PREFIX + name.upper()]
            for name in cls.model_fields
            if ENV_PREFIX + name.upper() in environ
        }
        return cls.model_validate(values)
