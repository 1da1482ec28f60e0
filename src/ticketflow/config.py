from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    data_dir: Path = Path("data")
    database_path: Optional[Path] = None  # defaults to <data_dir>/executions.db
    # JSON file with tickets, users and departments loaded into the entity store
    # at startup; entities can also be pushed with PUT /api/entities/{type}/{id}
    seed_path: Optional[Path] = None

    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Engine behaviour
    # ------------------------------------------------------------------
    # "sleep"  : delay nodes await inside the execution's own task
    # "suspend": delay nodes persist a resume marker; resume_due() continues them
    delay_mode: Literal["sleep", "suspend"] = "sleep"
    max_node_visits: int = 25
    serialize_per_entity: bool = True

    # ------------------------------------------------------------------
    # Connector mode
    # ------------------------------------------------------------------
    # "simulator": always use in-memory collaborators (default, no external calls)
    # "hybrid"   : use a real connector per concern when credentials are set,
    #               fall back to the simulator when not
    # "real"     : like hybrid, but startup fails unless mail and classifier
    #               connectors are configured
    connector_mode: Literal["simulator", "hybrid", "real"] = "simulator"

    # ------------------------------------------------------------------
    # Slack credentials (notifications)
    # ------------------------------------------------------------------
    slack_bot_token: Optional[str] = None   # xoxb-...
    slack_default_channel: str = "#helpdesk"

    # ------------------------------------------------------------------
    # Mail API (generic JSON webhook, e.g. a transactional mail relay)
    # ------------------------------------------------------------------
    mail_api_url: Optional[str] = None
    mail_api_key: Optional[str] = None
    mail_from: str = "helpdesk@localhost"

    # ------------------------------------------------------------------
    # Classifier service
    # ------------------------------------------------------------------
    classifier_base_url: Optional[str] = None   # https://ml.internal/api
    classifier_api_key: Optional[str] = None
    classifier_timeout: float = 30.0

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def resolved_database_path(self) -> Path:
        return self.database_path or self.data_dir / "executions.db"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
