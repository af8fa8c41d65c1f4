from __future__ import annotations
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field
import yaml


class ProtocolSettings(BaseModel):
    version: str = Field("1.0", description="Protocol version stamped on, and required of, every envelope")
    format: str = Field("json", description="Wire format name stamped on every envelope")


class CommunicationSettings(BaseModel):
    request_timeout_ms: int = Field(
        30000, gt=0, description="Deadline for send_request when the caller gives none"
    )
    broadcast_topic: str = Field("topic:broadcast", description="Topic every registered agent listens on")


class BrokerSettings(BaseModel):
    max_queue_size: int = Field(
        100, gt=0, description="Capacity of each unreachable recipient's FIFO (oldest evicted)"
    )
    max_history_size: int = Field(1000, ge=0, description="Published envelopes kept for debugging")


class CollectiveSettings(BaseModel):
    ranked_choice_round_cap: int = Field(
        100, gt=0, description="Elimination rounds allowed before a ranked vote fails"
    )
    default_vote_method: str = "majority"
    default_aggregation_method: str = "weighted"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="COLONY_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"  # Allow extra fields from config files
    )

    protocol: ProtocolSettings = Field(default_factory=ProtocolSettings)
    communication: CommunicationSettings = Field(default_factory=CommunicationSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    collective: CollectiveSettings = Field(default_factory=CollectiveSettings)
    log_dir: Path = Field(default=Path("broker_logs"), description="Where saved message traces go")


def _load_yaml(path: Path | None):
    if path and path.exists():
        with open(path, "r") as fh:
            return yaml.safe_load(fh) or {}
    return {}

@lru_cache
def get_settings(config_path: Path | None = None) -> Settings:
    file_vals = _load_yaml(config_path or Path(".colony.yml"))
    return Settings(**file_vals)
