"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    log_json: bool = False
    app_name: str = "InvoiceFlow API"

    # Plant bin capacities (units per bin). Invoices pick one of these.
    bin_capacities: str = "50,80"
    default_bin_capacity: int = 80

    # Reconciliation behaviour
    block_on_mismatch: bool = True
    reject_duplicate_audit_bins: bool = True

    # Dispatch
    gatepass_prefix: str = "GP"

    # Operator identity (simple role flag, no tenancy)
    auth_enabled: bool = False
    operator_tokens: str = ""
    default_operator: str = "operator"

    def plant_bin_capacities(self) -> FrozenSet[int]:
        """Parse the configured capacity list, ignoring malformed entries."""
        capacities = set()
        for segment in (self.bin_capacities or "").split(","):
            item = segment.strip()
            if not item:
                continue
            try:
                value = int(item)
            except ValueError:
                continue
            if value > 0:
                capacities.add(value)
        if self.default_bin_capacity > 0:
            capacities.add(self.default_bin_capacity)
        return frozenset(capacities)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
