"""hoa_etl.config

Process configuration, read once from the environment at startup and
passed explicitly into every stage.  Secrets never come from CLI args.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

import psycopg

AIRTABLE_API_KEY_ENV = "AIRTABLE_API_KEY"
AIRTABLE_API_URL_ENV = "AIRTABLE_API_URL"
TARGET_DB_URL_ENV = "TARGET_DB_URL"
TARGET_DB_PASSWORD_ENV = "TARGET_DB_PASSWORD"

DEFAULT_AIRTABLE_API_URL = "https://api.airtable.com/v0"


class ConfigError(Exception):
    """Raised when required configuration is missing."""


@dataclass(frozen=True)
class MigrationConfig:
    airtable_api_key: str | None = field(default=None, repr=False)
    db_url: str | None = field(default=None, repr=False)
    db_password: str | None = field(default=None, repr=False)
    airtable_api_url: str = DEFAULT_AIRTABLE_API_URL

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        need_airtable: bool = True,
        need_database: bool = True,
    ) -> MigrationConfig:
        """Build a config from environment variables.

        Raises ConfigError naming every required variable that is unset or
        blank.  Stages that never touch Airtable (transforms) or never touch
        the database (export-table) can relax the corresponding check.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            v = env.get(name)
            return v.strip() if v and v.strip() else None

        required: list[str] = []
        if need_airtable:
            required.append(AIRTABLE_API_KEY_ENV)
        if need_database:
            required += [TARGET_DB_URL_ENV, TARGET_DB_PASSWORD_ENV]
        missing = [name for name in required if get(name) is None]
        if missing:
            raise ConfigError(
                f"missing required environment variable(s): {', '.join(missing)}"
            )

        return cls(
            airtable_api_key=get(AIRTABLE_API_KEY_ENV),
            db_url=get(TARGET_DB_URL_ENV),
            db_password=get(TARGET_DB_PASSWORD_ENV),
            airtable_api_url=(get(AIRTABLE_API_URL_ENV) or DEFAULT_AIRTABLE_API_URL).rstrip("/"),
        )

    def connect(self, autocommit: bool = False) -> psycopg.Connection:
        """Open a connection to the target store with the privileged credential."""
        if not self.db_url:
            raise ConfigError(f"{TARGET_DB_URL_ENV} is not configured")
        kwargs = {"password": self.db_password} if self.db_password else {}
        return psycopg.connect(self.db_url, autocommit=autocommit, **kwargs)
