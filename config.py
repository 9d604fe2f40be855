from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

# Author: Daniel Neugent

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_DB_PATH = DATA_DIR / "pinphotos.db"
DEFAULT_CONTENT_ROOT = DATA_DIR / "content"

GATEWAY_BACKENDS = ("hashfs", "b2")


class ConfigError(ValueError):
    """Raised when the environment cannot produce a usable configuration."""


@dataclass(frozen=True)
class Settings:
    db_path: Path = DEFAULT_DB_PATH
    gateway: str = "hashfs"
    content_root: Path = DEFAULT_CONTENT_ROOT
    auth_header: str = "authorization"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8080
    key_id: Optional[str] = None
    app_key: Optional[str] = None
    bucket_name: Optional[str] = None

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        *,
        env_file: Optional[str] = ".env",
    ) -> "Settings":
        """Build settings from the environment, loading a local .env first.

        Variables already present in the process environment win over the
        file. Passing ``env`` skips the file and reads only that mapping.
        """
        if env is None:
            if env_file:
                load_dotenv(env_file)
            env = os.environ

        gateway = env.get("PINPHOTOS_GATEWAY", "hashfs").strip().lower()
        if gateway not in GATEWAY_BACKENDS:
            raise ConfigError(
                f"PINPHOTOS_GATEWAY must be one of {', '.join(GATEWAY_BACKENDS)}"
            )
        raw_port = env.get("ROBYN_PORT", "8080")
        try:
            port = int(raw_port)
        except ValueError as exc:
            raise ConfigError(f"ROBYN_PORT must be an integer, got {raw_port!r}") from exc

        settings = cls(
            db_path=Path(env.get("PINPHOTOS_DB_PATH") or DEFAULT_DB_PATH),
            gateway=gateway,
            content_root=Path(env.get("PINPHOTOS_CONTENT_ROOT") or DEFAULT_CONTENT_ROOT),
            auth_header=(env.get("PINPHOTOS_AUTH_HEADER") or "authorization").lower(),
            log_level=(env.get("PINPHOTOS_LOG_LEVEL") or "INFO").upper(),
            host=env.get("ROBYN_HOST") or "127.0.0.1",
            port=port,
            key_id=env.get("KEY_ID") or None,
            app_key=env.get("APP_KEY") or None,
            bucket_name=env.get("BUCKET_NAME") or None,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.gateway == "b2":
            missing = [
                name
                for name, value in (
                    ("KEY_ID", self.key_id),
                    ("APP_KEY", self.app_key),
                    ("BUCKET_NAME", self.bucket_name),
                )
                if not value
            ]
            if missing:
                raise ConfigError(
                    "The b2 gateway needs " + ", ".join(missing) + " to be set."
                )


def configure_logging(level: str = "INFO") -> None:
    """Install the process-wide log format once at startup."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
