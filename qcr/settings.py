from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("QCR_DB_PATH", "qcr.db")
    poll_interval_s: int = _env_int("QCR_POLL_INTERVAL_S", 5)
    default_namespace: str = os.getenv("QCR_DEFAULT_NAMESPACE", "default")

    # Instance runtime
    enable_runtime: bool = _env_bool("QCR_ENABLE_RUNTIME", False)
    server_image: str = os.getenv("QCR_SERVER_IMAGE", "quay.io/openstack-k8s-operators/ovn-nb-db-server:latest")
    docker_network: str = os.getenv("QCR_DOCKER_NETWORK", "qcr")

    # API auth for mutating calls
    admin_user: str = os.getenv("QCR_ADMIN_USER", "admin")
    admin_password: str = os.getenv("QCR_ADMIN_PASSWORD", "admin")

    # Email alerting (optional)
    enable_email: bool = _env_bool("QCR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("QCR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("QCR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("QCR_SMTP_USER")
    smtp_password: str | None = os.getenv("QCR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("QCR_EMAIL_FROM")
    email_to: str | None = os.getenv("QCR_EMAIL_TO")


settings = Settings()
