from __future__ import annotations

import hashlib
import json
import re
from dataclasses import asdict, dataclass
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .models import Instance
from .settings import settings


NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$")

NAMESPACE_LABEL = "qcr.namespace"
INSTANCE_LABEL = "qcr.instance"
SPEC_HASH_LABEL = "qcr.spec-hash"


def validate_name(name: str) -> None:
    if not NAME_RE.match(name):
        raise ValueError(
            "Invalid name. Use lowercase letters/numbers and hyphen, starting and ending with a letter or number (max 63 chars)."
        )


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    namespace: str
    instance: str
    spec_hash: str
    running: bool


def spec_hash(instance: Instance) -> str:
    """Stable digest of an instance's runtime configuration."""
    raw = json.dumps(asdict(instance.spec), sort_keys=True).encode()
    return hashlib.sha256(raw).hexdigest()[:16]


def container_name(instance: Instance) -> str:
    return f"qcr-{instance.namespace}-{instance.name}"


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network() -> None:
    if not docker_available():
        return
    c = _client()
    try:
        c.networks.get(settings.docker_network)
    except NotFound:
        c.networks.create(settings.docker_network, driver="bridge")
        log_event("INFO", f"Created docker network '{settings.docker_network}'.")


def _environment(instance: Instance) -> dict[str, str]:
    spec = instance.spec
    env = {
        "DB_TYPE": spec.db_type,
        "SERVER_NAME": spec.server_name,
        "CLUSTER_NAME": spec.cluster_name,
    }
    if spec.cluster_id:
        env["CLUSTER_ID"] = spec.cluster_id
    if spec.raft_address:
        env["RAFT_ADDRESS"] = spec.raft_address
    return env


def create_instance_container(instance: Instance) -> ContainerRef:
    """Create and start the container backing an instance.

    Containers are labeled so they can be matched back to their instance after restarts.
    """
    validate_name(instance.namespace)
    validate_name(instance.name)
    ensure_network()

    if not docker_available():
        raise RuntimeError("Docker is not available. Start Docker Desktop / docker daemon and try again.")

    name = container_name(instance)
    digest = spec_hash(instance)
    labels: dict[str, str] = {
        NAMESPACE_LABEL: instance.namespace,
        INSTANCE_LABEL: instance.name,
        SPEC_HASH_LABEL: digest,
    }

    c = _client()
    container = c.containers.run(
        instance.spec.image,
        detach=True,
        name=name,
        hostname=instance.name,
        environment=_environment(instance),
        network=settings.docker_network,
        labels=labels,
        # Replacement is decided by the reconciler; keep Docker from restarting on its own.
        restart_policy={"Name": "no"},
    )

    log_event(
        "INFO",
        f"Started container {name} from image {instance.spec.image}",
        cluster=instance.spec.cluster_name,
        namespace=instance.namespace,
    )
    return ContainerRef(
        id=container.id,
        name=name,
        namespace=instance.namespace,
        instance=instance.name,
        spec_hash=digest,
        running=True,
    )


def remove_container(container_id: str, force: bool = True) -> None:
    if not docker_available():
        return
    c = _client()
    try:
        cont = c.containers.get(container_id)
        cont.remove(force=force)
    except NotFound:
        return


def list_instance_containers() -> list[ContainerRef]:
    if not docker_available():
        return []
    c = _client()
    filters: dict[str, Any] = {"label": [INSTANCE_LABEL]}

    out: list[ContainerRef] = []
    for x in c.containers.list(all=True, filters=filters):
        labels = x.labels or {}
        out.append(
            ContainerRef(
                id=x.id,
                name=x.name,
                namespace=labels.get(NAMESPACE_LABEL, ""),
                instance=labels.get(INSTANCE_LABEL, ""),
                spec_hash=labels.get(SPEC_HASH_LABEL, ""),
                running=x.status == "running",
            )
        )
    return out
