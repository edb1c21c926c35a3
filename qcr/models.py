from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

# Label binding members and instances to their cluster.
CLUSTER_LABEL = "ovsdb-cluster"
# Role label stamped on instances so they can be told apart from other workloads.
APP_LABEL = "app"
SERVER_APP = "ovsdb-server"

DB_TYPES = ("NB", "SB")


@dataclass
class Condition:
    type: str
    status: bool
    reason: str = ""
    message: str = ""


def _conditions(raw: list[dict[str, Any]] | None) -> list[Condition]:
    return [Condition(**c) for c in raw or []]


@dataclass
class ClusterSpec:
    replicas: int = 1
    db_type: str = "NB"
    image: str | None = None
    storage_size: str = "10G"
    storage_class: str | None = None


@dataclass
class ClusterStatus:
    cluster_id: str | None = None
    cluster_size: int = 0
    cluster_quorum: int = 0
    available_servers: int = 0
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class MemberSpec:
    db_type: str = "NB"
    cluster_id: str | None = None
    cluster_name: str = ""
    init_peers: list[str] = field(default_factory=list)
    storage_size: str = ""
    storage_class: str | None = None


@dataclass
class MemberStatus:
    """Written by the bootstrap agent running next to the database server."""

    cluster_id: str | None = None
    raft_address: str | None = None
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class InstanceSpec:
    image: str = ""
    db_type: str = "NB"
    server_name: str = ""
    cluster_name: str = ""
    cluster_id: str | None = None
    raft_address: str | None = None
    storage_size: str = ""
    storage_class: str | None = None


@dataclass
class InstanceStatus:
    ready: bool = False
    container_id: str | None = None


@dataclass
class Resource:
    """Fields shared by every stored object."""

    KIND: ClassVar[str] = ""

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    owner_uid: str | None = None
    uid: str | None = None
    resource_version: int = 0

    def spec_dict(self) -> dict[str, Any]:
        return asdict(self.spec)  # type: ignore[attr-defined]

    def status_dict(self) -> dict[str, Any]:
        return asdict(self.status)  # type: ignore[attr-defined]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.KIND,
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
            "owner_uid": self.owner_uid,
            "uid": self.uid,
            "resource_version": self.resource_version,
            "spec": self.spec_dict(),
            "status": self.status_dict(),
        }


@dataclass
class Cluster(Resource):
    KIND: ClassVar[str] = "Cluster"

    spec: ClusterSpec = field(default_factory=ClusterSpec)
    status: ClusterStatus = field(default_factory=ClusterStatus)

    @staticmethod
    def parse_spec(raw: dict[str, Any]) -> ClusterSpec:
        return ClusterSpec(**raw)

    @staticmethod
    def parse_status(raw: dict[str, Any]) -> ClusterStatus:
        raw = dict(raw)
        raw["conditions"] = _conditions(raw.get("conditions"))
        return ClusterStatus(**raw)


@dataclass
class Member(Resource):
    KIND: ClassVar[str] = "Member"

    spec: MemberSpec = field(default_factory=MemberSpec)
    status: MemberStatus = field(default_factory=MemberStatus)

    @staticmethod
    def parse_spec(raw: dict[str, Any]) -> MemberSpec:
        raw = dict(raw)
        raw["init_peers"] = list(raw.get("init_peers") or [])
        return MemberSpec(**raw)

    @staticmethod
    def parse_status(raw: dict[str, Any]) -> MemberStatus:
        raw = dict(raw)
        raw["conditions"] = _conditions(raw.get("conditions"))
        return MemberStatus(**raw)


@dataclass
class Instance(Resource):
    KIND: ClassVar[str] = "Instance"

    spec: InstanceSpec = field(default_factory=InstanceSpec)
    status: InstanceStatus = field(default_factory=InstanceStatus)

    @staticmethod
    def parse_spec(raw: dict[str, Any]) -> InstanceSpec:
        return InstanceSpec(**raw)

    @staticmethod
    def parse_status(raw: dict[str, Any]) -> InstanceStatus:
        return InstanceStatus(**raw)


KINDS: dict[str, type[Resource]] = {c.KIND: c for c in (Cluster, Member, Instance)}
