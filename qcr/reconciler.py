from __future__ import annotations

import copy
import math
import time
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Callable, Sequence, TypeVar

from . import conditions, db
from .alerts import failure_alert, send_email
from .models import (
    APP_LABEL,
    CLUSTER_LABEL,
    SERVER_APP,
    Cluster,
    ClusterStatus,
    Instance,
    InstanceSpec,
    Member,
    Resource,
)
from .settings import settings

R = TypeVar("R", bound=Resource)

# Instances (by uid) whose replacement is already reported as waiting for quorum margin.
_deferred_replacements: set[str] = set()


@dataclass(frozen=True)
class Action:
    verb: str  # create|update|delete
    kind: str
    name: str


@dataclass
class ReconcileResult:
    status_changed: bool = False
    actions: list[Action] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.status_changed or bool(self.actions)


def cluster_quorum(cluster_size: int) -> int:
    """Smallest number of servers that keeps a raft cluster of this size writable."""
    return int(math.ceil(cluster_size / 2))


def list_members(cluster: Cluster) -> list[Member]:
    members = db.list_objects(Member, cluster.namespace, {CLUSTER_LABEL: cluster.name})
    return sorted(members, key=lambda m: m.name)


def list_instances(cluster: Cluster) -> list[Instance]:
    instances = db.list_objects(
        Instance, cluster.namespace, {APP_LABEL: SERVER_APP, CLUSTER_LABEL: cluster.name}
    )
    return sorted(instances, key=lambda i: i.name)


def find_by_name(objs: Sequence[R], name: str) -> R | None:
    for o in objs:
        if o.name == name:
            return o
    return None


def next_member_name(cluster: Cluster, members: Sequence[Member]) -> str:
    """First free <cluster>-<n>. Gaps are filled before the index grows."""
    i = 0
    while True:
        name = f"{cluster.name}-{i}"
        if find_by_name(members, name) is None:
            return name
        i += 1


def target_member_count(cluster: Cluster) -> int:
    # A scaled-to-zero cluster keeps one server around as its datastore.
    target = max(cluster.spec.replicas, 1)
    if cluster.status.cluster_id is None:
        # Not bootstrapped yet: exactly one seed server forms the cluster.
        target = 1
    return target


def project_status(cluster: Cluster, members: Sequence[Member], instances: Sequence[Instance]) -> None:
    """Fold member and instance health into cluster.status.

    Quorum is based on the servers which have joined the cluster, not on the
    target number of replicas.
    """
    cluster_size = sum(1 for m in members if conditions.is_available(m))
    quorum = cluster_quorum(cluster_size)
    n_available = sum(1 for i in instances if i.status.ready)

    if n_available >= quorum and n_available > 0:
        conditions.set_available(cluster)
    else:
        conditions.unset_available(cluster)

    cluster.status.available_servers = n_available
    cluster.status.cluster_size = cluster_size
    cluster.status.cluster_quorum = quorum

    # Failed only persists while its cause does.
    conditions.unset_failed(cluster)

    failed = [m.name for m in members if conditions.is_failed(m)]
    if failed:
        conditions.set_failed(
            cluster,
            conditions.REASON_BOOTSTRAP,
            f"The following servers have failed to initialize: {', '.join(failed)}",
        )

    for m in members:
        if cluster.status.cluster_id is None:
            cluster.status.cluster_id = m.status.cluster_id
        elif m.status.cluster_id is not None and m.status.cluster_id != cluster.status.cluster_id:
            # Only one failure can be recorded; this one replaces a bootstrap failure.
            conditions.set_failed(
                cluster,
                conditions.REASON_INCONSISTENT,
                f"Server {m.name} has inconsistent ClusterID {m.status.cluster_id}. "
                f"Expected ClusterID {cluster.status.cluster_id}",
            )


def member_apply(cluster: Cluster, member: Member, all_members: Sequence[Member]) -> None:
    """Set the fields the reconciler owns on a member.

    init_peers holds whichever raft addresses are known right now; it is not
    refreshed later when other servers register theirs.
    """
    init_peers = [
        p.status.raft_address
        for p in all_members
        if p.name != member.name and p.status.raft_address is not None
    ]

    member.labels[CLUSTER_LABEL] = cluster.name
    member.owner_uid = cluster.uid

    member.spec.db_type = cluster.spec.db_type
    member.spec.cluster_id = cluster.status.cluster_id
    member.spec.cluster_name = cluster.name
    member.spec.init_peers = init_peers
    member.spec.storage_size = cluster.spec.storage_size
    member.spec.storage_class = cluster.spec.storage_class


def instance_spec_for(cluster: Cluster, member: Member) -> InstanceSpec:
    return InstanceSpec(
        image=cluster.spec.image or settings.server_image,
        db_type=member.spec.db_type,
        server_name=member.name,
        cluster_name=cluster.name,
        cluster_id=member.status.cluster_id,
        raft_address=member.status.raft_address,
        storage_size=member.spec.storage_size,
        storage_class=member.spec.storage_class,
    )


def instance_apply(cluster: Cluster, instance: Instance, member: Member) -> None:
    instance.labels[APP_LABEL] = SERVER_APP
    instance.labels[CLUSTER_LABEL] = cluster.name
    instance.owner_uid = cluster.uid
    instance.spec = instance_spec_for(cluster, member)


def create_or_update(
    cls: type[R], namespace: str, name: str, apply: Callable[[R], None]
) -> tuple[str, R]:
    """Create the object if absent, else apply and write it only when something changed.

    Returns ("created" | "updated" | "unchanged", object).
    """
    try:
        obj = db.get_object(cls, namespace, name)
    except db.NotFound:
        obj = cls(name=name, namespace=namespace)
        apply(obj)
        db.create_object(obj)
        return "created", obj

    before = copy.deepcopy(obj)
    apply(obj)
    if obj == before:
        return "unchanged", obj
    db.update_object(obj)
    return "updated", obj


class ClusterCycle:
    """One reconcile pass over a single cluster."""

    def __init__(self, cluster: Cluster):
        self.cluster = cluster
        self.result = ReconcileResult()

    def _log(self, level: str, message: str) -> None:
        db.log_event(level, message, cluster=self.cluster.name, namespace=self.cluster.namespace)

    def _record(self, verb: str, obj: Resource) -> None:
        self.result.actions.append(Action(verb=verb, kind=obj.KIND, name=obj.name))

    def run(self, orig_status: ClusterStatus) -> None:
        cluster = self.cluster

        members = list_members(cluster)
        instances = list_instances(cluster)

        project_status(cluster, members, instances)

        # The status write re-triggers us; act on fresh state next time.
        if cluster.status != orig_status:
            return

        members = self._scale_members(members)
        self._reconcile_instances(members, instances)

    def _scale_members(self, members: list[Member]) -> list[Member]:
        cluster = self.cluster
        observed = list(members)
        working = list(members)

        for _ in range(len(working), target_member_count(cluster)):
            name = next_member_name(cluster, working)
            op, member = create_or_update(
                Member, cluster.namespace, name, lambda m: member_apply(cluster, m, observed)
            )
            if op != "unchanged":
                self._record("create" if op == "created" else "update", member)
                self._log("INFO", f"{op.capitalize()} server {member.name} (init peers: {member.spec.init_peers})")
            working.append(member)

        return sorted(working, key=lambda m: m.name)

    def _reconcile_instances(self, members: list[Member], instances: list[Instance]) -> None:
        cluster = self.cluster

        if cluster.spec.replicas == 0:
            # Scaled to zero: one server is kept as a datastore but nothing runs.
            for inst in instances:
                _deferred_replacements.discard(inst.uid)
                db.delete_object(inst)
                self._record("delete", inst)
                self._log("INFO", f"Deleted server instance {inst.name}")
            return

        cluster_size = cluster.status.cluster_size
        quorum = cluster.status.cluster_quorum
        n_available = cluster.status.available_servers

        for member in members:
            if not conditions.is_available(member):
                # Wait for the server to bootstrap
                continue

            inst = find_by_name(instances, member.name)
            if inst is None:
                inst = Instance(name=member.name, namespace=cluster.namespace)
                instance_apply(cluster, inst, member)
                db.create_object(inst)
                self._record("create", inst)
                self._log("INFO", f"Created server instance {inst.name}")
                n_available -= 1
                continue

            desired = copy.deepcopy(inst)
            instance_apply(cluster, desired, member)
            if desired == inst:
                _deferred_replacements.discard(inst.uid)
                continue

            if desired.spec == inst.spec:
                # Labels or owner only; no restart needed.
                db.update_object(desired)
                self._record("update", desired)
                continue

            # Replacing a running instance takes it out of the cluster for a while.
            # Below 3 servers any update loses quorum anyway, so go ahead.
            if cluster_size >= 3 and n_available <= quorum:
                if inst.uid not in _deferred_replacements:
                    _deferred_replacements.add(inst.uid)
                    self._log(
                        "INFO",
                        f"Deferring replacement of server instance {inst.name}: "
                        f"{n_available} available, quorum {quorum}",
                    )
                continue

            _deferred_replacements.discard(inst.uid)
            # Instances are immutable; the next cycle creates the replacement.
            db.delete_object(inst)
            self._record("delete", inst)
            self._log("INFO", f"Deleted server instance {inst.name} for replacement")
            n_available -= 1


def _failure_message(status: ClusterStatus) -> str | None:
    for c in status.conditions:
        if c.type == conditions.FAILED and c.status:
            return f"{c.reason}: {c.message}"
    return None


def _alert_on_failure_change(cluster: Cluster, orig_status: ClusterStatus) -> None:
    before = _failure_message(orig_status)
    after = _failure_message(cluster.status)
    if before == after:
        return

    if after is None:
        db.log_event("INFO", "Cluster recovered", cluster=cluster.name, namespace=cluster.namespace)
    else:
        db.log_event("ERROR", f"Cluster failed: {after}", cluster=cluster.name, namespace=cluster.namespace)

    send_email(*failure_alert(cluster.namespace, cluster.name, before, after))


def reconcile_cluster(namespace: str, name: str) -> ReconcileResult:
    """Run one level-triggered cycle for a cluster.

    Store errors propagate to the caller, which retries the whole cycle.
    A cluster that no longer exists is a no-op; its members and instances are
    removed by the store along with it.
    """
    try:
        cluster = db.get_object(Cluster, namespace, name)
    except db.NotFound:
        return ReconcileResult()

    orig_status = copy.deepcopy(cluster.status)
    cycle = ClusterCycle(cluster)

    try:
        cycle.run(orig_status)
    except Exception:
        if cluster.status != orig_status:
            try:
                db.update_status(cluster)
            except db.StoreError as save_err:
                # Keep the original error; the save is retried next cycle.
                db.log_event("ERROR", f"Update status failed: {save_err}", cluster=name, namespace=namespace)
        raise

    if cluster.status != orig_status:
        db.update_status(cluster)
        cycle.result.status_changed = True
        _alert_on_failure_change(cluster, orig_status)

    return cycle.result


class Reconciler:
    """Continuously reconciles every cluster.

    Clusters are reconciled when enqueued (API writes, or a previous cycle
    that changed something) and all of them every poll interval.
    """

    def __init__(self, poll_interval_s: int | None = None, clock: Callable[[], float] = time.monotonic):
        self.poll_interval_s = max(1, int(poll_interval_s or settings.poll_interval_s))
        self._clock = clock
        self._last_resync: float | None = None
        self._stop = Event()
        self._wake = Event()
        self._lock = Lock()
        self._pending: list[tuple[str, str]] = []
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    def enqueue(self, namespace: str, name: str) -> None:
        key = (namespace, name)
        with self._lock:
            if key not in self._pending:
                self._pending.append(key)
        self._wake.set()

    def resync(self) -> None:
        self._last_resync = self._clock()
        clusters = sorted(db.list_objects(Cluster), key=lambda c: (c.namespace, c.name))
        for c in clusters:
            self.enqueue(c.namespace, c.name)

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            self._wake.wait(timeout=self._until_resync())
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
        db.log_event("INFO", "Reconciler stopped")

    def _until_resync(self) -> float:
        if self._last_resync is None:
            return 0.0
        return max(0.0, self._last_resync + self.poll_interval_s - self._clock())

    def tick(self) -> int:
        """Resync if a poll interval has passed since the last one, then run the queue.

        Resync is due on time regardless of how often the loop is woken by enqueues.
        """
        if self._until_resync() <= 0:
            self.resync()
        return self.run_pending()

    def run_pending(self) -> int:
        """Reconcile everything queued so far. Returns the number of cycles run."""
        with self._lock:
            batch, self._pending = self._pending, []

        for namespace, name in batch:
            try:
                result = reconcile_cluster(namespace, name)
            except db.StoreError as e:
                # Conflicts and vanished objects: the periodic resync retries.
                db.log_event("WARN", f"Reconcile aborted: {e}", cluster=name, namespace=namespace)
                continue
            except Exception as e:
                db.log_event(
                    "ERROR", f"Reconcile failed: {type(e).__name__}: {e}", cluster=name, namespace=namespace
                )
                continue
            if result.changed:
                self.enqueue(namespace, name)
        return len(batch)
