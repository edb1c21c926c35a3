from __future__ import annotations

from threading import Event, Thread

from docker.errors import DockerException

from . import db, docker_ops
from .docker_ops import ContainerRef
from .models import Instance
from .settings import settings


class InstanceRuntime:
    """Runs one container per Instance object and reports readiness back to the store.

    This plays the part of the node agent: the reconciler only decides which
    instances should exist; this turns them into containers.
    """

    def __init__(self, poll_interval_s: int | None = None):
        self.poll_interval_s = max(1, int(poll_interval_s or settings.poll_interval_s))
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Instance runtime started")
        while not self._stop.is_set():
            try:
                self.sync()
            except Exception as e:
                db.log_event("ERROR", f"Instance runtime tick failed: {type(e).__name__}: {e}")
            self._stop.wait(self.poll_interval_s)

    def sync(self) -> None:
        """Make the set of containers match the set of instances."""
        if not docker_ops.docker_available():
            return

        instances = sorted(db.list_objects(Instance), key=lambda i: (i.namespace, i.name))
        containers = {(c.namespace, c.instance): c for c in docker_ops.list_instance_containers()}

        wanted: set[tuple[str, str]] = set()
        for inst in instances:
            key = (inst.namespace, inst.name)
            wanted.add(key)
            try:
                ref = self._ensure_container(inst, containers.get(key))
            except (DockerException, RuntimeError) as e:
                # One bad image must not hold back the other instances.
                db.log_event(
                    "ERROR",
                    f"Could not start container for instance {inst.name}: {type(e).__name__}: {e}",
                    cluster=inst.spec.cluster_name,
                    namespace=inst.namespace,
                )
                ref = None
            self._report(inst, ref)

        # Containers whose instance was deleted (replacement or scale to zero).
        for key, ref in containers.items():
            if key in wanted:
                continue
            try:
                docker_ops.remove_container(ref.id, force=True)
            except DockerException as e:
                db.log_event("ERROR", f"Could not remove container {ref.name}: {e}", namespace=ref.namespace)
                continue
            db.log_event("INFO", f"Removed container {ref.name}", namespace=ref.namespace)

    def _ensure_container(self, inst: Instance, ref: ContainerRef | None) -> ContainerRef:
        if ref is not None and ref.spec_hash == docker_ops.spec_hash(inst) and ref.running:
            return ref

        if ref is not None:
            reason = "configuration changed" if ref.running else "container stopped"
            db.log_event(
                "WARN",
                f"Recreating container {ref.name}: {reason}",
                cluster=inst.spec.cluster_name,
                namespace=inst.namespace,
            )
            docker_ops.remove_container(ref.id, force=True)

        return docker_ops.create_instance_container(inst)

    def _report(self, inst: Instance, ref: ContainerRef | None) -> None:
        ready = ref.running if ref is not None else False
        container_id = ref.id if ref is not None else None
        if inst.status.ready == ready and inst.status.container_id == container_id:
            return
        inst.status.ready = ready
        inst.status.container_id = container_id
        try:
            db.update_status(inst)
        except db.StoreError as e:
            # Instance changed or went away under us; the next tick sees the new state.
            db.log_event("WARN", f"Could not report status of instance {inst.name}: {e}", namespace=inst.namespace)
