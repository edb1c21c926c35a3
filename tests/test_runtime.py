import pytest
from docker.errors import DockerException

from qcr import db, docker_ops
from qcr.docker_ops import ContainerRef
from qcr.models import Instance, InstanceSpec
from qcr.runtime import InstanceRuntime


class FakeDocker:
    """Records what the runtime asks Docker to do."""

    def __init__(self, containers=None):
        self.containers = list(containers or [])
        self.created: list[str] = []
        self.removed: list[str] = []
        self.broken_images: set[str] = set()

    def create(self, instance):
        if instance.spec.image in self.broken_images:
            raise DockerException(f"pull access denied for {instance.spec.image}")
        ref = ContainerRef(
            id=f"id-{instance.name}-{len(self.created)}",
            name=docker_ops.container_name(instance),
            namespace=instance.namespace,
            instance=instance.name,
            spec_hash=docker_ops.spec_hash(instance),
            running=True,
        )
        self.created.append(instance.name)
        self.containers.append(ref)
        return ref

    def remove(self, container_id, force=True):
        self.removed.append(container_id)
        self.containers = [c for c in self.containers if c.id != container_id]


@pytest.fixture
def fake_docker(monkeypatch):
    fake = FakeDocker()
    monkeypatch.setattr(docker_ops, "docker_available", lambda: True)
    monkeypatch.setattr(docker_ops, "list_instance_containers", lambda: list(fake.containers))
    monkeypatch.setattr(docker_ops, "create_instance_container", fake.create)
    monkeypatch.setattr(docker_ops, "remove_container", fake.remove)
    return fake


def make_instance(name="nb-0", image="ovsdb:1"):
    spec = InstanceSpec(image=image, db_type="NB", server_name=name, cluster_name="nb")
    return db.create_object(Instance(name=name, namespace="ovn", spec=spec))


def test_starts_missing_container_and_reports_ready(fake_docker):
    make_instance()

    InstanceRuntime(poll_interval_s=60).sync()

    assert fake_docker.created == ["nb-0"]
    inst = db.get_object(Instance, "ovn", "nb-0")
    assert inst.status.ready is True
    assert inst.status.container_id == "id-nb-0-0"


def test_sync_is_idempotent(fake_docker):
    make_instance()
    runtime = InstanceRuntime(poll_interval_s=60)
    runtime.sync()
    version = db.get_object(Instance, "ovn", "nb-0").resource_version

    runtime.sync()

    assert fake_docker.created == ["nb-0"]
    assert db.get_object(Instance, "ovn", "nb-0").resource_version == version


def test_recreates_container_when_spec_changes(fake_docker):
    inst = make_instance(image="ovsdb:1")
    runtime = InstanceRuntime(poll_interval_s=60)
    runtime.sync()

    # Replacement as the reconciler does it: delete, then create with the new spec.
    db.delete_object(db.get_object(Instance, "ovn", inst.name))
    make_instance(image="ovsdb:2")
    runtime.sync()

    assert fake_docker.created == ["nb-0", "nb-0"]
    assert fake_docker.removed == ["id-nb-0-0"]
    assert db.get_object(Instance, "ovn", "nb-0").status.container_id == "id-nb-0-1"


def test_restarts_stopped_container(fake_docker):
    inst = make_instance()
    fake_docker.containers.append(
        ContainerRef(
            id="old",
            name="qcr-ovn-nb-0",
            namespace="ovn",
            instance="nb-0",
            spec_hash=docker_ops.spec_hash(inst),
            running=False,
        )
    )

    InstanceRuntime(poll_interval_s=60).sync()

    assert fake_docker.removed == ["old"]
    assert fake_docker.created == ["nb-0"]


def test_removes_containers_without_instance(fake_docker):
    fake_docker.containers.append(
        ContainerRef(id="orphan", name="qcr-ovn-nb-3", namespace="ovn", instance="nb-3", spec_hash="x", running=True)
    )

    InstanceRuntime(poll_interval_s=60).sync()

    assert fake_docker.removed == ["orphan"]
    assert fake_docker.created == []


def test_does_nothing_without_docker(monkeypatch):
    make_instance()
    monkeypatch.setattr(docker_ops, "docker_available", lambda: False)

    InstanceRuntime(poll_interval_s=60).sync()

    assert db.get_object(Instance, "ovn", "nb-0").status.ready is False


def test_spec_hash_tracks_spec_only():
    a = Instance(name="nb-0", namespace="ovn", spec=InstanceSpec(image="ovsdb:1"))
    b = Instance(name="nb-0", namespace="ovn", spec=InstanceSpec(image="ovsdb:1"))
    b.status.ready = True
    c = Instance(name="nb-0", namespace="ovn", spec=InstanceSpec(image="ovsdb:2"))

    assert docker_ops.spec_hash(a) == docker_ops.spec_hash(b)
    assert docker_ops.spec_hash(a) != docker_ops.spec_hash(c)


@pytest.mark.parametrize("name", ["nb", "nb-0", "ovn-central-2"])
def test_valid_names(name):
    docker_ops.validate_name(name)


@pytest.mark.parametrize("name", ["", "NB", "-nb", "nb-", "nb_0", "a" * 64])
def test_invalid_names(name):
    with pytest.raises(ValueError):
        docker_ops.validate_name(name)


def test_failed_container_does_not_hold_back_other_instances(fake_docker):
    fake_docker.broken_images.add("bad-image")
    make_instance("nb-0", image="bad-image")
    make_instance("nb-1")
    fake_docker.containers.append(
        ContainerRef(id="orphan", name="qcr-ovn-nb-3", namespace="ovn", instance="nb-3", spec_hash="x", running=True)
    )

    InstanceRuntime(poll_interval_s=60).sync()

    assert fake_docker.created == ["nb-1"]
    assert fake_docker.removed == ["orphan"]
    assert db.get_object(Instance, "ovn", "nb-0").status.ready is False
    assert db.get_object(Instance, "ovn", "nb-1").status.ready is True
    events = db.latest_events(20)
    assert any(e["level"] == "ERROR" and "pull access denied" in e["message"] for e in events)


def test_instance_is_unready_when_its_replacement_container_fails(fake_docker):
    make_instance(image="ovsdb:1")
    runtime = InstanceRuntime(poll_interval_s=60)
    runtime.sync()
    assert db.get_object(Instance, "ovn", "nb-0").status.ready is True

    db.delete_object(db.get_object(Instance, "ovn", "nb-0"))
    fake_docker.broken_images.add("ovsdb:2")
    make_instance(image="ovsdb:2")
    inst = db.get_object(Instance, "ovn", "nb-0")
    inst.status.ready = True
    inst.status.container_id = "id-nb-0-0"
    db.update_status(inst)

    runtime.sync()

    inst = db.get_object(Instance, "ovn", "nb-0")
    assert fake_docker.removed == ["id-nb-0-0"]
    assert inst.status.ready is False
    assert inst.status.container_id is None
