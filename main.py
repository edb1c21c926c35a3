from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from qcr import conditions, db
from qcr.api_models import ApplyClusterRequest, MemberStatusReport, ScaleRequest
from qcr.docker_ops import validate_name
from qcr.models import CLUSTER_LABEL, Cluster, ClusterSpec, Member
from qcr.reconciler import Reconciler, list_instances, list_members, reconcile_cluster
from qcr.runtime import InstanceRuntime
from qcr.settings import settings

REASON_MEMBER_FAILED = "BootstrapFailed"

reconciler = Reconciler()
instance_runtime = InstanceRuntime()


@asynccontextmanager
async def lifespan(app: FastAPI):
    db.init_db()
    reconciler.start()
    if settings.enable_runtime:
        instance_runtime.start()
    yield
    reconciler.stop()
    instance_runtime.stop()


app = FastAPI(title="Quorum Cluster Reconciler", lifespan=lifespan)
security = HTTPBasic()


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    user_ok = secrets.compare_digest(credentials.username, settings.admin_user)
    pass_ok = secrets.compare_digest(credentials.password, settings.admin_password)
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


@app.exception_handler(db.NotFound)
async def not_found_handler(request: Request, exc: db.NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(db.Conflict)
async def conflict_handler(request: Request, exc: db.Conflict) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def _validate(*names: str) -> None:
    for n in names:
        try:
            validate_name(n)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/clusters")
def get_clusters() -> list[dict[str, Any]]:
    clusters = sorted(db.list_objects(Cluster), key=lambda c: (c.namespace, c.name))
    return [c.to_dict() for c in clusters]


@app.get("/clusters/{namespace}/{name}")
def get_cluster(namespace: str, name: str) -> dict[str, Any]:
    cluster = db.get_object(Cluster, namespace, name)
    return {
        "cluster": cluster.to_dict(),
        "members": [m.to_dict() for m in list_members(cluster)],
        "instances": [i.to_dict() for i in list_instances(cluster)],
    }


@app.put("/clusters/{namespace}/{name}")
def apply_cluster(
    namespace: str, name: str, req: ApplyClusterRequest, username: str = Depends(get_current_username)
) -> dict[str, Any]:
    _validate(namespace, name)
    spec = ClusterSpec(
        replicas=req.replicas,
        db_type=req.db_type,
        image=req.image,
        storage_size=req.storage_size,
        storage_class=req.storage_class,
    )
    try:
        cluster = db.get_object(Cluster, namespace, name)
    except db.NotFound:
        cluster = db.create_object(Cluster(name=name, namespace=namespace, spec=spec))
        db.log_event("INFO", f"Cluster created by {username} ({req.replicas} replicas)", cluster=name, namespace=namespace)
    else:
        if cluster.spec.db_type != spec.db_type and cluster.status.cluster_id is not None:
            raise HTTPException(status_code=400, detail="db_type cannot change once the cluster is bootstrapped")
        if cluster.spec != spec:
            cluster.spec = spec
            db.update_object(cluster)
            db.log_event("INFO", f"Cluster spec updated by {username}", cluster=name, namespace=namespace)

    reconciler.enqueue(namespace, name)
    return cluster.to_dict()


@app.post("/clusters/{namespace}/{name}/scale")
def scale_cluster(
    namespace: str, name: str, req: ScaleRequest, username: str = Depends(get_current_username)
) -> dict[str, Any]:
    cluster = db.get_object(Cluster, namespace, name)
    if cluster.spec.replicas != req.replicas:
        old = cluster.spec.replicas
        cluster.spec.replicas = req.replicas
        db.update_object(cluster)
        db.log_event("INFO", f"Scaled by {username}: {old} -> {req.replicas}", cluster=name, namespace=namespace)
    reconciler.enqueue(namespace, name)
    return cluster.to_dict()


@app.delete("/clusters/{namespace}/{name}")
def delete_cluster(namespace: str, name: str, username: str = Depends(get_current_username)) -> dict[str, str]:
    cluster = db.get_object(Cluster, namespace, name)
    db.delete_object(cluster)
    db.log_event("INFO", f"Cluster deleted by {username}", cluster=name, namespace=namespace)
    return {"status": "deleted"}


@app.post("/clusters/{namespace}/{name}/reconcile")
def reconcile_now(namespace: str, name: str, username: str = Depends(get_current_username)) -> dict[str, Any]:
    db.get_object(Cluster, namespace, name)
    result = reconcile_cluster(namespace, name)
    if result.changed:
        reconciler.enqueue(namespace, name)
    return {
        "status_changed": result.status_changed,
        "actions": [{"verb": a.verb, "kind": a.kind, "name": a.name} for a in result.actions],
    }


@app.put("/clusters/{namespace}/{name}/members/{member}/status")
def report_member_status(
    namespace: str,
    name: str,
    member: str,
    req: MemberStatusReport,
    username: str = Depends(get_current_username),
) -> dict[str, Any]:
    m = db.get_object(Member, namespace, member)
    if m.labels.get(CLUSTER_LABEL) != name:
        raise HTTPException(status_code=404, detail=f"Server {member} does not belong to cluster {name}")

    if req.available:
        conditions.set_available(m)
    else:
        conditions.unset_available(m)
    if req.failed:
        conditions.set_failed(m, REASON_MEMBER_FAILED, req.message)
    else:
        conditions.unset_failed(m)
    m.status.cluster_id = req.cluster_id
    m.status.raft_address = req.raft_address

    db.update_status(m)
    reconciler.enqueue(namespace, name)
    return m.to_dict()


@app.get("/events")
def get_events(limit: int = 100, cluster: str | None = None) -> list[dict[str, Any]]:
    limit = max(1, min(1000, limit))
    return db.latest_events(limit, cluster=cluster)
