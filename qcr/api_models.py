from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

MAX_REPLICAS = 15


class ApplyClusterRequest(BaseModel):
    replicas: int = Field(1, ge=0, le=MAX_REPLICAS, description="Target number of servers; 0 stops every instance")
    db_type: Literal["NB", "SB"] = Field("NB", description="Which OVN database the cluster serves")
    image: str | None = Field(None, description="Server image; defaults to QCR_SERVER_IMAGE")
    storage_size: str = Field("10G", description="Storage requested per server")
    storage_class: str | None = None


class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0, le=MAX_REPLICAS)


class MemberStatusReport(BaseModel):
    """Sent by the bootstrap agent of a server."""

    available: bool = Field(False, description="Server has joined the cluster")
    failed: bool = Field(False, description="Server gave up initializing")
    message: str = ""
    cluster_id: str | None = Field(None, description="ClusterID the server joined or created")
    raft_address: str | None = Field(None, description="e.g. tcp:10.0.0.5:6643")
