"""Quorum Cluster Reconciler (QCR).

Control loop for replicated, raft-based database clusters (OVSDB style):
 - bootstraps a new cluster from a single seed member
 - scales membership up toward the declared replica count
 - starts a runtime instance for every member that has joined
 - replaces instances only while quorum can absorb the disruption
 - reports availability, quorum and ClusterID consistency on the cluster

State lives in a small declarative store (sqlite); the loop is level-triggered
and every write is idempotent, so any cycle can be interrupted and rerun.
"""
