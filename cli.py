from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _auth(args) -> tuple[str, str]:
    return (args.user, args.password)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Quorum Cluster Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--namespace", "-n", default="default")
    p.add_argument("--user", default=os.getenv("QCR_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("QCR_ADMIN_PASSWORD", "admin"))
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("clusters", help="List clusters")

    s_show = sub.add_parser("show", help="Show a cluster with its servers and instances")
    s_show.add_argument("name")

    s_apply = sub.add_parser("apply", help="Create or update a cluster")
    s_apply.add_argument("name")
    s_apply.add_argument("--replicas", type=int, default=1)
    s_apply.add_argument("--db-type", choices=["NB", "SB"], default="NB")
    s_apply.add_argument("--image", default=None)
    s_apply.add_argument("--storage-size", default="10G")
    s_apply.add_argument("--storage-class", default=None)

    s_scale = sub.add_parser("scale", help="Change the replica count")
    s_scale.add_argument("name")
    s_scale.add_argument("--replicas", type=int, required=True)

    s_del = sub.add_parser("delete", help="Delete a cluster with its servers and instances")
    s_del.add_argument("name")

    s_rec = sub.add_parser("reconcile", help="Run one reconcile cycle now")
    s_rec.add_argument("name")

    s_rep = sub.add_parser("report", help="Report a server's bootstrap status (as the agent would)")
    s_rep.add_argument("name", help="Cluster name")
    s_rep.add_argument("server", help="Server name, e.g. mycluster-0")
    s_rep.add_argument("--available", action="store_true")
    s_rep.add_argument("--failed", action="store_true")
    s_rep.add_argument("--message", default="")
    s_rep.add_argument("--cluster-id", default=None)
    s_rep.add_argument("--raft-address", default=None)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--cluster", default=None)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    ns = args.namespace

    if args.cmd == "clusters":
        _print(requests.get(f"{base}/clusters", timeout=10).json())
        return 0

    if args.cmd == "show":
        r = requests.get(f"{base}/clusters/{ns}/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.cluster:
            params["cluster"] = args.cluster
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "apply":
        payload = {
            "replicas": args.replicas,
            "db_type": args.db_type,
            "image": args.image,
            "storage_size": args.storage_size,
            "storage_class": args.storage_class,
        }
        r = requests.put(f"{base}/clusters/{ns}/{args.name}", json=payload, auth=_auth(args), timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "scale":
        r = requests.post(
            f"{base}/clusters/{ns}/{args.name}/scale",
            json={"replicas": args.replicas},
            auth=_auth(args),
            timeout=30,
        )
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete":
        r = requests.delete(f"{base}/clusters/{ns}/{args.name}", auth=_auth(args), timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "reconcile":
        r = requests.post(f"{base}/clusters/{ns}/{args.name}/reconcile", auth=_auth(args), timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "report":
        payload = {
            "available": args.available,
            "failed": args.failed,
            "message": args.message,
            "cluster_id": args.cluster_id,
            "raft_address": args.raft_address,
        }
        r = requests.put(
            f"{base}/clusters/{ns}/{args.name}/members/{args.server}/status",
            json=payload,
            auth=_auth(args),
            timeout=30,
        )
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
