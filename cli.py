from __future__ import annotations

import argparse
import json
import sys

import requests


# Response codes shared with the API: 0 OK, 1 ConflictingRollout,
# 2 NoBackendAvailable, 3 CapacityExceeded.
OK = 0


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _exit_code(r: requests.Response) -> int:
    try:
        body = r.json()
    except ValueError:
        body = {"detail": r.text}
    _print(body)
    code = body.get("code") if isinstance(body, dict) else None
    if isinstance(code, int):
        return code
    return OK if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Availability Control Plane CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", help="Operator user (when API auth is enabled)")
    p.add_argument("--password", help="Operator password")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_dep = sub.add_parser("deploy", help="Deploy a digest-pinned revision")
    s_dep.add_argument("--workload", required=True)
    s_dep.add_argument("--artifact-ref", required=True, help="name@sha256:<digest>")
    s_dep.add_argument("--desired-count", type=int, default=1)
    s_dep.add_argument("--revision-id")

    s_abort = sub.add_parser("abort", help="Abort the in-flight rollout")
    s_abort.add_argument("--workload", required=True)
    s_abort.add_argument("--reason", default="operator abort")

    s_status = sub.add_parser("status", help="Show rollout status (all workloads when omitted)")
    s_status.add_argument("--workload")

    s_rb = sub.add_parser("rollback", help="Roll back to a previous revision")
    s_rb.add_argument("--workload", required=True)
    s_rb.add_argument("--to-revision", required=True)

    sub.add_parser("zones", help="List zones")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--entity")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.user else None

    if args.cmd == "deploy":
        payload = {"artifact_ref": args.artifact_ref, "desired_count": args.desired_count}
        if args.revision_id:
            payload["revision_id"] = args.revision_id
        r = requests.post(f"{base}/workloads/{args.workload}/deploy", json=payload, auth=auth, timeout=60)
        return _exit_code(r)

    if args.cmd == "abort":
        r = requests.post(f"{base}/workloads/{args.workload}/abort", json={"reason": args.reason}, auth=auth, timeout=30)
        return _exit_code(r)

    if args.cmd == "status":
        url = f"{base}/workloads/{args.workload}/status" if args.workload else f"{base}/status"
        return _exit_code(requests.get(url, timeout=10))

    if args.cmd == "rollback":
        r = requests.post(
            f"{base}/workloads/{args.workload}/rollback", json={"to_revision": args.to_revision}, auth=auth, timeout=60
        )
        return _exit_code(r)

    if args.cmd == "zones":
        return _exit_code(requests.get(f"{base}/zones", timeout=10))

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.entity:
            params["entity_id"] = args.entity
        return _exit_code(requests.get(f"{base}/events", params=params, timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
