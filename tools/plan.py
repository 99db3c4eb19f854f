#!/usr/bin/env python3
"""Plan-only runner: prints what the operator would do for each Service without changing anything.

Usage:
  LOAD_BALANCER_CLASS=fly-tunnel-operator.dev/lb python3 tools/plan.py

Notes:
- Uses your local kubeconfig (same behavior as app.py).
- Does not create/update/delete any objects, here or on Fly.io.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import k8s  # noqa: E402
from config import DEFAULT_LOAD_BALANCER_CLASS  # noqa: E402
from reconcile import UNMANAGED, describe  # noqa: E402


def plan(services: list[dict], load_balancer_class: str, show_all: bool = False) -> list[dict]:
    rows = [describe(s, load_balancer_class) for s in services]
    if not show_all:
        rows = [r for r in rows if r["state"] != UNMANAGED]
    return sorted(rows, key=lambda r: (r["namespace"], r["name"]))


def print_plan(rows: list[dict]) -> None:
    print(f"[plan] managed services: {len(rows)}")
    for r in rows:
        ip = r["public_ip"] or "-"
        print(f"  - {r['namespace']}/{r['name']}: state={r['state']} action={r['action']} ip={ip}")


def main() -> None:
    lb_class = os.environ.get("LOAD_BALANCER_CLASS", DEFAULT_LOAD_BALANCER_CLASS)
    show_all = os.environ.get("SHOW_ALL", "0") == "1"

    k8s.load_kube()
    kube = k8s.KubeClient()

    print_plan(plan(kube.list_services(), lb_class, show_all))


if __name__ == "__main__":
    main()
