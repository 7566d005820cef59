"""Konverge CLI - Command-line interface for the reconciliation core.

This module provides the main CLI entrypoint for Konverge, allowing users
to validate manifests, preview plans and run the controller against an
in-memory cluster.
"""

import argparse
import logging
import sys
from typing import Dict, List, Optional

from konverge.core.backend import InMemoryBackend
from konverge.core.cache import ObservedStateCache
from konverge.core.config import ControllerConfig, load_config
from konverge.core.errors import KonvergeError, ValidationError
from konverge.core.planner import plan
from konverge.core.reconciler import Reconciler
from konverge.core.schema.action import ActionPlan
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.core.store import DesiredStateStore
from konverge.k8s.constants import CONDITION_DEGRADED, CONDITION_READY, RETAIN_ANNOTATION
from konverge.k8s.examples import WEB_DEPLOYMENT, example_nodes
from konverge.k8s.manifest import ManifestBundle, load_documents, record_from_manifest
from konverge.k8s.status import get_condition
from konverge.k8s.utils import get_images, is_managed
from konverge.k8s.validation import check, check_identity

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None):
    """Main CLI entrypoint for Konverge."""
    parser = argparse.ArgumentParser(
        prog="konverge",
        description="Konverge - declarative Kubernetes-style reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate manifests
  konverge validate manifests/

  # Show the plan that would create everything
  konverge plan manifests/

  # Show the plan against a snapshot of live state
  konverge plan manifests/ --observed live/

  # Run the controller against an in-memory cluster with 3 nodes
  konverge simulate manifests/ --nodes 3 --out converged/

  # Watch a rolling update batch by batch
  konverge demo -v
"""
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    validate_parser = subparsers.add_parser("validate", help="Validate manifests")
    validate_parser.add_argument("paths", nargs="+", help="Manifest files or directories")
    validate_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    plan_parser = subparsers.add_parser("plan", help="Print the plan for manifests")
    plan_parser.add_argument("paths", nargs="+", help="Manifest files or directories")
    plan_parser.add_argument("--observed", help="Directory of manifests describing live state")
    plan_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    simulate_parser = subparsers.add_parser(
        "simulate", help="Run the controller against an in-memory cluster"
    )
    simulate_parser.add_argument("paths", nargs="+", help="Manifest files or directories")
    simulate_parser.add_argument(
        "--workers", type=int, default=None,
        help="Reconciler workers (default: from config.json or 4)"
    )
    simulate_parser.add_argument("--nodes", type=int, default=3, help="Number of simulated nodes (default: 3)")
    simulate_parser.add_argument(
        "--timeout", type=float, default=30.0, help="Seconds to wait for convergence (default: 30)"
    )
    simulate_parser.add_argument("--out", help="Directory to write the converged cluster state to")
    simulate_parser.add_argument("--config", help="Path to config.json (default: $KONVERGE_CONFIG or ./config.json)")
    simulate_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    demo_parser = subparsers.add_parser("demo", help="Roll a Deployment from image A to image B")
    demo_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    # Setup logging
    if hasattr(args, 'verbose') and args.verbose:
        logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
    else:
        logging.basicConfig(level=logging.WARNING, format='%(levelname)s: %(message)s')

    # Handle commands
    if args.command == "validate":
        return cmd_validate(args)
    elif args.command == "plan":
        return cmd_plan(args)
    elif args.command == "simulate":
        return cmd_simulate(args)
    elif args.command == "demo":
        return cmd_demo(args)
    else:
        parser.print_help()
        return 1


def _load(paths: List[str]) -> List[ResourceRecord]:
    return ManifestBundle.from_paths(paths).records()


def print_plan(identity: ResourceIdentity, action_plan: ActionPlan) -> None:
    if action_plan.is_empty:
        print(f"{identity}: up to date")
        return
    print(f"{identity}: {len(action_plan.steps)} batch(es)")
    for index, step in enumerate(action_plan.steps, 1):
        print(f"  batch {index}:")
        for action in step:
            print(f"    {action!r}")


def cmd_validate(args):
    """Handle validate command."""
    failures = 0
    total = 0
    try:
        bundle = ManifestBundle.from_paths(args.paths)
        for path in sorted(bundle.files):
            for doc in load_documents(bundle.files[path], source=path):
                total += 1
                try:
                    record = record_from_manifest(doc)
                except ValidationError as e:
                    failures += 1
                    print(f"✗ {path}: {e}")
                    continue
                violations = check_identity(record.identity) + check(record.kind, record.spec)
                if violations:
                    failures += 1
                    print(f"✗ {record.identity} ({path})")
                    for violation in violations:
                        print(f"    - {violation}")
                else:
                    print(f"✓ {record.identity}")
    except (OSError, KonvergeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"\n{total - failures}/{total} manifests valid")
    return 1 if failures else 0


def cmd_plan(args):
    """Handle plan command."""
    try:
        desired = {r.identity: r for r in _load(args.paths)}
        cache = ObservedStateCache()
        if args.observed:
            observed = _load([args.observed])
            for kind in sorted({r.kind for r in observed}):
                cache.replace(kind, observed)
    except (OSError, KonvergeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # Top-level live records the controller wrote, without desired state, are
    # planned for deletion
    identities = set(desired)
    identities.update(
        r.identity for r in cache.all()
        if not r.owner_references and is_managed(r) and not r.annotations.get(RETAIN_ANNOTATION)
    )

    for identity in sorted(identities):
        record = desired.get(identity)
        observed_record = cache.get(identity)
        children = cache.descendants(identity) if observed_record is not None else None
        action_plan = plan(
            record,
            observed_record,
            children,
            nodes=cache.list("Node"),
            claims=cache.list("PersistentVolumeClaim", identity.namespace),
        )
        print_plan(identity, action_plan)
    return 0


def cmd_simulate(args):
    """Handle simulate command."""
    config = ControllerConfig.from_config(load_config(args.config))
    workers = args.workers or config.workers

    try:
        records = _load(args.paths)
    except (OSError, KonvergeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    backend = InMemoryBackend()
    for node in example_nodes(args.nodes):
        backend.write(node.identity, node, None)

    store = DesiredStateStore(finalizers=(config.finalizer,))
    reconciler = Reconciler(store, ObservedStateCache(), backend, config=config)
    reconciler.start(workers)
    try:
        for record in records:
            try:
                store.apply(
                    record.identity,
                    record.spec,
                    labels=record.labels,
                    annotations=record.annotations,
                    owner_references=record.owner_references,
                )
            except KonvergeError as e:
                print(f"✗ {record.identity}: {e}")
                return 1
        converged = reconciler.wait_idle(args.timeout)
    finally:
        reconciler.stop()

    print(f"Converged: {'yes' if converged else 'no (timed out)'} after {reconciler.passes} passes")
    exit_code = 0 if converged else 1
    if not converged:
        logger.warning(f"Work queue still busy after {args.timeout}s; state below is partial")
    for record in store.list():
        ready = get_condition(record.status, CONDITION_READY) or {}
        degraded = get_condition(record.status, CONDITION_DEGRADED) or {}
        marker = "✓" if ready.get("status") == "True" else "…"
        if degraded.get("status") == "True":
            marker = "✗"
            exit_code = 1
        summary = _summary(record.status)
        print(f"{marker} {record.identity} {summary}".rstrip())
        if degraded.get("status") == "True":
            print(f"    Degraded: {degraded.get('reason')} {degraded.get('message')}".rstrip())

    live = backend.records()
    counts: Dict[str, int] = {}
    for record in live:
        counts[record.kind] = counts.get(record.kind, 0) + 1
    print("Live objects: " + ", ".join(f"{kind}={n}" for kind, n in sorted(counts.items())))

    if args.out:
        ManifestBundle.from_records(live).write_to_dir(args.out)
        print(f"Wrote cluster state to: {args.out}")
    return exit_code


def _summary(status: dict) -> str:
    fields = ("replicas", "availableReplicas", "readyReplicas", "numberReady",
              "desiredNumberScheduled", "active", "succeeded", "failed")
    return " ".join(f"{k}={status[k]}" for k in fields if k in status)


def cmd_demo(args):
    """Handle demo command."""
    print("Rolling Deployment default/web from image 1.0.0 to 2.0.0 (maxSurge=1, maxUnavailable=1)")
    print()

    backend = InMemoryBackend()
    cache = ObservedStateCache()
    store = DesiredStateStore()
    reconciler = Reconciler(store, cache, backend, config=ControllerConfig(kinds=("Deployment", "Pod")))

    record = _load_text(WEB_DEPLOYMENT)
    store.apply(record.identity, record.spec, labels=record.labels)
    reconciler.drain()
    print(f"Created: {_pods(backend, record.identity)}")

    spec = record.copy_spec()
    spec["template"]["spec"]["containers"][0]["image"] = "registry.example.com/web:2.0.0"
    store.apply(record.identity, spec, labels=record.labels)

    batch = 0
    while True:
        identity = reconciler.queue.get(timeout=0)
        if identity is None:
            break
        try:
            result = reconciler.reconcile(identity)
        finally:
            reconciler.queue.done(identity)
        if identity == record.identity and result.actions:
            batch += 1
            print(f"Batch {batch}: {', '.join(repr(a) for a in result.actions)}")
            print(f"         pods: {_pods(backend, record.identity)}")

    status = store.get(record.identity).status
    print()
    print(f"Done: {_summary(status)}")
    return 0


def _load_text(content: str) -> ResourceRecord:
    return record_from_manifest(load_documents(content)[0])


def _pods(backend: InMemoryBackend, owner: ResourceIdentity) -> str:
    pods = [r for r in backend.list("Pod") if r.is_owned_by(owner)]
    images = [get_images(r.spec)[0].rsplit(":", 1)[-1] for r in pods]
    return f"{len(pods)} pods ({', '.join(images)})"


if __name__ == "__main__":
    sys.exit(main())
