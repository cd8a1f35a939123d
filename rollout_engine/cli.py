import argparse
import asyncio
import json
import sys

import yaml

from .control import InMemoryControlAPI
from .descriptors import DescriptorStore
from .engine import OrchestrationDriver
from .logger import setup_logging, get_logger
from .models import OrchestratorConfig


def load_descriptors(path):
    logger = get_logger("cli")
    try:
        return DescriptorStore().load_file(path)
    except Exception as e:
        logger.error(f"Error loading descriptors: {e}")
        raise


def load_config(path=None, **overrides):
    data = {}
    if path:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    return OrchestratorConfig.from_mapping(data, **overrides)


def plan_to_dict(waves):
    return [{"wave": w.index, "tier": w.tier, "workloads": w.names} for w in waves]


def save_report(path, report):
    with open(path, "w") as f:
        json.dump(report.to_dict(), f, indent=2)


def build_control(args, config):
    if args.simulate:
        return InMemoryControlAPI()
    from .kube import KubernetesControlAPI
    return KubernetesControlAPI.from_kubeconfig(namespace=config.namespace, context=args.context)


def main():
    parser = argparse.ArgumentParser(description="Tiered rollout engine")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="cmd", required=True)

    plan = sub.add_parser("plan", help="print the wave plan")
    plan.add_argument("--descriptors", required=True)

    deploy = sub.add_parser("deploy", help="deploy descriptors wave by wave")
    deploy.add_argument("--descriptors", required=True)
    deploy.add_argument("--config")
    deploy.add_argument("--cluster")
    deploy.add_argument("--namespace")
    deploy.add_argument("--context", help="kubeconfig context")
    deploy.add_argument("--health-timeout", type=float)
    deploy.add_argument("--health-interval", type=float)
    deploy.add_argument("--endpoint-timeout", type=float)
    deploy.add_argument("--endpoint-interval", type=float)
    deploy.add_argument("--cascade-rollback", action="store_true", default=None)
    deploy.add_argument("--no-adopt-live", dest="adopt_live", action="store_false", default=None,
                        help="do not use healthy live workloads as rollback targets; without them a "
                             "failed first run has nothing to roll back to")
    deploy.add_argument("--simulate", action="store_true", help="use the in-memory control plane")
    deploy.add_argument("--report", help="also write the report to this file")

    args = parser.parse_args()
    setup_logging(args.log_level)

    if args.cmd == "plan":
        try:
            waves = OrchestrationDriver(InMemoryControlAPI()).plan(load_descriptors(args.descriptors))
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(json.dumps(plan_to_dict(waves), indent=2))

    if args.cmd == "deploy":
        try:
            descriptors = load_descriptors(args.descriptors)
            config = load_config(
                args.config,
                cluster=args.cluster,
                namespace=args.namespace,
                health_timeout_s=args.health_timeout,
                health_interval_s=args.health_interval,
                endpoint_timeout_s=args.endpoint_timeout,
                endpoint_interval_s=args.endpoint_interval,
                cascade_rollback=args.cascade_rollback,
                adopt_live_revisions=args.adopt_live,
            )
            control = build_control(args, config)
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)

        report = asyncio.run(OrchestrationDriver(control, config).run(descriptors))
        print(json.dumps(report.to_dict(), indent=2))
        if args.report:
            save_report(args.report, report)
        if not report.success:
            sys.exit(1)


if __name__ == "__main__":
    main()
