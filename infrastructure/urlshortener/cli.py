"""
urlstack: plan, deploy, tear down and inspect the URL shortener stack.

  urlstack plan     --context domainName=example.org
  urlstack deploy   --context-file cdk.json --max-workers 4
  urlstack deploy   --local                   # in-memory environment, no AWS calls
  urlstack teardown --context removableTable=true
  urlstack status
  urlstack status   --outputs               # node outputs as JSON (ids, ARNs, endpoint)

Exit codes: 0 success, 1 the run failed (report names the first failed node),
2 the deployment could not be planned (nothing was touched).
"""
from __future__ import annotations

import argparse
import signal
import sys
from typing import Sequence

from pydantic import ValidationError

from provisioner.aws.environment import AwsEnvironment
from provisioner.errors import CyclicDependency, InvalidDescriptor, JournalConflict
from provisioner.executor import DeploymentContext, deploy, plan_deployment, teardown
from provisioner.journal import DeploymentJournal, DynamoJournalStore, FileJournalStore, describe, dump_outputs
from provisioner.memory import InMemoryEnvironment
from shared.logger import configure_logging, get_logger

from urlshortener.config import DeploymentConfig, load_context_file, parse_context
from urlshortener.stack import url_shortener_stack

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PLANNING = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="urlstack", description="URL shortener provisioner")
    parser.add_argument("command", choices=["plan", "deploy", "teardown", "status"])
    parser.add_argument("--context", action="append", metavar="KEY=VALUE", help="Context value (repeatable)")
    parser.add_argument("--context-file", help="JSON file of context values (cdk.json style accepted)")
    parser.add_argument("--journal", default=".urlstack", help="Directory for journal files")
    parser.add_argument("--journal-table", help="Keep the journal in this DynamoDB table instead")
    parser.add_argument("--local", action="store_true", help="Provision into an in-memory environment")
    parser.add_argument("--max-workers", type=int, default=1, help="Independent nodes provisioned at once")
    parser.add_argument("--certificate-timeout", type=float, default=1800.0, help="Seconds to wait for ISSUED")
    parser.add_argument("--poll-interval", type=float, default=15.0, help="Seconds between certificate polls")
    parser.add_argument("--outputs", action="store_true", help="status: print node outputs as JSON")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR (default: LOG_LEVEL or INFO)")
    return parser


def load_config(args: argparse.Namespace) -> DeploymentConfig:
    context = load_context_file(args.context_file) if args.context_file else {}
    context.update(parse_context(args.context))
    return DeploymentConfig.from_sources(context)


def _journal(args: argparse.Namespace, deployment: str) -> DeploymentJournal:
    store = DynamoJournalStore(args.journal_table) if args.journal_table else FileJournalStore(args.journal)
    return DeploymentJournal(deployment, store)


def _environment(args: argparse.Namespace, config: DeploymentConfig):
    if args.local:
        return InMemoryEnvironment(
            region=config.region,
            account_id=config.account_id or "123456789012",
            hosted_zones=(config.domain_name,),
        )
    return AwsEnvironment(region=config.region, account_id=config.account_id)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = load_config(args)
        descriptors = url_shortener_stack(config)
        plan = plan_deployment(descriptors)
    except (InvalidDescriptor, CyclicDependency, ValidationError, ValueError, OSError) as e:
        print(f"Planning failed: {e}", file=sys.stderr)
        return EXIT_PLANNING

    if args.command == "plan":
        print(f"Deployment {config.stack_name}: {len(plan.order)} resources")
        for i, logical_id in enumerate(plan.order, 1):
            d = plan.descriptors[logical_id]
            deps = ", ".join(sorted(plan.graph.depends_on(logical_id))) or "-"
            print(f"  {i:>2}. {logical_id:<28} {d.kind.value:<18} after: {deps}")
        return EXIT_OK

    journal = _journal(args, config.stack_name)
    if args.command == "status":
        if not journal.document.nodes:
            print(f"No journal for {config.stack_name}")
            return EXIT_FAILED
        print(dump_outputs(journal.document) if args.outputs else describe(journal.document))
        return EXIT_OK

    context = DeploymentContext(
        deployment_name=config.stack_name,
        environment=_environment(args, config),
        journal=journal,
        max_workers=max(1, args.max_workers),
        certificate_timeout=args.certificate_timeout,
        poll_interval=args.poll_interval,
    )

    # Ctrl-C stops new provisioning calls; the in-flight one completes.
    previous = signal.signal(signal.SIGINT, lambda *_: context.cancel())
    try:
        run = deploy if args.command == "deploy" else teardown
        report = run(descriptors, context)
    except JournalConflict as e:
        logger.error("Journal conflict", extra={"error": str(e)})
        print(str(e), file=sys.stderr)
        return EXIT_FAILED
    finally:
        signal.signal(signal.SIGINT, previous)

    print(report.render())
    return EXIT_OK if report.succeeded else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
