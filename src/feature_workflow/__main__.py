"""Entry point for `python -m feature_workflow` and the `feature-workflow` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Awaitable, Callable

from feature_workflow.errors import WorkflowError
from feature_workflow.loops import LoopResult
from feature_workflow.models import Feature
from feature_workflow.settings import RuntimeSettings
from feature_workflow.workflow import BuildResult, WorkflowEngine

ASYNC_ACTIONS = ("generate-spec", "generate-plan", "build")
GATE_ACTIONS = {
    "approve-spec": WorkflowEngine.mark_spec_approved,
    "approve-plan": WorkflowEngine.mark_plan_approved,
    "ready-for-build": WorkflowEngine.mark_ready_for_build,
    "code-review": WorkflowEngine.mark_code_review,
    "test": WorkflowEngine.start_testing,
    "approve-build": WorkflowEngine.approve_build,
}
ACTION_CHOICES = ["new", "list", "show", *ASYNC_ACTIONS, *GATE_ACTIONS, "reject-build"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive features through the spec, plan and build workflow")
    parser.add_argument("action", choices=ACTION_CHOICES, help="Lifecycle action to run")
    parser.add_argument("--feature-id", default=None, help="Feature slug (required for every action except list)")
    parser.add_argument("--name", default=None, help="Display name for `new` (default: derived from the id)")
    parser.add_argument("--owner", default=None, help="Optional owner recorded on `new`")
    parser.add_argument("--reason", default=None, help="Optional reason recorded on `reject-build`")
    parser.add_argument(
        "--workspace-root",
        type=Path,
        default=None,
        help="Repository the agent works in and the features directory lives under (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def print_feature(feature: Feature, *, with_history: bool = False) -> None:
    owner = f" owner={feature.owner}" if feature.owner else ""
    print(f"{feature.id}\t{feature.status.value}\t{feature.name}{owner}")
    if with_history:
        for entry in feature.history:
            print(f"  {entry.render()}")


def _progress(message: str) -> None:
    print(f"  {message}", flush=True)


async def run_with_interrupt(action: Callable[[], Awaitable[object]], cancel_event: asyncio.Event) -> object:
    """Run one long action with Ctrl-C wired to the shared cancellation event."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        logging.debug("SIGINT handler not supported on this platform")
    try:
        return await action()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _succeeded(result: object) -> bool:
    if isinstance(result, BuildResult):
        return result.completed
    if isinstance(result, LoopResult):
        return result.advances_status
    return True


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Set workspace root before constructing any settings objects.
    if args.workspace_root is not None:
        os.environ["FEATURE_WORKFLOW_WORKSPACE_ROOT"] = str(args.workspace_root.resolve())

    if args.action != "list" and not args.feature_id:
        logging.error("--feature-id is required for `%s`", args.action)
        return 1

    cancel_event = asyncio.Event()
    try:
        settings = RuntimeSettings.from_env()
        engine = WorkflowEngine(settings, cancel_event=cancel_event, on_progress=_progress)
    except (OSError, ValueError) as exc:
        logging.error("Unable to load configuration: %s", exc)
        return 1

    feature_id = args.feature_id
    try:
        if args.action == "list":
            for feature in engine.store.list_features():
                print_feature(feature)
            return 0
        if args.action == "new":
            feature = engine.create_feature(feature_id, args.name, owner=args.owner)
            print(f"Created {feature.id}; describe it in {engine.store.request_path(feature.id)}")
            return 0
        if args.action == "show":
            print_feature(engine.store.load(feature_id), with_history=True)
            return 0
        if args.action == "reject-build":
            print_feature(engine.reject_build(feature_id, args.reason))
            return 0
        if args.action in GATE_ACTIONS:
            print_feature(GATE_ACTIONS[args.action](engine, feature_id))
            return 0

        runners = {
            "generate-spec": engine.generate_spec,
            "generate-plan": engine.generate_plan,
            "build": engine.start_build,
        }
        result = asyncio.run(run_with_interrupt(lambda: runners[args.action](feature_id), cancel_event))
    except (WorkflowError, OSError, ValueError) as exc:
        logging.error("%s failed for %s: %s", args.action, feature_id, exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("%s failed for %s: %s", args.action, feature_id, exc)
        return 1

    print_feature(engine.store.load(feature_id))
    if cancel_event.is_set():
        print("Cancelled by user")
        return 1
    return 0 if _succeeded(result) else 1


if __name__ == "__main__":
    raise SystemExit(main())
