from __future__ import annotations

import argparse
import json
from pathlib import Path
import threading

from mergelab.build_lifecycle import BuildCause, BuildLifecycleOrchestrator, BuildRun
from mergelab.config import AppConfig, load_config
from mergelab.discovery import RequiredFilesCriteria
from mergelab.gitlab_gateway import GitLabGateway
from mergelab.head_metadata import HeadMetadataStore
from mergelab.models import BuildResult
from mergelab.observability import configure_logging
from mergelab.orchestrator import DiscoveryScheduler
from mergelab.source import GitLabSource, StateJobDirectory
from mergelab.state import StateStore
from mergelab.status_tui import run_status_tui
from mergelab.webhook_server import create_app, run_webhook_server
from mergelab.webhooks import SourceRegistration, WebhookRegistrationManager


_BUILD_RESULTS: tuple[str, ...] = ("success", "unstable", "failure", "aborted", "not_built")
_CAUSE_KINDS: tuple[str, ...] = ("push", "merge_request", "manual", "scan")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergelab")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize the base dir and state DB")
    _add_common_arguments(init_parser)

    scan_parser = subparsers.add_parser(
        "scan", help="Run one full discovery pass and print the eligible heads"
    )
    _add_common_arguments(scan_parser)
    scan_parser.add_argument("--source", type=str, help="Only scan this source id")
    scan_parser.add_argument("--json", action="store_true", help="Print heads as JSON")

    run_parser = subparsers.add_parser("run", help="Run periodic discovery passes")
    _add_common_arguments(run_parser)
    run_parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")

    serve_parser = subparsers.add_parser(
        "serve", help="Serve the webhook endpoint alongside periodic discovery"
    )
    _add_common_arguments(serve_parser)

    hooks_parser = subparsers.add_parser(
        "register-hooks", help="Create or repair project webhooks for every source"
    )
    _add_common_arguments(hooks_parser)

    notify_parser = subparsers.add_parser(
        "notify", help="Report a build lifecycle transition from the CI runtime"
    )
    _add_common_arguments(notify_parser)
    notify_parser.add_argument("phase", choices=("started", "completed"))
    notify_parser.add_argument("--job", required=True, help="Job id, <source_id>/<head name>")
    notify_parser.add_argument("--build", type=int, required=True, help="Build number")
    notify_parser.add_argument("--url", type=str, help="Link to the build")
    notify_parser.add_argument("--result", choices=_BUILD_RESULTS, help="Build result")
    notify_parser.add_argument("--cause", choices=_CAUSE_KINDS, default="scan")
    notify_parser.add_argument("--branch", type=str, help="Pushed branch for push causes")
    notify_parser.add_argument(
        "--merge-request", type=int, dest="merge_request", help="Merge request iid"
    )

    top_parser = subparsers.add_parser("top", help="Show discovery state in a terminal view")
    _add_common_arguments(top_parser)
    top_parser.add_argument("--refresh-seconds", type=int, default=5)

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(args.verbose, state_dir=config.runtime.base_dir if args.log_to_file else None)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "top":
        run_status_tui(
            db_path=config.runtime.state_db_path,
            refresh_seconds=max(1, int(args.refresh_seconds)),
        )
        return

    state = StateStore(config.runtime.state_db_path)
    gateway = _build_gateway(config)
    sources = _build_sources(config, gateway)

    if args.command == "scan":
        _cmd_scan(config, state, sources, source_filter=args.source, as_json=bool(args.json))
        return
    if args.command == "run":
        _build_scheduler(config, state, sources).run(once=bool(args.once))
        return
    if args.command == "serve":
        _cmd_serve(config, state, sources)
        return
    if args.command == "register-hooks":
        _cmd_register_hooks(config, state, sources)
        return
    if args.command == "notify":
        _cmd_notify(state, sources, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


class CliBuildRun(BuildRun):
    """A build described on the command line by an external CI runtime."""

    def __init__(
        self,
        *,
        job_id: str,
        build_number: int,
        url: str | None,
        result: BuildResult | None,
        cause: BuildCause | None,
    ) -> None:
        self._job_id = job_id
        self._build_number = build_number
        self._url = url
        self._result = result
        self._cause = cause

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def build_number(self) -> int:
        return self._build_number

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def result(self) -> BuildResult | None:
        return self._result

    @property
    def cause(self) -> BuildCause | None:
        return self._cause

    def set_description(self, description: str) -> None:
        print(f"description={description}")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("mergelab.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        default=None,
        help="Enable runtime logging to stderr (default mode: high)",
    )
    parser.add_argument(
        "--log-to-file",
        action="store_true",
        help="Also write logs to <base_dir>/logs",
    )


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    state = StateStore(config.runtime.state_db_path)
    print(f"Initialized mergelab base dir: {config.runtime.base_dir}")
    print(f"State DB: {state.db_path}")
    for source in config.sources:
        print(f"Source: {source.source_id} -> {source.project}")


def _cmd_scan(
    config: AppConfig,
    state: StateStore,
    sources: dict[str, GitLabSource],
    *,
    source_filter: str | None,
    as_json: bool,
) -> None:
    if source_filter is not None and source_filter not in sources:
        available = ", ".join(sorted(sources))
        raise RuntimeError(f"Unknown --source value {source_filter!r}. Expected one of: {available}")
    scheduler = _build_scheduler(config, state, sources)
    selected = [source_filter] if source_filter is not None else sorted(sources)

    payload: list[dict[str, object]] = []
    for source_id in selected:
        status = scheduler.reindex(source_id)
        if not as_json:
            print(f"source={source_id} status={status}")
        for record in state.list_discovered_heads(source_id):
            revision = record.revision
            if as_json:
                payload.append(
                    {
                        "source_id": source_id,
                        "job_id": record.job_id,
                        "kind": revision.head.kind,
                        "name": revision.head.name,
                        "commit_hash": revision.hash,
                        "target_hash": revision.target_hash,
                    }
                )
            else:
                print(f"  {record.job_id} {revision.head.kind} {revision.hash[:12]}")
    if as_json:
        print(json.dumps(payload, indent=2))


def _cmd_serve(config: AppConfig, state: StateStore, sources: dict[str, GitLabSource]) -> None:
    scheduler = _build_scheduler(config, state, sources)
    manager = _build_manager(config, scheduler, sources)
    for source in sources.values():
        manager.ensure_registered(source)

    stop_event = threading.Event()
    worker = threading.Thread(
        target=scheduler.run,
        kwargs={"once": False, "stop_event": stop_event},
        name="discovery-scheduler",
        daemon=True,
    )
    worker.start()
    try:
        run_webhook_server(
            create_app(
                manager,
                secret=config.gitlab.webhook_secret,
                hook_path=config.webhook_server.hook_path,
            ),
            host=config.webhook_server.listen_host,
            port=config.webhook_server.listen_port,
        )
    finally:
        stop_event.set()
        worker.join(timeout=config.runtime.poll_interval_seconds)


def _cmd_register_hooks(
    config: AppConfig, state: StateStore, sources: dict[str, GitLabSource]
) -> None:
    manager = _build_manager(config, _build_scheduler(config, state, sources), sources)
    for source_id, source in sorted(sources.items()):
        changed = manager.ensure_registered(source)
        print(f"source={source_id} hook={'saved' if changed else 'unchanged'}")


def _cmd_notify(state: StateStore, sources: dict[str, GitLabSource], args: argparse.Namespace) -> None:
    jobs = StateJobDirectory(state, sources)
    lifecycle = BuildLifecycleOrchestrator(
        metadata=HeadMetadataStore(state=state, jobs=jobs),
        jobs=jobs,
    )
    build = CliBuildRun(
        job_id=str(args.job),
        build_number=int(args.build),
        url=args.url,
        result=args.result,
        cause=BuildCause(
            kind=args.cause,
            branch=args.branch,
            merge_request_iid=args.merge_request,
        ),
    )
    if args.phase == "started":
        outcomes = lifecycle.on_started(build)
    else:
        outcomes = lifecycle.on_completed(build)
    for outcome in outcomes:
        print(f"action={outcome.action} ok={str(outcome.ok).lower()} detail={outcome.detail}")


def _build_gateway(config: AppConfig) -> GitLabGateway:
    return GitLabGateway(
        host=config.gitlab.host,
        timeout_seconds=config.gitlab.request_timeout_seconds,
        max_retries=config.gitlab.max_retries,
        retry_backoff_seconds=config.gitlab.retry_backoff_seconds,
    )


def _build_sources(config: AppConfig, gateway: GitLabGateway) -> dict[str, GitLabSource]:
    sources: dict[str, GitLabSource] = {}
    for source_config in config.sources:
        project_ref: int | str = (
            int(source_config.project) if source_config.project.isdigit() else source_config.project
        )
        sources[source_config.source_id] = GitLabSource(
            source_id=source_config.source_id,
            project=gateway.get_project(project_ref),
            settings=source_config.settings,
            gateway=gateway,
            status_context_prefix=config.gitlab.status_context_prefix,
        )
    return sources


def _registrations(sources: dict[str, GitLabSource]) -> tuple[SourceRegistration, ...]:
    return tuple(
        SourceRegistration(
            source=source,
            criteria=(
                RequiredFilesCriteria(source.settings.required_files)
                if source.settings.required_files
                else None
            ),
        )
        for _, source in sorted(sources.items())
    )


def _build_scheduler(
    config: AppConfig, state: StateStore, sources: dict[str, GitLabSource]
) -> DiscoveryScheduler:
    return DiscoveryScheduler(
        registrations=_registrations(sources),
        state=state,
        poll_interval_seconds=config.runtime.poll_interval_seconds,
        worker_count=config.runtime.worker_count,
    )


def _build_manager(
    config: AppConfig, scheduler: DiscoveryScheduler, sources: dict[str, GitLabSource]
) -> WebhookRegistrationManager:
    return WebhookRegistrationManager(
        hook_url=config.gitlab.hook_url,
        secret=config.gitlab.webhook_secret,
        observer_factory=scheduler.observer_for,
        registrations=_registrations(sources),
    )
