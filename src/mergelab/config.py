from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import tomllib

from mergelab.models import BuildStrategy, SourceSettings


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    worker_count: int
    poll_interval_seconds: int

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class GitLabConfig:
    host: str = "gitlab.com"
    hook_url: str | None = None
    webhook_secret: str | None = None
    status_context_prefix: str = "mergelab"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0


@dataclass(frozen=True)
class WebhookServerConfig:
    listen_host: str = "127.0.0.1"
    listen_port: int = 8080
    hook_path: str = "/gitlab/webhook"


@dataclass(frozen=True)
class SourceConfig:
    source_id: str
    project: str
    settings: SourceSettings


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    gitlab: GitLabConfig
    webhook_server: WebhookServerConfig
    sources: tuple[SourceConfig, ...]

    def source(self, source_id: str) -> SourceConfig:
        for source in self.sources:
            if source.source_id == source_id:
                return source
        raise ConfigError(f"Unknown source: {source_id}")


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    gitlab_data = _optional_table(data, "gitlab") or {}
    server_data = _optional_table(data, "webhook_server") or {}
    source_data = _require_table(data, "source")

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        worker_count=_int_with_default(runtime_data, "worker_count", 2),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 300),
    )
    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")

    gitlab = GitLabConfig(
        host=_str_with_default(gitlab_data, "host", "gitlab.com"),
        hook_url=_optional_str(gitlab_data, "hook_url"),
        webhook_secret=_webhook_secret(gitlab_data),
        status_context_prefix=_str_with_default(gitlab_data, "status_context_prefix", "mergelab"),
        request_timeout_seconds=_float_with_default(gitlab_data, "request_timeout_seconds", 30.0),
        max_retries=_int_with_default(gitlab_data, "max_retries", 3),
        retry_backoff_seconds=_float_with_default(gitlab_data, "retry_backoff_seconds", 1.0),
    )
    if gitlab.request_timeout_seconds <= 0:
        raise ConfigError("gitlab.request_timeout_seconds must be > 0")
    if gitlab.max_retries < 0:
        raise ConfigError("gitlab.max_retries must be >= 0")
    if gitlab.retry_backoff_seconds < 0:
        raise ConfigError("gitlab.retry_backoff_seconds must be >= 0")

    webhook_server = WebhookServerConfig(
        listen_host=_str_with_default(server_data, "listen_host", "127.0.0.1"),
        listen_port=_int_with_default(server_data, "listen_port", 8080),
        hook_path=_str_with_default(server_data, "hook_path", "/gitlab/webhook"),
    )
    if not 0 < webhook_server.listen_port < 65536:
        raise ConfigError("webhook_server.listen_port must be between 1 and 65535")
    if not webhook_server.hook_path.startswith("/"):
        raise ConfigError("webhook_server.hook_path must start with '/'")

    return AppConfig(
        runtime=runtime,
        gitlab=gitlab,
        webhook_server=webhook_server,
        sources=_load_source_configs(source_data),
    )


def _load_source_configs(source_data: dict[str, object]) -> tuple[SourceConfig, ...]:
    if not source_data:
        raise ConfigError("[source] must define at least one [source.<id>] table")
    sources: list[SourceConfig] = []
    for source_id, raw_value in sorted(source_data.items()):
        if "/" in source_id or not source_id.strip():
            raise ConfigError(f"source id {source_id!r} must be non-empty and must not contain '/'")
        table = _require_nested_table(raw_value, table_name=f"[source.{source_id}]")
        sources.append(
            SourceConfig(
                source_id=source_id,
                project=_require_project(table),
                settings=_parse_source_settings(table, source_id=source_id),
            )
        )
    return tuple(sources)


def _parse_source_settings(data: dict[str, object], *, source_id: str) -> SourceSettings:
    origin_data = data.get("origin", {})
    fork_data = data.get("fork", {})
    origin = _require_nested_table(origin_data, table_name=f"[source.{source_id}.origin]")
    fork = _require_nested_table(fork_data, table_name=f"[source.{source_id}.fork]")
    return SourceSettings(
        includes=_pattern_with_default(data, "includes", "*"),
        excludes=_pattern_with_default(data, "excludes", ""),
        build_branches=_bool_with_default(data, "build_branches", True),
        build_branches_with_merge_requests=_bool_with_default(
            data, "build_branches_with_merge_requests", False
        ),
        build_tags=_bool_with_default(data, "build_tags", False),
        origin_strategy=_parse_strategy(origin, default=BuildStrategy()),
        fork_strategy=_parse_strategy(fork, default=BuildStrategy(enabled=False)),
        register_webhooks=_bool_with_default(data, "register_webhooks", True),
        update_build_description=_bool_with_default(data, "update_build_description", True),
        publish_unstable_as_success=_bool_with_default(
            data, "publish_unstable_as_success", False
        ),
        required_files=_tuple_of_str_with_default(data, "required_files", ()),
        parallel_listing=_bool_with_default(data, "parallel_listing", True),
    )


def _parse_strategy(data: dict[str, object], *, default: BuildStrategy) -> BuildStrategy:
    return BuildStrategy(
        enabled=_bool_with_default(data, "enabled", default.enabled),
        build_merged=_bool_with_default(data, "build_merged", default.build_merged),
        build_unmerged=_bool_with_default(data, "build_unmerged", default.build_unmerged),
        ignore_work_in_progress=_bool_with_default(
            data, "ignore_work_in_progress", default.ignore_work_in_progress
        ),
        build_only_mergeable=_bool_with_default(
            data, "build_only_mergeable", default.build_only_mergeable
        ),
        accept_merge_requests=_bool_with_default(
            data, "accept_merge_requests", default.accept_merge_requests
        ),
        remove_source_branch=_bool_with_default(
            data, "remove_source_branch", default.remove_source_branch
        ),
    )


def _require_project(data: dict[str, object]) -> str:
    value = data.get("project")
    if isinstance(value, bool):
        raise ConfigError("project must be a numeric id or a path like group/name")
    if isinstance(value, int):
        if value < 1:
            raise ConfigError("project must be a positive id")
        return str(value)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError("project is required and must be a numeric id or a path like group/name")
    return value.strip()


def _webhook_secret(data: dict[str, object]) -> str | None:
    secret = _optional_str(data, "webhook_secret")
    env_name = _optional_str(data, "webhook_secret_env")
    if secret is not None and env_name is not None:
        raise ConfigError("Set only one of gitlab.webhook_secret and gitlab.webhook_secret_env")
    if env_name is None:
        return secret
    value = os.environ.get(env_name)
    if not value:
        raise ConfigError(f"Environment variable {env_name} named by webhook_secret_env is not set")
    return value


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(k, str) for k in value):
        raise ConfigError(f"[{key}] must have string keys")
    return value


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return value


def _require_nested_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    return value


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _pattern_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if isinstance(value, list):
        if not all(isinstance(item, str) for item in value):
            raise ConfigError(f"{key} must be a string or a list of strings")
        return ",".join(value)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string or a list of strings")
    return value


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item:
            raise ConfigError(f"{key} must be a list of non-empty strings")
        out.append(item)
    return tuple(out)
