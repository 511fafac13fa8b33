import argparse
import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx

EXIT_ENV = 1
EXIT_UPDATE = 2
EXIT_CONFIG = 5
API_TIMEOUT_SECONDS = 10.0

DEFAULT_OWNER = "tabhouse"
DEFAULT_REPO = "dash-scripts"
DEFAULT_SERVICE_NAME = "amazon-dash"
DEFAULT_SCRIPT_NAME = "post-update.sh"
DEFAULT_API_URL = "https://api.github.com"
LAST_UPDATE_FILE_NAME = ".dash-script-last-update.json"
POST_ACTIONS = ("restart", "script")
DEFAULT_SAMPLE_CONFIG = {
    "LogPath": None,
    "IntervalSeconds": 10,
    "Owner": DEFAULT_OWNER,
    "Repo": DEFAULT_REPO,
    "RepoPath": "/opt/dash-scripts",
    "ServiceName": DEFAULT_SERVICE_NAME,
    "PostAction": "restart",
    "ScriptName": DEFAULT_SCRIPT_NAME,
    "Shell": "sh",
    "MarkerPath": None,
    "ApiUrl": DEFAULT_API_URL,
    "GithubToken": None,
    "CommandTimeoutSeconds": None,
}


class UpdateError(RuntimeError):
    def __init__(self, context: str, output: str = "", cause: str | None = None):
        self.context = context
        self.output = output
        detail = cause or output.strip() or "failed"
        super().__init__(f"{context}: {detail}")


class OracleError(UpdateError):
    pass


class SyncFailed(UpdateError):
    pass


class RestartFailed(UpdateError):
    pass


class PostUpdateFailed(UpdateError):
    pass


class MarkerIOError(UpdateError):
    pass


@dataclass
class Settings:
    log_path: Path | None
    interval_seconds: int
    owner: str
    repo: str
    repo_path: Path
    service_name: str
    post_action: str
    script_name: str
    shell: str
    marker_path: Path
    api_url: str
    github_token: str | None
    command_timeout_seconds: int | None


@dataclass
class Marker:
    sha1: str = ""


@dataclass
class CommandResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class ReconcileOutcome:
    updated: bool
    output: str
    error: UpdateError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Runner(Protocol):
    def run(
        self, name: str, args: list[str], cwd: Path | None = None
    ) -> CommandResult: ...


class CommandRunner:
    def __init__(self, timeout_seconds: int | None = None) -> None:
        self.timeout_seconds = timeout_seconds

    def run(
        self, name: str, args: list[str], cwd: Path | None = None
    ) -> CommandResult:
        try:
            result = subprocess.run(
                [name, *args],
                cwd=str(cwd) if cwd is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout_seconds,
            )
            return CommandResult(result.returncode, result.stdout or "")
        except subprocess.TimeoutExpired:
            return CommandResult(124, f"timeout after {self.timeout_seconds}s")
        except OSError as exc:
            return CommandResult(127, str(exc))


def default_marker_path() -> Path:
    return Path.home() / LAST_UPDATE_FILE_NAME


class MarkerStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_marker_path()

    def load(self) -> Marker:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return Marker()
        except ValueError as exc:
            raise MarkerIOError("decoding last update file", cause=str(exc)) from exc
        except OSError as exc:
            raise MarkerIOError("opening last update file", cause=str(exc)) from exc

        if not isinstance(data, dict):
            raise MarkerIOError(
                "decoding last update file", cause=f"object expected (got {data!r})"
            )
        sha1 = data.get("sha1", "")
        if not isinstance(sha1, str):
            raise MarkerIOError(
                "decoding last update file", cause=f"sha1 must be a string (got {sha1!r})"
            )
        return Marker(sha1=sha1)

    def save(self, marker: Marker) -> None:
        tmp_path: Path | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f"{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp_path = Path(f.name)
                json.dump({"sha1": marker.sha1}, f)
                f.write("\n")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise MarkerIOError("writing last update file", cause=str(exc)) from exc


class RevisionOracle:
    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        token: str | None = None,
        timeout: float = API_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        headers = {"Accept": "application/vnd.github+json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.api_url = api_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = headers

    def latest_revision(self, owner: str, repo: str) -> str:
        url = f"{self.api_url}/repos/{owner}/{repo}/commits"
        try:
            response = self._client.get(url, params={"page": 1}, headers=self._headers)
            response.raise_for_status()
            commits = response.json()
        except httpx.HTTPError as exc:
            raise OracleError("listing commits", cause=str(exc)) from exc
        except ValueError as exc:
            raise OracleError("decoding commit list", cause=str(exc)) from exc

        if not isinstance(commits, list) or not commits:
            raise OracleError("listing commits", cause=f"no commits in {owner}/{repo}")
        sha = commits[0].get("sha") if isinstance(commits[0], dict) else None
        if not isinstance(sha, str) or not sha:
            raise OracleError("listing commits", cause="latest commit has no sha")
        return sha

    def close(self) -> None:
        self._client.close()


def sync_repo(runner: Runner, repo_path: Path) -> str:
    result = runner.run("git", ["pull"], cwd=repo_path)
    if not result.ok:
        raise SyncFailed("running git pull", result.output)
    return result.output


def restart_service(runner: Runner, service_name: str) -> str:
    result = runner.run("systemctl", ["restart", service_name])
    if not result.ok:
        raise RestartFailed(f"running systemctl restart {service_name}", result.output)
    return result.output


def run_post_update_script(
    runner: Runner, repo_path: Path, script_name: str, shell: str = "sh"
) -> str:
    result = runner.run(shell, [script_name], cwd=repo_path)
    if not result.ok:
        raise PostUpdateFailed(f"running {script_name}", result.output)
    return result.output


def run_post_action(runner: Runner, settings: Settings) -> str:
    if settings.post_action == "script":
        return run_post_update_script(
            runner, settings.repo_path, settings.script_name, settings.shell
        )
    return restart_service(runner, settings.service_name)


class Reconciler:
    def __init__(
        self,
        settings: Settings,
        runner: Runner | None = None,
        oracle: RevisionOracle | None = None,
        store: MarkerStore | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or CommandRunner(settings.command_timeout_seconds)
        self.oracle = oracle
        self.store = store or MarkerStore(settings.marker_path)
        self.revision = ""
        self._owns_oracle = False
        self._lock = threading.Lock()

    def _get_oracle(self) -> RevisionOracle:
        if self.oracle is None:
            self.oracle = RevisionOracle(
                self.settings.api_url, token=self.settings.github_token
            )
            self._owns_oracle = True
        return self.oracle

    def close(self) -> None:
        if self._owns_oracle and self.oracle is not None:
            self.oracle.close()
            self.oracle = None
            self._owns_oracle = False

    def _action_context(self) -> str:
        if self.settings.post_action == "script":
            return "running post-update script"
        return f"restarting {self.settings.service_name}"

    def attempt_update(self) -> bool:
        marker = self.store.load()
        latest = self._get_oracle().latest_revision(
            self.settings.owner, self.settings.repo
        )
        if latest == marker.sha1:
            return False

        name = self.settings.service_name
        with self._lock:
            try:
                sync_repo(self.runner, self.settings.repo_path)
            except SyncFailed as exc:
                raise SyncFailed(f"updating {name}", exc.output, str(exc)) from exc

            try:
                run_post_action(self.runner, self.settings)
            except (RestartFailed, PostUpdateFailed) as exc:
                raise type(exc)(self._action_context(), exc.output, str(exc)) from exc

            try:
                self.store.save(Marker(sha1=latest))
            except MarkerIOError as exc:
                raise MarkerIOError("saving last update file", cause=str(exc)) from exc
            self.revision = latest
        return True

    def force_update(self) -> ReconcileOutcome:
        with self._lock:
            try:
                pull_output = sync_repo(self.runner, self.settings.repo_path)
            except SyncFailed as exc:
                return ReconcileOutcome(updated=False, output=exc.output, error=exc)

            try:
                action_output = run_post_action(self.runner, self.settings)
            except (RestartFailed, PostUpdateFailed) as exc:
                return ReconcileOutcome(
                    updated=False, output=pull_output + exc.output, error=exc
                )
        return ReconcileOutcome(updated=True, output=pull_output + action_output)


def _run_tick(reconciler: Reconciler) -> bool:
    name = reconciler.settings.service_name
    try:
        updated = reconciler.attempt_update()
    except UpdateError as exc:
        logging.error("[%s] update attempt failed: %s", name, exc)
        return False
    if updated:
        logging.info("[%s] updated repository %s", name, reconciler.revision)
    else:
        logging.info("[%s] update was not necessary", name)
    return True


class PollRunner:
    def __init__(
        self,
        reconciler: Reconciler,
        interval_seconds: int,
        stop_event: threading.Event | None = None,
    ):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self._stop_event = stop_event or threading.Event()

    def run_forever(self) -> None:
        next_tick = time.monotonic() + self.interval_seconds
        while not self._wait_until(next_tick):
            _run_tick(self.reconciler)
            now = time.monotonic()
            next_tick += self.interval_seconds
            while next_tick <= now:
                next_tick += self.interval_seconds

    def stop(self) -> None:
        self._stop_event.set()

    def _wait_until(self, deadline: float) -> bool:
        return self._stop_event.wait(max(0.0, deadline - time.monotonic()))


def _load_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8-sig") as f:
        return json.load(f)


def _write_sample_config(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(DEFAULT_SAMPLE_CONFIG, f, ensure_ascii=False, indent=2)


def _settings_from_config(cfg: dict[str, Any]) -> Settings:
    def _require_positive(value: int, name: str) -> int:
        if value <= 0:
            raise ValueError(f"{name} must be > 0 (got {value})")
        return value

    def _optional_path(key: str) -> Path | None:
        value = cfg.get(key)
        if value is None or str(value).strip() == "":
            return None
        return Path(value).expanduser()

    def _non_empty(key: str, default: str) -> str:
        value = cfg.get(key)
        if value is None:
            return default
        value = str(value).strip()
        if not value:
            raise ValueError(f"{key} cannot be empty")
        return value

    if not isinstance(cfg, dict):
        raise ValueError(f"Config must be a JSON object (got {type(cfg).__name__})")

    interval_seconds = _require_positive(
        int(cfg.get("IntervalSeconds", 10)), "IntervalSeconds"
    )
    post_action = str(cfg.get("PostAction", "restart")).strip().lower()
    if post_action not in POST_ACTIONS:
        raise ValueError(
            f"PostAction must be one of {', '.join(POST_ACTIONS)} (got {post_action})"
        )
    timeout = cfg.get("CommandTimeoutSeconds")
    if timeout is not None:
        timeout = _require_positive(int(timeout), "CommandTimeoutSeconds")

    return Settings(
        log_path=_optional_path("LogPath"),
        interval_seconds=interval_seconds,
        owner=_non_empty("Owner", DEFAULT_OWNER),
        repo=_non_empty("Repo", DEFAULT_REPO),
        repo_path=_optional_path("RepoPath") or Path("."),
        service_name=_non_empty("ServiceName", DEFAULT_SERVICE_NAME),
        post_action=post_action,
        script_name=_non_empty("ScriptName", DEFAULT_SCRIPT_NAME),
        shell=_non_empty("Shell", "sh"),
        marker_path=_optional_path("MarkerPath") or default_marker_path(),
        api_url=_non_empty("ApiUrl", DEFAULT_API_URL),
        github_token=cfg.get("GithubToken") or os.getenv("GITHUB_TOKEN") or None,
        command_timeout_seconds=timeout,
    )


def validate_config_dict(cfg: dict[str, Any]) -> list[str]:
    try:
        _settings_from_config(cfg)
        return []
    except (KeyError, TypeError, ValueError) as exc:
        return [str(exc)]


def _setup_logging(log_path: Path | None) -> None:
    handlers: list[logging.Handler] = []
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    handlers.append(logging.StreamHandler())
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )


def run(settings: Settings) -> None:
    reconciler = Reconciler(settings)
    runner = PollRunner(reconciler, settings.interval_seconds)
    logging.info(
        "START %s/%s every %ss", settings.owner, settings.repo, settings.interval_seconds
    )
    try:
        runner.run_forever()
    finally:
        reconciler.close()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Poll GitHub and update the dash scripts checkout"
    )
    parser.add_argument("--config", default=None, help="Path to config JSON")
    parser.add_argument("--repo-path", default=None, help="Path to the repository clone")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between update checks"
    )
    parser.add_argument(
        "--post-action",
        choices=POST_ACTIONS,
        default=None,
        help="Restart the service or run the post-update script after pulling",
    )
    parser.add_argument("--log-path", default=None, help="Optional log file")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Make a single update attempt and exit",
    )
    args = parser.parse_args(argv)

    try:
        cfg: dict[str, Any] = {}
        if args.config:
            cfg = _load_config(Path(args.config))
        overrides = {
            "RepoPath": args.repo_path,
            "IntervalSeconds": args.interval,
            "PostAction": args.post_action,
            "LogPath": args.log_path,
        }
        cfg.update({key: value for key, value in overrides.items() if value is not None})
        settings = _settings_from_config(cfg)
    except FileNotFoundError:
        _write_sample_config(Path(args.config))
        print(f"ERROR code={EXIT_ENV} config created at: {args.config}")
        print("Please edit the config and restart the service.")
        sys.exit(EXIT_ENV)
    except json.JSONDecodeError as exc:
        print(f"ERROR code={EXIT_CONFIG} config JSON invalid: {exc}")
        sys.exit(EXIT_CONFIG)
    except (KeyError, TypeError, ValueError) as exc:
        print(f"ERROR code={EXIT_CONFIG} config validation failed: {exc}")
        sys.exit(EXIT_CONFIG)

    if shutil.which("git") is None:
        print(f"ERROR code={EXIT_ENV} git not found in PATH")
        sys.exit(EXIT_ENV)

    _setup_logging(settings.log_path)
    if args.once:
        reconciler = Reconciler(settings)
        try:
            updated = _run_tick(reconciler)
        finally:
            reconciler.close()
        if not updated:
            sys.exit(EXIT_UPDATE)
        return

    try:
        run(settings)
    except KeyboardInterrupt:
        logging.info("STOP")


if __name__ == "__main__":
    main()
