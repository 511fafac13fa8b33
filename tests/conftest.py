from __future__ import annotations

from pathlib import Path

import pytest

from dash_updater.service import CommandResult, Settings, _settings_from_config


class FakeRunner:
    """Replays scripted results keyed by program name and records every call."""

    def __init__(self, results: dict[str, CommandResult] | None = None) -> None:
        self.results = results or {}
        self.calls: list[tuple[str, list[str], Path | None]] = []

    def run(self, name: str, args: list[str], cwd: Path | None = None) -> CommandResult:
        self.calls.append((name, list(args), cwd))
        return self.results.get(name, CommandResult(0, ""))

    @property
    def programs(self) -> list[str]:
        return [name for name, _, _ in self.calls]


class FakeOracle:
    def __init__(self, sha: str) -> None:
        self.sha = sha
        self.requests: list[tuple[str, str]] = []

    def latest_revision(self, owner: str, repo: str) -> str:
        self.requests.append((owner, repo))
        return self.sha


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    repo = tmp_path / "repo"
    repo.mkdir()
    return _settings_from_config(
        {
            "RepoPath": str(repo),
            "MarkerPath": str(tmp_path / "marker.json"),
            "GithubToken": "",
        }
    )
