import random
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

from autocommit import CommandFailed, CommandOutput, Config, FileWriteFailed


class FakeExecutor:
    """Records git commands, optionally failing on a chosen one."""

    def __init__(self, fail_when: Optional[Callable[[List[str], dict], bool]] = None):
        self.calls: List[List[str]] = []
        self.envs: List[dict] = []
        self.fail_when = fail_when

    def execute(self, command: Sequence[str], cwd: Path, env: Optional[dict] = None):
        command = list(command)
        env = env or {}
        self.calls.append(command)
        self.envs.append(env)
        if self.fail_when and self.fail_when(command, env):
            raise CommandFailed(command, "fatal: simulated failure")
        return CommandOutput(stdout="", stderr="")

    def commits(self) -> List[List[str]]:
        return [c for c in self.calls if c[:2] == ["git", "commit"]]

    def pushes(self) -> List[List[str]]:
        return [c for c in self.calls if c[:2] == ["git", "push"]]

    def commit_dates(self) -> List[str]:
        return [c[c.index("--date") + 1] for c in self.commits()]


class FakeWriter:
    def __init__(self, fail: bool = False):
        self.writes = []
        self.fail = fail

    def write(self, path: Path, content: str) -> None:
        if self.fail:
            raise FileWriteFailed(f"Unable to write {path}: read-only")
        self.writes.append((path, content))


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def writer():
    return FakeWriter()


@pytest.fixture
def config(tmp_path):
    return Config(repo_path=tmp_path, min_commit=2, max_commit=4, random_seed=7)
